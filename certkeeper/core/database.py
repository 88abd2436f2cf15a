"""
SQLite database management for certificate state and renewal history.

Provides async database operations using aiosqlite.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
-- Managed certificates, one row per domain set
CREATE TABLE IF NOT EXISTS certificates (
    key TEXT PRIMARY KEY,
    domains_json TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',

    cert_path TEXT NOT NULL,
    key_path TEXT NOT NULL,
    chain_path TEXT NOT NULL,

    issuer TEXT,
    serial_number TEXT,
    fingerprint_sha256 TEXT,
    issued_at TIMESTAMP,
    expires_at TIMESTAMP,

    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    renewal_attempts INTEGER DEFAULT 0,
    last_attempt_at TIMESTAMP,
    next_attempt_at TIMESTAMP,
    last_renewed TIMESTAMP,
    last_error TEXT,
    last_error_kind TEXT,
    last_reload_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_certificates_status ON certificates(status);
CREATE INDEX IF NOT EXISTS idx_certificates_expires_at ON certificates(expires_at);

-- Renewal attempts (append-only)
CREATE TABLE IF NOT EXISTS renewal_attempts (
    id TEXT PRIMARY KEY,
    domain_key TEXT NOT NULL,
    attempt_number INTEGER NOT NULL,
    started_at TIMESTAMP NOT NULL,
    finished_at TIMESTAMP,
    outcome TEXT NOT NULL,

    failure_kind TEXT,
    error TEXT,
    retry_delay_seconds REAL,
    degraded BOOLEAN DEFAULT FALSE,

    serial_number TEXT,
    fingerprint_sha256 TEXT,
    expires_at TIMESTAMP,

    reload_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_attempts_domain_key ON renewal_attempts(domain_key, started_at);
CREATE INDEX IF NOT EXISTS idx_attempts_outcome ON renewal_attempts(outcome);

CREATE TRIGGER IF NOT EXISTS renewal_attempts_no_update
BEFORE UPDATE ON renewal_attempts
BEGIN
    SELECT RAISE(ABORT, 'renewal_attempts is append-only');
END;

-- ACME accounts table (account key reuse across restarts)
CREATE TABLE IF NOT EXISTS acme_accounts (
    id TEXT PRIMARY KEY,
    email TEXT,
    directory_url TEXT NOT NULL,
    account_url TEXT,
    private_key_pem TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_acme_accounts_directory_url ON acme_accounts(directory_url);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Initialize database and create tables if needed."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        async with self.connection() as db:
            await db.executescript(SCHEMA)
            await db.commit()

        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def connection(self):
        """Get a database connection context manager."""
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> int:
        """Execute a statement and return the affected row count."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        """Execute a query and fetch one result."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and fetch all results."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def insert(self, table: str, data: Dict[str, Any]) -> None:
        """Insert a row."""
        columns = ", ".join(data.keys())
        placeholders = ", ".join(["?" for _ in data])
        query = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"

        async with self.connection() as db:
            await db.execute(query, tuple(data.values()))
            await db.commit()

    async def upsert(self, table: str, data: Dict[str, Any], key_column: str) -> None:
        """Insert a row, replacing every non-key column if the key already exists."""
        columns = ", ".join(data.keys())
        placeholders = ", ".join(["?" for _ in data])
        updates = ", ".join(f"{k} = excluded.{k}" for k in data if k != key_column)
        query = (
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT({key_column}) DO UPDATE SET {updates}"
        )

        async with self.connection() as db:
            await db.execute(query, tuple(data.values()))
            await db.commit()

    async def delete(self, table: str, id_value: str, id_column: str = "id") -> bool:
        """Delete a row by id."""
        query = f"DELETE FROM {table} WHERE {id_column} = ?"
        return await self.execute(query, (id_value,)) > 0

    async def count(self, table: str, where_clause: str = "", params: tuple = ()) -> int:
        """Count rows in a table."""
        query = f"SELECT COUNT(*) as count FROM {table}"
        if where_clause:
            query += f" WHERE {where_clause}"

        result = await self.fetch_one(query, params)
        return result["count"] if result else 0


def serialize_json(data: Optional[Any]) -> Optional[str]:
    """Serialize a value to JSON string for storage."""
    if data is None:
        return None
    return json.dumps(data)


def deserialize_json(data: Optional[str]) -> Optional[Any]:
    """Deserialize a JSON string from storage."""
    if data is None:
        return None
    return json.loads(data)


def to_db_datetime(value) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_db_datetime(value: Optional[str]):
    """Parse a stored ISO timestamp, treating naive values as UTC."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
