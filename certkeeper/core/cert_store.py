"""
Certificate store.

The authoritative collection of managed certificates, keyed by domain
set. Records live in memory for the scheduler and are written through
to SQLite on every change so state survives restarts. Readers get deep
copies, so monitoring never observes a record mid-update.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable

from certkeeper.core.cert_helpers import read_installed_certificate
from certkeeper.core.database import (
    Database,
    deserialize_json,
    parse_db_datetime,
    serialize_json,
    to_db_datetime,
)
from certkeeper.core.errors import CertkeeperError, FailureKind
from certkeeper.models.certificate import (
    CertificateStatus,
    DomainSetConfig,
    ManagedCertificate,
    normalize_domain,
)

logger = logging.getLogger(__name__)

CERT_FILENAME = "cert.pem"
KEY_FILENAME = "key.pem"
CHAIN_FILENAME = "chain.pem"
FULLCHAIN_FILENAME = "fullchain.pem"


class CertificateNotFoundError(CertkeeperError):
    """No managed certificate for the requested domain set."""

    pass


def apply_certificate_details(cert: ManagedCertificate, details: dict | None) -> ManagedCertificate:
    """Copy the on-disk certificate details onto a record."""
    if details is None:
        cert.issuer = None
        cert.serial_number = None
        cert.fingerprint_sha256 = None
        cert.issued_at = None
        cert.expires_at = None
        return cert

    cert.issuer = details["issuer"]
    cert.serial_number = details["serial_number"]
    cert.fingerprint_sha256 = details["fingerprint_sha256"]
    cert.issued_at = details["not_before"]
    cert.expires_at = details["not_after"]
    return cert


class CertificateStore:
    """In-memory certificate records with SQLite write-through."""

    def __init__(self, db: Database):
        self.db = db
        self._certs: dict[str, ManagedCertificate] = {}
        self._write_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._certs)

    def __contains__(self, key: str) -> bool:
        return key in self._certs

    async def load(self) -> int:
        """Load persisted records, re-reading expiry from the installed files."""
        rows = await self.db.fetch_all("SELECT * FROM certificates ORDER BY key")
        self._certs = {}
        for row in rows:
            cert = self._row_to_certificate(row)
            apply_certificate_details(cert, read_installed_certificate(cert.cert_path))
            self._certs[cert.key] = cert

        logger.info(f"Loaded {len(self._certs)} managed certificates")
        return len(self._certs)

    def get(self, key: str) -> ManagedCertificate | None:
        """Get a copy of one record."""
        cert = self._certs.get(key)
        return cert.model_copy(deep=True) if cert else None

    def find(self, domain: str) -> ManagedCertificate | None:
        """Look up a record by domain set key or by any of its hostnames."""
        if domain in self._certs:
            return self.get(domain)
        try:
            name = normalize_domain(domain)
        except ValueError:
            return None
        if name in self._certs:
            return self.get(name)
        for cert in self._certs.values():
            if cert.primary_domain == name:
                return self.get(cert.key)
        for cert in self._certs.values():
            if name in cert.domains:
                return self.get(cert.key)
        return None

    def snapshot(self) -> list[ManagedCertificate]:
        """Consistent copy of every record, ordered by key."""
        return [self._certs[key].model_copy(deep=True) for key in sorted(self._certs)]

    def try_mark_in_flight(self, key: str) -> bool:
        """
        Claim a domain set for a renewal attempt.

        Check-and-set happens without yielding to the event loop, so two
        callers can never both claim the same record.
        """
        cert = self._certs.get(key)
        if cert is None or cert.in_flight:
            return False
        cert.in_flight = True
        return True

    def clear_in_flight(self, key: str) -> None:
        cert = self._certs.get(key)
        if cert is not None:
            cert.in_flight = False

    async def onboard(self, domain_set: DomainSetConfig, cert_dir: str | Path) -> ManagedCertificate:
        """
        Start managing a domain set.

        Existing records are returned unchanged. A certificate already
        present in the directory is adopted and its expiry read from disk.
        """
        key = domain_set.key
        if key in self._certs:
            return self.get(key)

        cert_dir = Path(cert_dir)
        cert = ManagedCertificate(
            key=key,
            domains=list(domain_set.domains),
            cert_path=str(cert_dir / CERT_FILENAME),
            key_path=str(cert_dir / KEY_FILENAME),
            chain_path=str(cert_dir / CHAIN_FILENAME),
        )
        apply_certificate_details(cert, read_installed_certificate(cert.cert_path))
        if cert.expires_at is not None:
            cert.status = CertificateStatus.HEALTHY

        await self.save(cert)
        logger.info(f"Onboarded domain set {key} (certificate dir {cert_dir})")
        return self.get(key)

    async def sync(
        self, domain_sets: Iterable[DomainSetConfig], resolve_dir: Callable[[DomainSetConfig], Path]
    ) -> tuple[list[str], list[str]]:
        """
        Onboard every configured domain set that is not yet managed.

        Records missing from the configuration are kept (removal needs an
        explicit decommission) and returned so the caller can warn.

        Returns:
            Tuple of (onboarded keys, managed keys absent from the configuration)
        """
        configured = set()
        added = []
        for domain_set in domain_sets:
            configured.add(domain_set.key)
            if domain_set.key not in self._certs:
                await self.onboard(domain_set, resolve_dir(domain_set))
                added.append(domain_set.key)

        orphaned = sorted(key for key in self._certs if key not in configured)
        for key in orphaned:
            logger.warning(f"Domain set {key} is no longer configured; decommission it to stop renewing")
        return added, orphaned

    async def save(self, cert: ManagedCertificate) -> None:
        """Replace a record and write it through to the database."""
        current = self._certs.get(cert.key)
        stored = cert.model_copy(deep=True)
        stored.in_flight = current.in_flight if current is not None else False
        self._certs[cert.key] = stored

        async with self._write_lock:
            await self.db.upsert("certificates", self._certificate_to_db(stored), key_column="key")

    async def decommission(self, key: str) -> ManagedCertificate:
        """
        Stop managing a domain set. Certificate files on disk are left alone.

        Raises:
            CertificateNotFoundError: unknown domain set
            CertkeeperError: a renewal attempt is still running
        """
        cert = self._certs.get(key)
        if cert is None:
            raise CertificateNotFoundError(
                f"Domain set {key} is not managed", suggestion="List managed domain sets with 'certkeeper status'"
            )
        if cert.in_flight:
            raise CertkeeperError(
                f"A renewal for {key} is in progress", suggestion="Retry once the current attempt has finished"
            )

        del self._certs[key]
        async with self._write_lock:
            await self.db.delete("certificates", key, id_column="key")
        logger.info(f"Decommissioned domain set {key}")
        return cert

    def _row_to_certificate(self, row: dict) -> ManagedCertificate:
        """Convert database row to ManagedCertificate model."""
        return ManagedCertificate(
            key=row["key"],
            domains=deserialize_json(row["domains_json"]),
            status=CertificateStatus(row["status"]),
            cert_path=row["cert_path"],
            key_path=row["key_path"],
            chain_path=row["chain_path"],
            issuer=row.get("issuer"),
            serial_number=row.get("serial_number"),
            fingerprint_sha256=row.get("fingerprint_sha256"),
            issued_at=parse_db_datetime(row.get("issued_at")),
            expires_at=parse_db_datetime(row.get("expires_at")),
            created_at=parse_db_datetime(row.get("created_at")),
            renewal_attempts=row.get("renewal_attempts") or 0,
            last_attempt_at=parse_db_datetime(row.get("last_attempt_at")),
            next_attempt_at=parse_db_datetime(row.get("next_attempt_at")),
            last_renewed=parse_db_datetime(row.get("last_renewed")),
            last_error=row.get("last_error"),
            last_error_kind=FailureKind(row["last_error_kind"]) if row.get("last_error_kind") else None,
            last_reload_error=row.get("last_reload_error"),
        )

    def _certificate_to_db(self, cert: ManagedCertificate) -> dict:
        """Convert ManagedCertificate model to database row."""
        return {
            "key": cert.key,
            "domains_json": serialize_json(cert.domains),
            "status": cert.status.value,
            "cert_path": cert.cert_path,
            "key_path": cert.key_path,
            "chain_path": cert.chain_path,
            "issuer": cert.issuer,
            "serial_number": cert.serial_number,
            "fingerprint_sha256": cert.fingerprint_sha256,
            "issued_at": to_db_datetime(cert.issued_at),
            "expires_at": to_db_datetime(cert.expires_at),
            "created_at": to_db_datetime(cert.created_at),
            "renewal_attempts": cert.renewal_attempts,
            "last_attempt_at": to_db_datetime(cert.last_attempt_at),
            "next_attempt_at": to_db_datetime(cert.next_attempt_at),
            "last_renewed": to_db_datetime(cert.last_renewed),
            "last_error": cert.last_error,
            "last_error_kind": cert.last_error_kind.value if cert.last_error_kind else None,
            "last_reload_error": cert.last_reload_error,
        }
