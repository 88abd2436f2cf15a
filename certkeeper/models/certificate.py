"""
Certificate models for the renewal daemon.

Provides Pydantic models for configured domain sets, managed
certificate records and certificates issued by the CA.
"""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from certkeeper.core.errors import FailureKind

_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_domain(name: str) -> str:
    """Validate and normalize one hostname."""
    name = name.strip().lower().rstrip(".")
    if not name:
        raise ValueError("Domain cannot be empty")
    if name.startswith("*."):
        raise ValueError("Wildcard certificates are not supported with HTTP-01 validation")
    if not _DOMAIN_RE.match(name):
        raise ValueError(f"Invalid domain format: {name}")
    if ".." in name:
        raise ValueError("Domain cannot contain consecutive dots")
    if len(name) > 253:
        raise ValueError(f"Domain is too long: {name}")
    return name


def domain_set_key(domains: List[str]) -> str:
    """Canonical identity of a domain set: sorted, de-duplicated, comma-joined."""
    return ",".join(sorted({normalize_domain(d) for d in domains}))


class CertificateStatus(str, Enum):
    """Renewal health of a managed certificate."""
    PENDING = "pending"      # Onboarded, no certificate installed yet
    HEALTHY = "healthy"      # Installed and renewing normally
    DEGRADED = "degraded"    # Repeated failures, needs manual intervention


class DomainSetConfig(BaseModel):
    """One entry of the domain-set file."""

    domains: List[str] = Field(..., min_length=1, max_length=100, description="Hostnames covered by one certificate")
    directory: Optional[str] = Field(None, description="Override for the certificate directory")

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: List[str]) -> List[str]:
        """Normalize names, keeping the configured order for the primary name."""
        validated = []
        for name in v:
            if not isinstance(name, str):
                raise ValueError(f"Domain must be a string, got {name!r}")
            name = normalize_domain(name)
            if name not in validated:
                validated.append(name)
        return validated

    @property
    def key(self) -> str:
        return domain_set_key(self.domains)

    @property
    def primary_domain(self) -> str:
        return self.domains[0]


class ManagedCertificate(BaseModel):
    """
    A domain set under management and the certificate installed for it.

    Issuance and expiry timestamps always come from the certificate file
    on disk, never from what the CA claimed to issue.
    """

    key: str = Field(..., description="Domain set key")
    domains: List[str] = Field(..., description="Hostnames, primary name first")
    status: CertificateStatus = Field(default=CertificateStatus.PENDING)

    # File paths
    cert_path: str = Field(..., description="Path to cert.pem")
    key_path: str = Field(..., description="Path to key.pem")
    chain_path: str = Field(..., description="Path to chain.pem (intermediate certificates)")

    # Installed certificate details
    issuer: Optional[str] = Field(None, description="Certificate issuer (CA)")
    serial_number: Optional[str] = Field(None, description="Certificate serial number")
    fingerprint_sha256: Optional[str] = Field(None, description="SHA-256 fingerprint of the certificate")
    issued_at: Optional[datetime] = Field(None, description="Certificate valid from")
    expires_at: Optional[datetime] = Field(None, description="Certificate expiry date")

    # Renewal bookkeeping
    created_at: datetime = Field(default_factory=utcnow)
    renewal_attempts: int = Field(default=0, description="Failed attempts since the last success")
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = Field(None, description="Earliest time the next attempt may start")
    last_renewed: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[FailureKind] = None
    last_reload_error: Optional[str] = Field(None, description="Reload failure after the last install")

    # Runtime only, never persisted
    in_flight: bool = Field(default=False, exclude=True)

    @property
    def primary_domain(self) -> str:
        return self.domains[0]

    @property
    def cert_dir(self) -> str:
        return str(Path(self.cert_path).parent)

    def days_until_expiry(self, now: Optional[datetime] = None) -> Optional[int]:
        """Calculate days until the installed certificate expires."""
        if self.expires_at is None:
            return None
        return (self.expires_at - (now or utcnow())).days

    def renewal_due_at(self, renewal_window: timedelta) -> Optional[datetime]:
        """When the certificate enters the renewal window, or None if nothing is installed."""
        if self.expires_at is None:
            return None
        return self.expires_at - renewal_window

    def next_renewal_at(self, renewal_window: timedelta) -> Optional[datetime]:
        """Earliest time the scheduler will try to renew, honouring backoff."""
        due = self.renewal_due_at(renewal_window)
        if self.next_attempt_at is not None and (due is None or self.next_attempt_at > due):
            return self.next_attempt_at
        return due


class IssuedCertificate(BaseModel):
    """PEM material returned by the CA for one domain set."""

    domains: List[str]
    cert_pem: bytes = Field(..., description="Leaf certificate")
    chain_pem: bytes = Field(default=b"", description="Intermediate certificates")
    key_pem: bytes = Field(..., description="Private key for the leaf certificate")

    @property
    def fullchain_pem(self) -> bytes:
        if self.chain_pem:
            return self.cert_pem + self.chain_pem
        return self.cert_pem
