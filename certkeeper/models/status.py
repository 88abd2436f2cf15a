"""
Monitoring response models.

Shapes returned by the monitoring API and `certkeeper status`.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from certkeeper.core.errors import FailureKind
from certkeeper.models.attempt import AttemptOutcome, RenewalAttempt
from certkeeper.models.certificate import CertificateStatus


class DaemonHealth(str, Enum):
    """Overall daemon health."""
    OK = "ok"
    DEGRADED = "degraded"


class CertificateReport(BaseModel):
    """Monitoring view of one domain set."""

    domain_key: str
    domains: List[str]
    status: CertificateStatus
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    next_renewal_at: Optional[datetime] = None
    in_flight: bool = False
    attempts_since_success: int = 0
    last_attempt_outcome: Optional[AttemptOutcome] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[FailureKind] = None
    last_reload_error: Optional[str] = None


class HealthReport(BaseModel):
    """Daemon-wide health summary."""

    status: DaemonHealth
    total: int = Field(..., description="Managed domain sets")
    healthy: int = 0
    pending: int = 0
    degraded: int = 0
    failing: int = Field(default=0, description="Domain sets whose last attempt failed")
    reload_errors: int = Field(default=0, description="Domain sets whose last reload failed")
    next_renewal_at: Optional[datetime] = None
    certificates: List[CertificateReport] = Field(default_factory=list)


class AttemptHistoryResponse(BaseModel):
    """Recorded attempts for one domain set, newest first."""

    domain_key: str
    attempts: List[RenewalAttempt] = Field(default_factory=list)
    total: int = 0


class RenewalTriggerResponse(BaseModel):
    """Result of a manually triggered check or renewal."""

    status: str = "accepted"
    enqueued: List[str] = Field(default_factory=list)
    message: str = ""


class DecommissionResponse(BaseModel):
    """A domain set that is no longer managed."""

    domain_key: str
    message: str = ""
