"""
Renewal attempt models for the audit log.

Every attempt the scheduler makes is recorded once and never
modified afterwards; retry decisions are read back from this history.
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from certkeeper.core.errors import FailureKind
from certkeeper.models.certificate import utcnow


class AttemptOutcome(str, Enum):
    """Result of one renewal attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


class RenewalAttempt(BaseModel):
    """One renewal attempt for a domain set. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"att-{uuid.uuid4().hex[:12]}", description="Unique attempt identifier")
    domain_key: str = Field(..., description="Domain set key")
    attempt_number: int = Field(..., description="Consecutive attempt number since the last success")
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    outcome: AttemptOutcome

    # Failure details
    failure_kind: FailureKind | None = None
    error: str | None = None
    retry_delay_seconds: float | None = Field(None, description="Backoff delay chosen after this failure")
    degraded: bool = Field(default=False, description="Whether this failure marked the certificate degraded")

    # Issued certificate reference on success
    serial_number: str | None = None
    fingerprint_sha256: str | None = None
    expires_at: datetime | None = None

    # Reported separately from the renewal outcome
    reload_error: str | None = Field(None, description="Web server reload failure after a successful install")
