"""
Renewal result reporting.

Durably records every renewal attempt in an append-only table and
answers the monitoring questions: which certificates are degraded,
when the next renewal is due and why the last attempt failed.
"""

import logging
from datetime import timedelta

from certkeeper.core.cert_store import CertificateStore
from certkeeper.core.database import Database, parse_db_datetime, to_db_datetime
from certkeeper.core.errors import FailureKind
from certkeeper.models.attempt import AttemptOutcome, RenewalAttempt
from certkeeper.models.certificate import CertificateStatus, ManagedCertificate, utcnow
from certkeeper.models.status import CertificateReport, DaemonHealth, HealthReport

logger = logging.getLogger(__name__)


class ResultReporter:
    """Append-only attempt log plus read-only queries over the store."""

    def __init__(self, db: Database, store: CertificateStore, renewal_window: timedelta):
        self.db = db
        self.store = store
        self.renewal_window = renewal_window

    async def record(self, attempt: RenewalAttempt) -> RenewalAttempt:
        """
        Persist one attempt. Prior records are never touched.

        Args:
            attempt: Finished renewal attempt

        Returns:
            The recorded attempt
        """
        data = {
            "id": attempt.id,
            "domain_key": attempt.domain_key,
            "attempt_number": attempt.attempt_number,
            "started_at": to_db_datetime(attempt.started_at),
            "finished_at": to_db_datetime(attempt.finished_at),
            "outcome": attempt.outcome.value,
            "failure_kind": attempt.failure_kind.value if attempt.failure_kind else None,
            "error": attempt.error,
            "retry_delay_seconds": attempt.retry_delay_seconds,
            "degraded": attempt.degraded,
            "serial_number": attempt.serial_number,
            "fingerprint_sha256": attempt.fingerprint_sha256,
            "expires_at": to_db_datetime(attempt.expires_at),
            "reload_error": attempt.reload_error,
        }
        await self.db.insert("renewal_attempts", data)

        if attempt.outcome == AttemptOutcome.SUCCESS:
            logger.info(f"Renewal succeeded for {attempt.domain_key}, expires {attempt.expires_at}")
            if attempt.reload_error:
                logger.warning(
                    f"Certificate for {attempt.domain_key} installed but reload failed: {attempt.reload_error}"
                )
        elif attempt.degraded:
            logger.error(
                f"Renewal attempt {attempt.attempt_number} failed for {attempt.domain_key} "
                f"[{attempt.failure_kind.value}]: {attempt.error}; certificate is degraded"
            )
        else:
            logger.warning(
                f"Renewal attempt {attempt.attempt_number} failed for {attempt.domain_key} "
                f"[{attempt.failure_kind.value}]: {attempt.error}; retry in {attempt.retry_delay_seconds:.0f}s"
            )
        return attempt

    async def list_attempts(self, domain_key: str, limit: int = 50, offset: int = 0) -> list[RenewalAttempt]:
        """Recorded attempts for a domain set, newest first."""
        rows = await self.db.fetch_all(
            """
            SELECT * FROM renewal_attempts
            WHERE domain_key = ?
            ORDER BY started_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            (domain_key, limit, offset),
        )
        return [self._row_to_attempt(row) for row in rows]

    async def count_attempts(self, domain_key: str) -> int:
        return await self.db.count("renewal_attempts", "domain_key = ?", (domain_key,))

    async def last_attempt(self, domain_key: str) -> RenewalAttempt | None:
        attempts = await self.list_attempts(domain_key, limit=1)
        return attempts[0] if attempts else None

    async def last_failure_reason(self, domain_key: str) -> str | None:
        """Error message of the most recent failed attempt for a domain set."""
        row = await self.db.fetch_one(
            """
            SELECT failure_kind, error FROM renewal_attempts
            WHERE domain_key = ? AND outcome = ?
            ORDER BY started_at DESC, rowid DESC
            LIMIT 1
            """,
            (domain_key, AttemptOutcome.FAILURE.value),
        )
        if not row:
            return None
        return f"{row['failure_kind']}: {row['error']}"

    def degraded_count(self) -> int:
        return sum(1 for cert in self.store.snapshot() if cert.status == CertificateStatus.DEGRADED)

    def next_scheduled_renewal(self, domain_key: str | None = None):
        """Earliest time any (or the given) domain set is next renewed."""
        certs = self.store.snapshot()
        if domain_key is not None:
            certs = [cert for cert in certs if cert.key == domain_key]

        times = []
        for cert in certs:
            when = cert.next_renewal_at(self.renewal_window)
            # Nothing installed and no backoff pending: due immediately
            times.append(when if when is not None else cert.created_at)
        return min(times) if times else None

    async def certificate_report(self, cert: ManagedCertificate) -> CertificateReport:
        """Monitoring view of one domain set."""
        last = await self.last_attempt(cert.key)
        return CertificateReport(
            domain_key=cert.key,
            domains=cert.domains,
            status=cert.status,
            expires_at=cert.expires_at,
            days_until_expiry=cert.days_until_expiry(),
            next_renewal_at=cert.next_renewal_at(self.renewal_window),
            in_flight=cert.in_flight,
            attempts_since_success=cert.renewal_attempts,
            last_attempt_outcome=last.outcome if last else None,
            last_attempt_at=last.started_at if last else cert.last_attempt_at,
            last_error=cert.last_error,
            last_error_kind=cert.last_error_kind,
            last_reload_error=cert.last_reload_error,
        )

    async def health_report(self) -> HealthReport:
        """Daemon-wide summary with one entry per domain set."""
        reports = [await self.certificate_report(cert) for cert in self.store.snapshot()]

        degraded = sum(1 for r in reports if r.status == CertificateStatus.DEGRADED)
        failing = sum(1 for r in reports if r.last_attempt_outcome == AttemptOutcome.FAILURE)
        expired = any(r.expires_at is not None and r.expires_at <= utcnow() for r in reports)

        return HealthReport(
            status=DaemonHealth.DEGRADED if degraded or expired else DaemonHealth.OK,
            total=len(reports),
            healthy=sum(1 for r in reports if r.status == CertificateStatus.HEALTHY),
            pending=sum(1 for r in reports if r.status == CertificateStatus.PENDING),
            degraded=degraded,
            failing=failing,
            reload_errors=sum(1 for r in reports if r.last_reload_error),
            next_renewal_at=self.next_scheduled_renewal(),
            certificates=reports,
        )

    def _row_to_attempt(self, row: dict) -> RenewalAttempt:
        """Convert a database row to a RenewalAttempt."""
        return RenewalAttempt(
            id=row["id"],
            domain_key=row["domain_key"],
            attempt_number=row["attempt_number"],
            started_at=parse_db_datetime(row["started_at"]),
            finished_at=parse_db_datetime(row.get("finished_at")),
            outcome=AttemptOutcome(row["outcome"]),
            failure_kind=FailureKind(row["failure_kind"]) if row.get("failure_kind") else None,
            error=row.get("error"),
            retry_delay_seconds=row.get("retry_delay_seconds"),
            degraded=bool(row.get("degraded")),
            serial_number=row.get("serial_number"),
            fingerprint_sha256=row.get("fingerprint_sha256"),
            expires_at=parse_db_datetime(row.get("expires_at")),
            reload_error=row.get("reload_error"),
        )
