"""
Certificate renewal scheduler.

Decides on each tick which certificates need renewing and drives the
attempts as asyncio tasks with bounded concurrency. All mutation of the
certificate store happens here.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from certkeeper.core.acme_client import AcmeClient
from certkeeper.core.backoff import BackoffPolicy
from certkeeper.core.cert_helpers import read_installed_certificate
from certkeeper.core.cert_store import CertificateStore, apply_certificate_details
from certkeeper.core.errors import AcmeError, FailureKind, InstallError, ReloadError
from certkeeper.core.installer import AtomicInstaller
from certkeeper.core.reloader import Reloader
from certkeeper.core.reporter import ResultReporter
from certkeeper.models.attempt import AttemptOutcome, RenewalAttempt
from certkeeper.models.certificate import CertificateStatus, ManagedCertificate, utcnow

logger = logging.getLogger(__name__)


class RenewalScheduler:
    """
    Renewal decisions and attempt execution.

    A certificate is due when it has no installed certificate or expires
    within the renewal window, its backoff delay has elapsed, and no
    attempt for it is already running.
    """

    def __init__(
        self,
        store: CertificateStore,
        acme: AcmeClient,
        installer: AtomicInstaller,
        reloader: Reloader,
        reporter: ResultReporter,
        backoff: BackoffPolicy,
        renewal_window: timedelta = timedelta(days=30),
        max_concurrency: int = 2,
        max_attempts: int = 5,
        ca_rejected_max_attempts: int = 2,
        degraded_retry: timedelta = timedelta(hours=24),
        attempt_timeout: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.acme = acme
        self.installer = installer
        self.reloader = reloader
        self.reporter = reporter
        self.backoff = backoff
        self.renewal_window = renewal_window
        self.max_concurrency = max_concurrency
        self.max_attempts = max_attempts
        self.ca_rejected_max_attempts = ca_rejected_max_attempts
        self.degraded_retry = degraded_retry
        self.attempt_timeout = attempt_timeout
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: dict[str, asyncio.Task] = {}
        self._closing = False

    @property
    def in_flight(self) -> list[str]:
        return sorted(self._tasks)

    def is_due(self, cert: ManagedCertificate, now: datetime) -> bool:
        """Check whether a certificate should be renewed at `now`."""
        if cert.in_flight:
            return False
        if cert.next_attempt_at is not None and cert.next_attempt_at > now:
            return False
        if cert.expires_at is None:
            return True
        return cert.expires_at - now <= self.renewal_window

    def due_certificates(self, now: datetime) -> list[ManagedCertificate]:
        """Due certificates, closest to expiry first (missing certificates before all)."""
        due = [cert for cert in self.store.snapshot() if self.is_due(cert, now)]
        due.sort(key=lambda c: (c.expires_at is not None, c.expires_at or now, c.key))
        return due

    async def tick(self, now: datetime | None = None) -> list[str]:
        """
        Enqueue a renewal for every due certificate.

        Args:
            now: Evaluation time (defaults to the scheduler clock)

        Returns:
            Domain set keys enqueued by this tick
        """
        if self._closing:
            logger.info("Scheduler is shutting down, skipping tick")
            return []

        now = now or self._clock()
        enqueued = [cert.key for cert in self.due_certificates(now) if self._enqueue(cert.key)]

        if enqueued:
            logger.info(f"Renewal check enqueued {len(enqueued)} certificate(s): {', '.join(enqueued)}")
        else:
            logger.debug("Renewal check complete: nothing due")
        return enqueued

    async def renew_now(self, key: str) -> bool:
        """
        Force a renewal regardless of the renewal window and backoff.

        Returns:
            False if the domain set is unknown or already being renewed
        """
        if self._closing:
            return False
        enqueued = self._enqueue(key)
        if enqueued:
            logger.info(f"Forced renewal enqueued for {key}")
        return enqueued

    async def wait_idle(self) -> None:
        """Wait until no attempt is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop enqueuing and let running attempts finish or time out."""
        self._closing = True
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} renewal attempt(s) to finish")
        await self.wait_idle()

    def _enqueue(self, key: str) -> bool:
        if not self.store.try_mark_in_flight(key):
            return False
        task = asyncio.create_task(self._run_attempt(key), name=f"renew:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda _, key=key: self._tasks.pop(key, None))
        return True

    async def _run_attempt(self, key: str) -> None:
        try:
            async with self._semaphore:
                cert = self.store.get(key)
                if cert is None:
                    return
                attempt = await self._attempt(cert)
            await self.reporter.record(attempt)
        except Exception as e:
            logger.exception(f"Unexpected error in renewal of {key}: {e}")
        finally:
            self.store.clear_in_flight(key)

    async def _attempt(self, cert: ManagedCertificate) -> RenewalAttempt:
        started = self._clock()
        logger.info(f"Renewing certificate for {cert.key} (attempt {cert.renewal_attempts + 1})")

        try:
            issued = await asyncio.wait_for(self.acme.request(cert.domains), timeout=self.attempt_timeout)
        except asyncio.TimeoutError:
            return await self._fail(
                cert, started, FailureKind.NETWORK_ERROR, f"CA exchange timed out after {self.attempt_timeout}s"
            )
        except AcmeError as e:
            return await self._fail(cert, started, e.kind, e.message)
        except Exception as e:
            logger.exception(f"Unexpected error requesting certificate for {cert.key}")
            return await self._fail(cert, started, FailureKind.NETWORK_ERROR, f"Unexpected error: {e}")

        try:
            # The file swap is never interrupted by shutdown
            await asyncio.shield(asyncio.to_thread(self.installer.install, cert.cert_dir, issued))
        except InstallError as e:
            await self._resync_from_disk(cert)
            return await self._fail(cert, started, FailureKind.INSTALL_ERROR, e.message)

        try:
            return await self._succeed(cert, started)
        except OSError as e:
            logger.error(f"Installed certificate for {cert.key} cannot be read back: {e}")
            return await self._fail(
                cert, started, FailureKind.INSTALL_ERROR, f"Installed certificate at {cert.cert_path} is unreadable: {e}"
            )

    async def _resync_from_disk(self, cert: ManagedCertificate) -> None:
        """Finish or discard a half-done install and re-read what is actually installed."""
        try:
            await asyncio.to_thread(self.installer.recover, cert.cert_dir)
            apply_certificate_details(cert, read_installed_certificate(cert.cert_path))
        except OSError as e:
            logger.error(f"Recovery of {cert.cert_dir} failed: {e}")

    async def _succeed(self, cert: ManagedCertificate, started: datetime) -> RenewalAttempt:
        attempt_number = cert.renewal_attempts + 1
        apply_certificate_details(cert, read_installed_certificate(cert.cert_path))
        cert.status = CertificateStatus.HEALTHY
        cert.renewal_attempts = 0
        cert.last_error = None
        cert.last_error_kind = None
        cert.next_attempt_at = None
        cert.last_attempt_at = started
        cert.last_renewed = self._clock()

        reload_error = None
        try:
            await self.reloader.reload()
        except ReloadError as e:
            reload_error = e.message
        except Exception as e:
            logger.exception(f"Unexpected error reloading web server for {cert.key}")
            reload_error = str(e)
        cert.last_reload_error = reload_error

        await self.store.save(cert)
        return RenewalAttempt(
            domain_key=cert.key,
            attempt_number=attempt_number,
            started_at=started,
            finished_at=self._clock(),
            outcome=AttemptOutcome.SUCCESS,
            serial_number=cert.serial_number,
            fingerprint_sha256=cert.fingerprint_sha256,
            expires_at=cert.expires_at,
            reload_error=reload_error,
        )

    async def _fail(
        self, cert: ManagedCertificate, started: datetime, kind: FailureKind, message: str
    ) -> RenewalAttempt:
        now = self._clock()
        cert.renewal_attempts += 1
        cert.last_error = message
        cert.last_error_kind = kind
        cert.last_attempt_at = started

        threshold = self.ca_rejected_max_attempts if kind == FailureKind.CA_REJECTED else self.max_attempts
        degraded = cert.renewal_attempts >= threshold
        if degraded:
            cert.status = CertificateStatus.DEGRADED
            delay = max(self.degraded_retry.total_seconds(), self.backoff.cap)
        else:
            cert.status = CertificateStatus.HEALTHY if cert.expires_at is not None else CertificateStatus.PENDING
            # Install failures are retried on the next tick
            delay = 0.0 if kind == FailureKind.INSTALL_ERROR else self.backoff.delay(cert.renewal_attempts)
        cert.next_attempt_at = now + timedelta(seconds=delay)

        await self.store.save(cert)
        return RenewalAttempt(
            domain_key=cert.key,
            attempt_number=cert.renewal_attempts,
            started_at=started,
            finished_at=now,
            outcome=AttemptOutcome.FAILURE,
            failure_kind=kind,
            error=message,
            retry_delay_seconds=delay,
            degraded=degraded,
        )
