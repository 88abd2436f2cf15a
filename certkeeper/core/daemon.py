"""
Renewal daemon.

Periodic driver for the renewal scheduler using APScheduler, plus the
wiring that builds every component from settings.
"""

import asyncio
import logging
from datetime import timedelta, timezone
from pathlib import Path

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from certkeeper.config import Settings, load_domain_sets, resolve_cert_dir
from certkeeper.core.acme_client import AcmeClient, LetsEncryptAcmeClient
from certkeeper.core.backoff import BackoffPolicy
from certkeeper.core.cert_store import CertificateStore
from certkeeper.core.database import Database
from certkeeper.core.errors import ConfigError
from certkeeper.core.installer import AtomicInstaller
from certkeeper.core.reloader import Reloader, build_reloader
from certkeeper.core.reporter import ResultReporter
from certkeeper.core.scheduler import RenewalScheduler
from certkeeper.models.certificate import DomainSetConfig, utcnow

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "renewal_check"


class RenewalDaemon:
    """
    Owns the state database, certificate store and renewal scheduler.

    Runs a renewal check once at startup and then every
    RENEWAL_CHECK_INTERVAL_MINUTES.
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        store: CertificateStore,
        reporter: ResultReporter,
        installer: AtomicInstaller,
        scheduler: RenewalScheduler,
        domain_sets: list[DomainSetConfig],
    ):
        self.settings = settings
        self.db = db
        self.store = store
        self.reporter = reporter
        self.installer = installer
        self.scheduler = scheduler
        self.domain_sets = domain_sets
        self.timer = AsyncIOScheduler(timezone=timezone.utc)
        self._initialized = False
        self._started = False

    async def initialize(self) -> dict:
        """
        Load state, finish interrupted installs and onboard configured domain sets.

        Returns:
            Summary with onboarded, orphaned and recovered domain sets
        """
        await self.db.initialize()
        await self.store.load()

        cert_dirs = {Path(cert.cert_dir) for cert in self.store.snapshot()}
        cert_dirs.update(resolve_cert_dir(self.settings, domain_set) for domain_set in self.domain_sets)

        recovered = []
        for cert_dir in sorted(cert_dirs):
            action = await asyncio.to_thread(self.installer.recover, cert_dir)
            if action is not None:
                recovered.append(str(cert_dir))
        if recovered:
            # Expiry must reflect the files that recovery left in place
            await self.store.load()

        added, orphaned = await self.store.sync(
            self.domain_sets, lambda domain_set: resolve_cert_dir(self.settings, domain_set)
        )
        self._initialized = True
        logger.info(f"Managing {len(self.store)} domain sets ({len(added)} newly onboarded)")
        return {"onboarded": added, "orphaned": orphaned, "recovered": recovered}

    async def start(self) -> None:
        """Start the periodic renewal check."""
        if self._started:
            logger.warning("Renewal daemon already started")
            return
        if not self._initialized:
            await self.initialize()

        self.timer.add_job(
            self._check,
            IntervalTrigger(minutes=self.settings.renewal_check_interval_minutes),
            id=CHECK_JOB_ID,
            name="Certificate Renewal Check",
            next_run_time=utcnow(),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.timer.start()
        self._started = True
        logger.info(
            f"Renewal daemon started: checking every {self.settings.renewal_check_interval_minutes} minutes"
        )

    async def stop(self) -> None:
        """Stop checking and wait for running attempts to finish or time out."""
        if self._started:
            self.timer.shutdown(wait=False)
            self._started = False
        await self.scheduler.shutdown()
        logger.info("Renewal daemon stopped")

    async def _check(self) -> None:
        try:
            await self.scheduler.tick()
        except Exception as e:
            logger.exception(f"Error in renewal check: {e}")

    async def trigger_check(self) -> list[str]:
        """Run a renewal check now, outside the timer."""
        logger.info("Manual renewal check triggered")
        return await self.scheduler.tick()

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for all jobs."""
        jobs = {}
        for job in self.timer.get_jobs():
            jobs[job.id] = {"name": job.name, "next_run": job.next_run_time.isoformat() if job.next_run_time else None}
        return jobs


def build_daemon(
    settings: Settings,
    domain_sets: list[DomainSetConfig] | None = None,
    acme_client: AcmeClient | None = None,
    reloader: Reloader | None = None,
) -> RenewalDaemon:
    """
    Wire every daemon component from settings.

    Args:
        settings: Daemon settings
        domain_sets: Managed domain sets (read from DOMAINS_FILE when omitted)
        acme_client: CA client override
        reloader: Web server reloader override

    Raises:
        ConfigError: invalid domain file or reload settings
    """
    if domain_sets is None:
        domain_sets = load_domain_sets(settings.domains_file)

    db = Database(settings.state_db_path)
    store = CertificateStore(db)
    renewal_window = timedelta(days=settings.cert_renewal_days)
    reporter = ResultReporter(db, store, renewal_window)
    installer = AtomicInstaller()

    if acme_client is None:
        acme_client = LetsEncryptAcmeClient(
            db,
            directory_url=settings.directory_url,
            challenge_dir=settings.acme_challenge_dir,
            email=settings.acme_account_email,
            key_size=settings.cert_key_size,
        )
    if reloader is None:
        reloader = build_reloader(settings)

    try:
        backoff = BackoffPolicy(
            base=settings.backoff_base_seconds, cap=settings.backoff_max_seconds, jitter=settings.backoff_jitter
        )
    except ValueError as e:
        raise ConfigError(f"Invalid backoff settings: {e}")

    scheduler = RenewalScheduler(
        store,
        acme_client,
        installer,
        reloader,
        reporter,
        backoff=backoff,
        renewal_window=renewal_window,
        max_concurrency=settings.renewal_max_concurrency,
        max_attempts=settings.renewal_max_attempts,
        ca_rejected_max_attempts=settings.ca_rejected_max_attempts,
        degraded_retry=timedelta(hours=settings.degraded_retry_hours),
        attempt_timeout=settings.renewal_attempt_timeout,
    )
    return RenewalDaemon(settings, db, store, reporter, installer, scheduler, domain_sets)
