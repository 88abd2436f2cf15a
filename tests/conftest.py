"""
Global test fixtures.

Provides self-signed certificate material, a temporary state database
and scripted stand-ins for the CA and the web server.
"""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certkeeper.config import Settings
from certkeeper.core.backoff import BackoffPolicy
from certkeeper.core.cert_store import CertificateStore
from certkeeper.core.daemon import build_daemon
from certkeeper.core.database import Database
from certkeeper.core.errors import ReloadError
from certkeeper.core.installer import AtomicInstaller
from certkeeper.core.reporter import ResultReporter
from certkeeper.core.scheduler import RenewalScheduler
from certkeeper.models.certificate import DomainSetConfig, IssuedCertificate, utcnow


def make_certificate(
    domains: list[str],
    expires_at: datetime | None = None,
    issued_at: datetime | None = None,
    issuer_name: str = "Test CA",
) -> tuple[bytes, bytes]:
    """Create a self-signed certificate; returns (cert_pem, key_pem)."""
    now = utcnow()
    expires_at = expires_at or now + timedelta(days=90)
    issued_at = issued_at or min(now, expires_at) - timedelta(days=1)

    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued_at)
        .not_valid_after(expires_at)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert.public_bytes(serialization.Encoding.PEM), key_pem


def make_issued(domains: list[str], days: int = 90) -> IssuedCertificate:
    """Certificate material as the CA would return it."""
    cert_pem, key_pem = make_certificate(domains, expires_at=utcnow() + timedelta(days=days))
    chain_pem, _ = make_certificate(["intermediate.test"], issuer_name="Test Root")
    return IssuedCertificate(domains=domains, cert_pem=cert_pem, chain_pem=chain_pem, key_pem=key_pem)


def write_installed(cert_dir: Path, domains: list[str], days: int) -> Path:
    """Place a certificate expiring in `days` days into a certificate directory."""
    cert_dir.mkdir(parents=True, exist_ok=True)
    cert_pem, key_pem = make_certificate(domains, expires_at=utcnow() + timedelta(days=days))
    (cert_dir / "cert.pem").write_bytes(cert_pem)
    (cert_dir / "key.pem").write_bytes(key_pem)
    (cert_dir / "chain.pem").write_bytes(b"")
    (cert_dir / "fullchain.pem").write_bytes(cert_pem)
    return cert_dir


class FakeClock:
    """Settable clock for the scheduler."""

    def __init__(self, now: datetime | None = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeAcmeClient:
    """
    Scripted CA.

    Each call pops the next scripted result: an exception is raised, an
    IssuedCertificate is returned, and once the script runs out a fresh
    90-day certificate is issued.
    """

    def __init__(self, results=None, delay: float = 0.0):
        self.results = list(results or [])
        self.delay = delay
        self.calls: list[list[str]] = []
        self.active = 0
        self.max_active = 0

    async def request(self, domains: list[str]) -> IssuedCertificate:
        self.calls.append(list(domains))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.pop(0) if self.results else None
            if isinstance(result, BaseException):
                raise result
            return result or make_issued(domains)
        finally:
            self.active -= 1


class FakeReloader:
    def __init__(self, error: str | None = None):
        self.error = error
        self.calls = 0

    async def reload(self) -> None:
        self.calls += 1
        if self.error:
            raise ReloadError(self.error)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cert_base_dir(tmp_path):
    path = tmp_path / "live"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "state" / "state.db"))
    await database.initialize()
    return database


@pytest.fixture
def store(db):
    return CertificateStore(db)


@pytest.fixture
def reporter(db, store):
    return ResultReporter(db, store, timedelta(days=30))


@pytest.fixture
def acme():
    return FakeAcmeClient()


@pytest.fixture
def reloader():
    return FakeReloader()


@pytest.fixture
def make_scheduler(store, reporter, acme, reloader, clock):
    """Build a scheduler over the shared fixtures; keyword arguments override defaults."""

    def _make(**overrides) -> RenewalScheduler:
        options = dict(
            acme=acme,
            installer=AtomicInstaller(),
            reloader=reloader,
            backoff=BackoffPolicy(base=1, cap=8, jitter=False),
            renewal_window=timedelta(days=30),
            max_concurrency=2,
            max_attempts=5,
            ca_rejected_max_attempts=2,
            degraded_retry=timedelta(hours=24),
            attempt_timeout=5.0,
            clock=clock,
        )
        options.update(overrides)
        return RenewalScheduler(store=store, reporter=reporter, **options)

    return _make


@pytest.fixture
def onboard(store, cert_base_dir):
    """Onboard a domain set, optionally with an installed certificate expiring in `days` days."""

    async def _onboard(domains: list[str], days: int | None = None):
        cert_dir = cert_base_dir / domains[0]
        if days is not None:
            write_installed(cert_dir, domains, days)
        return await store.onboard(DomainSetConfig(domains=domains), cert_dir)

    return _onboard


@pytest.fixture
def certificate_factory():
    return make_certificate


@pytest.fixture
def issued_factory():
    return make_issued


@pytest.fixture
def installed_factory():
    return write_installed


@pytest.fixture
def settings(tmp_path, cert_base_dir):
    return Settings(
        _env_file=None,
        CERT_BASE_DIR=str(cert_base_dir),
        STATE_DB_PATH=str(tmp_path / "daemon" / "state.db"),
        DOMAINS_FILE=str(tmp_path / "domains.yml"),
        ACME_CHALLENGE_DIR=str(tmp_path / "challenges"),
        RELOAD_METHOD="none",
        BACKOFF_BASE_SECONDS=1,
        BACKOFF_MAX_SECONDS=8,
        BACKOFF_JITTER=False,
    )


@pytest_asyncio.fixture
async def daemon(settings, acme, reloader, cert_base_dir):
    """Initialized daemon managing two domain sets, one of them due for renewal."""
    write_installed(cert_base_dir / "example.com", ["example.com", "www.example.com"], days=10)
    write_installed(cert_base_dir / "api.example.com", ["api.example.com"], days=80)
    domain_sets = [
        DomainSetConfig(domains=["example.com", "www.example.com"]),
        DomainSetConfig(domains=["api.example.com"]),
    ]
    renewal_daemon = build_daemon(settings, domain_sets, acme_client=acme, reloader=reloader)
    await renewal_daemon.initialize()
    yield renewal_daemon
    await renewal_daemon.scheduler.shutdown()
