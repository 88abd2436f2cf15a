"""
Unit tests for daemon wiring and startup.
"""

import asyncio
import json

import pytest

from certkeeper.core.daemon import CHECK_JOB_ID, build_daemon
from certkeeper.core.errors import ConfigError
from certkeeper.core.installer import COMMIT_MARKER
from certkeeper.models.certificate import CertificateStatus, DomainSetConfig


class TestInitialize:
    @pytest.mark.asyncio
    async def test_onboards_configured_domain_sets(self, daemon):
        keys = [cert.key for cert in daemon.store.snapshot()]
        assert keys == ["api.example.com", "example.com,www.example.com"]
        assert all(cert.status == CertificateStatus.HEALTHY for cert in daemon.store.snapshot())

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, daemon, settings, acme, reloader):
        await daemon.trigger_check()
        await daemon.scheduler.wait_idle()
        renewed = daemon.store.get("example.com,www.example.com")

        restarted = build_daemon(settings, daemon.domain_sets, acme_client=acme, reloader=reloader)
        summary = await restarted.initialize()

        assert summary["onboarded"] == []
        assert restarted.store.get(renewed.key).serial_number == renewed.serial_number
        assert await restarted.reporter.count_attempts(renewed.key) == 1

    @pytest.mark.asyncio
    async def test_completes_interrupted_install(
        self, settings, acme, reloader, cert_base_dir, installed_factory, issued_factory
    ):
        cert_dir = installed_factory(cert_base_dir / "example.com", ["example.com"], days=5)
        issued = issued_factory(["example.com"])
        # A committed install that crashed before any rename
        (cert_dir / "key.pem.tmp").write_bytes(issued.key_pem)
        (cert_dir / "cert.pem.tmp").write_bytes(issued.cert_pem)
        (cert_dir / COMMIT_MARKER).write_text(json.dumps(["key.pem", "cert.pem"]))

        renewal_daemon = build_daemon(
            settings, [DomainSetConfig(domains=["example.com"])], acme_client=acme, reloader=reloader
        )
        summary = await renewal_daemon.initialize()

        assert summary["recovered"] == [str(cert_dir)]
        assert (cert_dir / "cert.pem").read_bytes() == issued.cert_pem
        assert renewal_daemon.store.get("example.com").days_until_expiry() >= 88

    @pytest.mark.asyncio
    async def test_orphaned_domain_sets_are_reported(self, daemon, settings, acme, reloader):
        restarted = build_daemon(
            settings, [DomainSetConfig(domains=["api.example.com"])], acme_client=acme, reloader=reloader
        )
        summary = await restarted.initialize()

        assert summary["orphaned"] == ["example.com,www.example.com"]
        assert len(restarted.store) == 2


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_initial_check_and_stop_waits(self, daemon, acme):
        await daemon.start()
        assert CHECK_JOB_ID in daemon.get_next_run_times()

        for _ in range(50):
            if acme.calls:
                break
            await asyncio.sleep(0.01)
        await daemon.stop()

        assert acme.calls == [["example.com", "www.example.com"]]
        assert daemon.scheduler.in_flight == []


class TestBuildDaemon:
    def test_reads_domain_file(self, settings, tmp_path):
        (tmp_path / "domains.yml").write_text("domain_sets:\n  - [example.com]\n")
        renewal_daemon = build_daemon(settings)
        assert [d.key for d in renewal_daemon.domain_sets] == ["example.com"]

    def test_missing_domain_file(self, settings):
        with pytest.raises(ConfigError):
            build_daemon(settings)

    def test_invalid_backoff(self, settings):
        settings.backoff_base_seconds = 100
        settings.backoff_max_seconds = 10
        with pytest.raises(ConfigError, match="backoff"):
            build_daemon(settings, [])
