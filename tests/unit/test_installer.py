"""
Unit tests for atomic certificate installation.

Crashes are simulated by making os.replace fail part-way through, then
running recovery the way the daemon does at startup.
"""

import os
import stat
from unittest.mock import patch

import pytest

from certkeeper.core.cert_helpers import certificate_matches_key
from certkeeper.core.errors import InstallError
from certkeeper.core.installer import COMMIT_MARKER, AtomicInstaller


def leftovers(cert_dir):
    return sorted(p.name for p in cert_dir.iterdir() if p.name.endswith(".tmp") or p.name == COMMIT_MARKER)


def installed_pair_matches(cert_dir) -> bool:
    return certificate_matches_key((cert_dir / "cert.pem").read_bytes(), (cert_dir / "key.pem").read_bytes())


def failing_replace(fail_on_call: int):
    """os.replace that raises on the n-th call (1-based)."""
    real_replace = os.replace
    calls = {"count": 0}

    def _replace(src, dst):
        calls["count"] += 1
        if calls["count"] == fail_on_call:
            raise OSError("simulated crash")
        return real_replace(src, dst)

    return _replace


class TestInstall:
    def test_install_writes_all_files(self, tmp_path, issued_factory):
        cert_dir = tmp_path / "example.com"
        issued = issued_factory(["example.com"])

        paths = AtomicInstaller().install(cert_dir, issued)

        assert (cert_dir / "cert.pem").read_bytes() == issued.cert_pem
        assert (cert_dir / "key.pem").read_bytes() == issued.key_pem
        assert (cert_dir / "chain.pem").read_bytes() == issued.chain_pem
        assert (cert_dir / "fullchain.pem").read_bytes() == issued.cert_pem + issued.chain_pem
        assert paths["cert_path"] == str(cert_dir / "cert.pem")
        assert leftovers(cert_dir) == []

    def test_private_key_is_owner_only(self, tmp_path, issued_factory):
        cert_dir = tmp_path / "example.com"
        AtomicInstaller().install(cert_dir, issued_factory(["example.com"]))

        mode = stat.S_IMODE((cert_dir / "key.pem").stat().st_mode)
        assert mode == 0o600

    def test_replaces_existing_certificate(self, tmp_path, issued_factory, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        issued = issued_factory(["example.com"])

        AtomicInstaller().install(cert_dir, issued)

        assert (cert_dir / "cert.pem").read_bytes() == issued.cert_pem
        assert installed_pair_matches(cert_dir)

    def test_mismatched_key_is_rejected_before_writing(self, tmp_path, issued_factory, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        old_cert = (cert_dir / "cert.pem").read_bytes()
        issued = issued_factory(["example.com"])
        issued = issued.model_copy(update={"key_pem": issued_factory(["example.com"]).key_pem})

        with pytest.raises(InstallError) as exc_info:
            AtomicInstaller().install(cert_dir, issued)

        assert "does not match" in exc_info.value.message
        assert (cert_dir / "cert.pem").read_bytes() == old_cert
        assert leftovers(cert_dir) == []

    def test_invalid_pem_is_rejected(self, tmp_path, issued_factory):
        issued = issued_factory(["example.com"]).model_copy(update={"cert_pem": b"not a certificate"})

        with pytest.raises(InstallError):
            AtomicInstaller().install(tmp_path / "example.com", issued)


class TestCrashRecovery:
    def test_crash_before_any_rename_keeps_old_pair(self, tmp_path, issued_factory, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        old_cert = (cert_dir / "cert.pem").read_bytes()
        installer = AtomicInstaller()

        # First replace is the commit marker: the install never commits
        with patch("certkeeper.core.installer.os.replace", side_effect=failing_replace(1)):
            with pytest.raises(InstallError):
                installer.install(cert_dir, issued_factory(["example.com"]))

        installer.recover(cert_dir)

        assert (cert_dir / "cert.pem").read_bytes() == old_cert
        assert installed_pair_matches(cert_dir)
        assert leftovers(cert_dir) == []

    def test_crash_after_one_rename_rolls_forward(self, tmp_path, issued_factory, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        issued = issued_factory(["example.com"])
        installer = AtomicInstaller()

        # Marker, then key.pem succeed; cert.pem fails
        with patch("certkeeper.core.installer.os.replace", side_effect=failing_replace(3)):
            with pytest.raises(InstallError):
                installer.install(cert_dir, issued)

        assert (cert_dir / "key.pem").read_bytes() == issued.key_pem
        assert not installed_pair_matches(cert_dir)
        assert (cert_dir / COMMIT_MARKER).exists()

        assert installer.recover(cert_dir) == "rolled_forward"

        assert (cert_dir / "cert.pem").read_bytes() == issued.cert_pem
        assert installed_pair_matches(cert_dir)
        assert leftovers(cert_dir) == []

    def test_uncommitted_staging_files_are_discarded(self, tmp_path, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        (cert_dir / "cert.pem.tmp").write_bytes(b"partial")
        (cert_dir / "key.pem.tmp").write_bytes(b"partial")

        assert AtomicInstaller().recover(cert_dir) == "discarded"
        assert leftovers(cert_dir) == []
        assert installed_pair_matches(cert_dir)

    def test_recover_clean_directory_is_noop(self, tmp_path, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        assert AtomicInstaller().recover(cert_dir) is None

    def test_recover_missing_directory(self, tmp_path):
        assert AtomicInstaller().recover(tmp_path / "missing") is None

    def test_corrupt_marker_discards(self, tmp_path, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        (cert_dir / "cert.pem.tmp").write_bytes(b"partial")
        (cert_dir / COMMIT_MARKER).write_text("{not json")

        assert AtomicInstaller().recover(cert_dir) == "discarded"
        assert leftovers(cert_dir) == []

    def test_failed_roll_forward_keeps_committed_files(self, tmp_path, issued_factory, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        committed = issued_factory(["example.com"])
        installer = AtomicInstaller()
        with patch("certkeeper.core.installer.os.replace", side_effect=failing_replace(3)):
            with pytest.raises(InstallError):
                installer.install(cert_dir, committed)

        # The next install cannot finish the interrupted one
        with patch("certkeeper.core.installer.os.replace", side_effect=failing_replace(1)):
            with pytest.raises(InstallError, match="recover"):
                installer.install(cert_dir, issued_factory(["example.com"]))

        assert (cert_dir / COMMIT_MARKER).exists()
        assert (cert_dir / "cert.pem.tmp").read_bytes() == committed.cert_pem

        assert installer.recover(cert_dir) == "rolled_forward"
        assert (cert_dir / "cert.pem").read_bytes() == committed.cert_pem
        assert installed_pair_matches(cert_dir)
        assert leftovers(cert_dir) == []

    def test_staged_files_of_committed_install_are_not_discarded(self, tmp_path, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        (cert_dir / "cert.pem.tmp").write_bytes(b"committed")
        (cert_dir / COMMIT_MARKER).write_text('["cert.pem"]')

        assert AtomicInstaller()._discard_staged(cert_dir) is False
        assert (cert_dir / "cert.pem.tmp").exists()

    def test_next_install_finishes_interrupted_one_first(self, tmp_path, issued_factory, installed_factory):
        cert_dir = installed_factory(tmp_path / "example.com", ["example.com"], days=5)
        installer = AtomicInstaller()
        with patch("certkeeper.core.installer.os.replace", side_effect=failing_replace(3)):
            with pytest.raises(InstallError):
                installer.install(cert_dir, issued_factory(["example.com"]))

        newest = issued_factory(["example.com"])
        installer.install(cert_dir, newest)

        assert (cert_dir / "cert.pem").read_bytes() == newest.cert_pem
        assert installed_pair_matches(cert_dir)
        assert leftovers(cert_dir) == []
