"""
Atomic certificate installation.

New files are staged next to their targets as `<name>.tmp` and fsynced.
A commit marker listing the staged files is then written atomically;
once it exists the install is committed and every staged file is
renamed into place. `recover()` finishes a committed install (or
discards an uncommitted one) after a crash, so the files on disk always
end up as the complete old set or the complete new set.
"""

import json
import logging
import os
from pathlib import Path

from certkeeper.core.cert_helpers import certificate_matches_key
from certkeeper.core.cert_store import CERT_FILENAME, CHAIN_FILENAME, FULLCHAIN_FILENAME, KEY_FILENAME
from certkeeper.core.errors import InstallError
from certkeeper.models.certificate import IssuedCertificate

logger = logging.getLogger(__name__)

STAGING_SUFFIX = ".tmp"
COMMIT_MARKER = ".install-commit"


class AtomicInstaller:
    """Replaces a domain set's certificate files without exposing a mixed set."""

    def install(self, cert_dir: str | Path, issued: IssuedCertificate) -> dict:
        """
        Install freshly issued certificate material.

        Blocking; run it in a worker thread from async code.

        Args:
            cert_dir: Directory holding cert.pem, key.pem, chain.pem and fullchain.pem
            issued: Certificate, chain and key returned by the CA

        Returns:
            Dict with paths to the installed files

        Raises:
            InstallError: staging or renaming failed
        """
        cert_dir = Path(cert_dir)
        files = [
            (KEY_FILENAME, issued.key_pem, 0o600),
            (CERT_FILENAME, issued.cert_pem, 0o644),
            (CHAIN_FILENAME, issued.chain_pem, 0o644),
            (FULLCHAIN_FILENAME, issued.fullchain_pem, 0o644),
        ]
        names = [name for name, _, _ in files]

        try:
            if not certificate_matches_key(issued.cert_pem, issued.key_pem):
                raise InstallError(
                    f"Issued certificate for {issued.domains[0]} does not match its private key",
                    suggestion="The CA response or key generation is inconsistent; the next attempt reissues",
                )
        except ValueError as e:
            raise InstallError(f"Issued certificate material is not valid PEM: {e}")

        try:
            cert_dir.mkdir(parents=True, exist_ok=True)
            self.recover(cert_dir)
        except OSError as e:
            raise InstallError(
                f"Failed to recover interrupted install in {cert_dir}: {e}",
                suggestion="Staged files are kept; recovery is retried before the next install",
            )

        try:
            for name, data, mode in files:
                self._write_synced(cert_dir / (name + STAGING_SUFFIX), data, mode)

            # Commit point
            marker_tmp = cert_dir / (COMMIT_MARKER + STAGING_SUFFIX)
            self._write_synced(marker_tmp, json.dumps(names).encode("utf-8"), 0o600)
            os.replace(marker_tmp, cert_dir / COMMIT_MARKER)
            self._fsync_dir(cert_dir)
        except OSError as e:
            if (cert_dir / COMMIT_MARKER).exists():
                raise InstallError(
                    f"Failed to sync committed install in {cert_dir}: {e}",
                    suggestion="The committed install is completed by the next recovery",
                )
            self._discard_staged(cert_dir)
            raise InstallError(f"Failed to stage certificate files in {cert_dir}: {e}")

        try:
            self._roll_forward(cert_dir, names)
        except OSError as e:
            raise InstallError(
                f"Failed to move certificate files into place in {cert_dir}: {e}",
                suggestion="The committed install is completed by the next recovery",
            )

        logger.info(f"Installed certificate files in {cert_dir}")
        return {
            "cert_path": str(cert_dir / CERT_FILENAME),
            "key_path": str(cert_dir / KEY_FILENAME),
            "chain_path": str(cert_dir / CHAIN_FILENAME),
            "fullchain_path": str(cert_dir / FULLCHAIN_FILENAME),
        }

    def recover(self, cert_dir: str | Path) -> str | None:
        """
        Resolve an install interrupted by a crash.

        Returns:
            "rolled_forward", "discarded", or None when there was nothing to do
        """
        cert_dir = Path(cert_dir)
        if not cert_dir.is_dir():
            return None

        marker = cert_dir / COMMIT_MARKER
        if marker.exists():
            try:
                names = json.loads(marker.read_text())
            except ValueError:
                # Marker is renamed into place complete, so this is outside damage
                logger.error(f"Corrupt install marker in {cert_dir}, discarding staged files")
                marker.unlink()
                self._discard_staged(cert_dir)
                return "discarded"
            self._roll_forward(cert_dir, names)
            logger.warning(f"Completed interrupted certificate install in {cert_dir}")
            return "rolled_forward"

        if self._discard_staged(cert_dir):
            logger.warning(f"Discarded uncommitted certificate files in {cert_dir}")
            return "discarded"
        return None

    def _roll_forward(self, cert_dir: Path, names: list[str]) -> None:
        for name in names:
            staged = cert_dir / (name + STAGING_SUFFIX)
            if staged.exists():
                os.replace(staged, cert_dir / name)
        self._fsync_dir(cert_dir)

        (cert_dir / COMMIT_MARKER).unlink(missing_ok=True)
        self._fsync_dir(cert_dir)

    def _discard_staged(self, cert_dir: Path) -> bool:
        removed = False
        # Staged files of a committed install belong to the roll-forward
        if not cert_dir.is_dir() or (cert_dir / COMMIT_MARKER).exists():
            return removed
        for staged in cert_dir.iterdir():
            if staged.name.endswith(STAGING_SUFFIX) and staged.is_file():
                staged.unlink(missing_ok=True)
                removed = True
        return removed

    def _write_synced(self, path: Path, data: bytes, mode: int) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    def _fsync_dir(self, path: Path) -> None:
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
