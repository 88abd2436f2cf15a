"""
Web server reload signalling.

After new certificate files are installed the web server has to be told
to pick them up. Each reloader raises ReloadError on failure; the
installed certificate is never rolled back because of it.
"""

import asyncio
import logging
import shlex
from typing import Protocol

import docker
import httpx
from docker.errors import APIError, DockerException, NotFound

from certkeeper.core.errors import ConfigError, ReloadError

logger = logging.getLogger(__name__)


class Reloader(Protocol):
    """Signals the web server collaborator to reload its certificates."""

    async def reload(self) -> None: ...


class CommandReloader:
    """Run a local command such as `nginx -s reload` or `systemctl reload apache2`."""

    def __init__(self, command: str, timeout: float = 30.0):
        self.args = shlex.split(command)
        if not self.args:
            raise ConfigError("RELOAD_COMMAND is empty")
        self.timeout = timeout

    async def reload(self) -> None:
        logger.info(f"Running reload command: {shlex.join(self.args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ReloadError(f"Cannot run reload command '{self.args[0]}': {e}")

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ReloadError(f"Reload command timed out after {self.timeout}s")

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ReloadError(
                f"Reload command exited with {proc.returncode}: {detail}",
                suggestion="Check the web server configuration test output",
            )
        logger.info("Web server reload signal sent successfully")


class HttpReloader:
    """POST to a web server admin endpoint."""

    def __init__(self, url: str, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def reload(self) -> None:
        logger.info(f"Requesting reload via {self.url}")
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.url)
        except httpx.HTTPError as e:
            raise ReloadError(f"Reload endpoint {self.url} unreachable: {e}")

        if not response.is_success:
            raise ReloadError(f"Reload endpoint {self.url} returned HTTP {response.status_code}")
        logger.info("Web server reload signal sent successfully")


class DockerReloader:
    """Exec the reload command inside the web server's container."""

    def __init__(self, container_name: str, command: str = "nginx -s reload", timeout: float = 30.0):
        self.container_name = container_name
        self.args = shlex.split(command)
        self.timeout = timeout
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _exec_sync(self) -> tuple[int, str]:
        container = self.client.containers.get(self.container_name)
        result = container.exec_run(self.args)
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return result.exit_code, output

    async def reload(self) -> None:
        logger.info(f"Sending reload signal to container {self.container_name}")
        try:
            exit_code, output = await asyncio.wait_for(asyncio.to_thread(self._exec_sync), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ReloadError(f"Reload in container {self.container_name} timed out after {self.timeout}s")
        except NotFound:
            raise ReloadError(
                f"Container '{self.container_name}' not found",
                suggestion="Check RELOAD_CONTAINER_NAME and that the container is running",
            )
        except (APIError, DockerException) as e:
            raise ReloadError(f"Docker error while reloading {self.container_name}: {e}")

        if exit_code != 0:
            raise ReloadError(f"Reload in container {self.container_name} exited with {exit_code}: {output.strip()}")
        logger.info("Web server reload signal sent successfully")


class NoopReloader:
    """For servers that pick up new files on their own."""

    async def reload(self) -> None:
        logger.debug("Reload disabled, skipping")


def build_reloader(settings) -> Reloader:
    """Create the reloader selected by RELOAD_METHOD."""
    method = settings.reload_method
    if method == "command":
        return CommandReloader(settings.reload_command, timeout=settings.reload_timeout)
    if method == "http":
        return HttpReloader(settings.reload_url, timeout=settings.reload_timeout)
    if method == "docker":
        return DockerReloader(
            settings.reload_container_name, command=settings.reload_command, timeout=settings.reload_timeout
        )
    if method == "none":
        return NoopReloader()
    raise ConfigError(f"Unknown RELOAD_METHOD '{method}'", suggestion="Use command, http, docker or none")
