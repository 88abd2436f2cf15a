"""Command-line interface for certkeeper.

Runs the renewal daemon with its monitoring API, performs one-shot
renewal checks for cron and monitoring systems, and inspects or edits
the persisted certificate state.

Exit codes:
    0: success / every certificate healthy
    1: a renewal failed or a certificate is degraded
    2: configuration error
"""

import asyncio
import logging
from typing import Optional

import click
import httpx
import uvicorn

from certkeeper import __version__
from certkeeper.config import Settings, load_domain_sets, load_settings, validate_environment
from certkeeper.core.cert_store import CertificateNotFoundError
from certkeeper.core.daemon import RenewalDaemon, build_daemon
from certkeeper.core.errors import CertkeeperError, ConfigError
from certkeeper.logging_config import setup_logging
from certkeeper.main import create_app
from certkeeper.models.status import DaemonHealth, HealthReport

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def _fail(ctx: click.Context, error: CertkeeperError, code: int) -> None:
    click.echo(f"Error: {error.message}", err=True)
    if error.suggestion:
        click.echo(f"Suggestion: {error.suggestion}", err=True)
    ctx.exit(code)


def _load_settings(ctx: click.Context) -> Settings:
    """Load settings and reapply logging with the configured level and file."""
    settings = load_settings()
    level = "DEBUG" if ctx.obj["verbose"] else settings.log_level
    setup_logging(level=level, log_file=ctx.obj["log_file"] or settings.log_file)
    return settings


async def _open_state(settings: Settings) -> RenewalDaemon:
    """Daemon components over the persisted state, without touching the domain file."""
    daemon = build_daemon(settings, domain_sets=[])
    await daemon.db.initialize()
    await daemon.store.load()
    return daemon


def _api_client(settings: Settings) -> httpx.Client:
    return httpx.Client(base_url=f"http://{settings.api_host}:{settings.api_port}", timeout=10.0)


def _decommission_via_api(settings: Settings, domain: str) -> Optional[str]:
    """
    Decommission through a running daemon so its in-memory state agrees.

    Returns:
        The decommissioned domain set key, or None when no daemon is listening
    """
    try:
        with _api_client(settings) as client:
            response = client.delete(f"/certificates/{domain}")
    except httpx.TransportError as e:
        logger.debug(f"No daemon reachable ({e}), editing the state database directly")
        return None

    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.status_code == 200:
        return body["domain_key"]

    detail = body.get("detail") if isinstance(body, dict) else None
    if not isinstance(detail, dict):
        detail = {"message": f"Daemon answered HTTP {response.status_code}"}
    if response.status_code == 404:
        raise CertificateNotFoundError(detail.get("message"), suggestion=detail.get("suggestion"))
    raise CertkeeperError(detail.get("message"), suggestion=detail.get("suggestion"))


def _format_report(report: HealthReport) -> str:
    lines = [
        f"Status: {report.status.value} ({report.total} managed, {report.healthy} healthy, "
        f"{report.pending} pending, {report.degraded} degraded)"
    ]
    if report.next_renewal_at:
        lines.append(f"Next renewal: {report.next_renewal_at.isoformat()}")
    for cert in report.certificates:
        expires = cert.expires_at.strftime("%Y-%m-%d") if cert.expires_at else "no certificate"
        days = f" ({cert.days_until_expiry}d)" if cert.days_until_expiry is not None else ""
        lines.append(f"  {cert.domain_key}: {cert.status.value}, expires {expires}{days}")
        if cert.last_error:
            kind = cert.last_error_kind.value if cert.last_error_kind else "error"
            lines.append(f"    last error [{kind}]: {cert.last_error}")
        if cert.last_reload_error:
            lines.append(f"    reload failed: {cert.last_reload_error}")
    return "\n".join(lines)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--log-file", help="Log to file in addition to console")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_file: Optional[str]) -> None:
    """certkeeper - TLS certificate renewal daemon.

    Settings come from environment variables (or a .env file); the managed
    domain sets are listed in the YAML file named by DOMAINS_FILE.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["log_file"] = log_file

    setup_logging(level="DEBUG" if verbose else "INFO", log_file=log_file)


@cli.command()
@click.option("--host", default=None, help="Monitoring API host (default: API_HOST)")
@click.option("--port", default=None, type=int, help="Monitoring API port (default: API_PORT)")
@click.pass_context
def run(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the renewal daemon and its monitoring API."""
    try:
        settings = _load_settings(ctx)
        domain_sets = load_domain_sets(settings.domains_file)
        validate_environment(settings, domain_sets)
        daemon = build_daemon(settings, domain_sets)
    except ConfigError as e:
        _fail(ctx, e, EXIT_CONFIG_ERROR)
        return

    click.echo(f"Managing {len(domain_sets)} domain set(s) from {settings.domains_file}")
    uvicorn.run(
        create_app(daemon),
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_config=None,
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the health report as JSON")
@click.pass_context
def check(ctx: click.Context, as_json: bool) -> None:
    """Renew every due certificate once, then report.

    Suitable for cron: exits 1 if any renewal failed or a certificate is
    degraded, 2 on configuration errors.
    """

    async def _check() -> HealthReport:
        daemon = build_daemon(settings, domain_sets)
        await daemon.initialize()
        enqueued = await daemon.trigger_check()
        await daemon.scheduler.wait_idle()
        if not as_json:
            click.echo(f"Renewal attempts run: {len(enqueued)}")
        return await daemon.reporter.health_report()

    try:
        settings = _load_settings(ctx)
        domain_sets = load_domain_sets(settings.domains_file)
        validate_environment(settings, domain_sets)
        report = asyncio.run(_check())
    except ConfigError as e:
        _fail(ctx, e, EXIT_CONFIG_ERROR)
        return

    click.echo(report.model_dump_json(indent=2) if as_json else _format_report(report))
    if report.status == DaemonHealth.DEGRADED or report.failing:
        ctx.exit(EXIT_FAILURE)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the health report as JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show the persisted state of every managed certificate."""

    async def _status() -> HealthReport:
        daemon = await _open_state(settings)
        return await daemon.reporter.health_report()

    try:
        settings = _load_settings(ctx)
        report = asyncio.run(_status())
    except ConfigError as e:
        _fail(ctx, e, EXIT_CONFIG_ERROR)
        return

    if as_json:
        click.echo(report.model_dump_json(indent=2))
    else:
        click.echo(_format_report(report))


@cli.command()
@click.argument("domain")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def decommission(ctx: click.Context, domain: str, yes: bool) -> None:
    """Stop managing DOMAIN (a domain set key or any of its hostnames).

    A running daemon is asked to drop the domain set through its
    monitoring API (API_HOST/API_PORT); only when no daemon answers is
    the state database edited directly. Certificate files are left on
    disk. Remove the domain set from the domain file first, otherwise it
    is onboarded again on the next start.
    """

    async def _decommission() -> str:
        daemon = await _open_state(settings)
        cert = daemon.store.find(domain)
        if cert is None:
            raise CertificateNotFoundError(
                f"Domain {domain} is not managed", suggestion="List managed domain sets with 'certkeeper status'"
            )
        await daemon.store.decommission(cert.key)
        return cert.key

    try:
        settings = _load_settings(ctx)
    except ConfigError as e:
        _fail(ctx, e, EXIT_CONFIG_ERROR)
        return

    if not yes and not click.confirm(f"Stop managing {domain}?"):
        click.echo("Aborted")
        return

    try:
        key = _decommission_via_api(settings, domain)
        if key is None:
            key = asyncio.run(_decommission())
    except ConfigError as e:
        _fail(ctx, e, EXIT_CONFIG_ERROR)
        return
    except CertkeeperError as e:
        _fail(ctx, e, EXIT_FAILURE)
        return

    click.echo(f"Decommissioned {key}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
