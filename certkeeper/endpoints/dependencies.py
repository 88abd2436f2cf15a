"""FastAPI dependencies shared by the monitoring routers."""

from fastapi import HTTPException, Request

from certkeeper.core.daemon import RenewalDaemon
from certkeeper.models.certificate import ManagedCertificate


def get_daemon(request: Request) -> RenewalDaemon:
    """Get the daemon attached to the application at startup."""
    daemon = getattr(request.app.state, "daemon", None)
    if daemon is None:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "daemon_unavailable",
                "message": "Renewal daemon is not running",
                "suggestion": "Check the daemon logs for startup errors",
            },
        )
    return daemon


def find_certificate(daemon: RenewalDaemon, domain: str) -> ManagedCertificate:
    """Resolve a domain set key or hostname, raising 404 if unmanaged."""
    cert = daemon.store.find(domain)
    if cert is None:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "certificate_not_found",
                "message": f"No managed certificate for '{domain}'",
                "suggestion": "List managed domain sets with GET /certificates",
            },
        )
    return cert
