"""
Certificate monitoring endpoints.

Read-only views of the managed domain sets and their renewal history,
plus a forced renewal trigger.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from certkeeper.core.cert_store import CertificateNotFoundError
from certkeeper.core.daemon import RenewalDaemon
from certkeeper.core.errors import CertkeeperError
from certkeeper.endpoints.dependencies import find_certificate, get_daemon
from certkeeper.models.status import (
    AttemptHistoryResponse,
    CertificateReport,
    DecommissionResponse,
    RenewalTriggerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/certificates", tags=["Certificates"])


@router.get(
    "",
    response_model=list[CertificateReport],
    summary="List Managed Certificates",
    description="Every managed domain set with its status, expiry and next renewal time.",
)
async def list_certificates(daemon: RenewalDaemon = Depends(get_daemon)) -> list[CertificateReport]:
    return [await daemon.reporter.certificate_report(cert) for cert in daemon.store.snapshot()]


@router.get(
    "/{domain}",
    response_model=CertificateReport,
    summary="Get Certificate",
    description="""
    Look up one domain set by its key (e.g. `example.com,www.example.com`)
    or by any hostname it covers.
    """,
    responses={404: {"description": "Domain is not managed"}},
)
async def get_certificate(domain: str, daemon: RenewalDaemon = Depends(get_daemon)) -> CertificateReport:
    cert = find_certificate(daemon, domain)
    return await daemon.reporter.certificate_report(cert)


@router.get(
    "/{domain}/attempts",
    response_model=AttemptHistoryResponse,
    summary="Renewal Attempt History",
    description="Recorded renewal attempts for a domain set, newest first.",
    responses={404: {"description": "Domain is not managed"}},
)
async def list_attempts(
    domain: str,
    limit: int = Query(50, ge=1, le=500, description="Maximum attempts to return"),
    offset: int = Query(0, ge=0, description="Attempts to skip"),
    daemon: RenewalDaemon = Depends(get_daemon),
) -> AttemptHistoryResponse:
    cert = find_certificate(daemon, domain)
    attempts = await daemon.reporter.list_attempts(cert.key, limit=limit, offset=offset)
    total = await daemon.reporter.count_attempts(cert.key)
    return AttemptHistoryResponse(domain_key=cert.key, attempts=attempts, total=total)


@router.post(
    "/{domain}/renew",
    response_model=RenewalTriggerResponse,
    status_code=202,
    summary="Force Renewal",
    description="""
    Enqueue a renewal now, ignoring the renewal window and any backoff
    delay. The attempt runs in the background; poll
    `GET /certificates/{domain}/attempts` for the outcome.
    """,
    responses={
        404: {"description": "Domain is not managed"},
        409: {"description": "A renewal for this domain set is already running"},
    },
)
async def renew_certificate(domain: str, daemon: RenewalDaemon = Depends(get_daemon)) -> RenewalTriggerResponse:
    cert = find_certificate(daemon, domain)
    if not await daemon.scheduler.renew_now(cert.key):
        raise HTTPException(
            status_code=409,
            detail={
                "error": "renewal_in_progress",
                "message": f"A renewal for {cert.key} is already running",
                "suggestion": "Wait for the current attempt to finish",
            },
        )
    return RenewalTriggerResponse(enqueued=[cert.key], message=f"Renewal of {cert.key} enqueued")


@router.delete(
    "/{domain}",
    response_model=DecommissionResponse,
    summary="Decommission Certificate",
    description="""
    Stop managing a domain set. Certificate files stay on disk. Remove the
    domain set from the domain file as well, or it is onboarded again on
    the next start.
    """,
    responses={
        404: {"description": "Domain is not managed"},
        409: {"description": "A renewal for this domain set is running"},
    },
)
async def decommission_certificate(domain: str, daemon: RenewalDaemon = Depends(get_daemon)) -> DecommissionResponse:
    cert = find_certificate(daemon, domain)
    try:
        await daemon.store.decommission(cert.key)
    except CertificateNotFoundError as e:
        raise HTTPException(
            status_code=404,
            detail={"error": "certificate_not_found", "message": e.message, "suggestion": e.suggestion},
        )
    except CertkeeperError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "renewal_in_progress", "message": e.message, "suggestion": e.suggestion},
        )
    logger.info(f"Decommissioned {cert.key} through the API")
    return DecommissionResponse(domain_key=cert.key, message=f"Stopped managing {cert.key}")
