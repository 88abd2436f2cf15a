"""
Renewal scheduling endpoints.
"""

import logging

from fastapi import APIRouter, Depends

from certkeeper.core.daemon import RenewalDaemon
from certkeeper.endpoints.dependencies import get_daemon
from certkeeper.models.status import RenewalTriggerResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/renewals", tags=["Renewals"])


@router.post(
    "/check",
    response_model=RenewalTriggerResponse,
    status_code=202,
    summary="Run Renewal Check",
    description="Run the periodic renewal check immediately and report which domain sets were enqueued.",
)
async def trigger_check(daemon: RenewalDaemon = Depends(get_daemon)) -> RenewalTriggerResponse:
    enqueued = await daemon.trigger_check()
    message = f"{len(enqueued)} renewal(s) enqueued" if enqueued else "No certificate is due for renewal"
    return RenewalTriggerResponse(enqueued=enqueued, message=message)


@router.get(
    "/schedule",
    summary="Renewal Schedule",
    description="Next timer runs, the earliest upcoming renewal and the attempts currently running.",
)
async def get_schedule(daemon: RenewalDaemon = Depends(get_daemon)) -> dict:
    next_renewal = daemon.reporter.next_scheduled_renewal()
    return {
        "jobs": daemon.get_next_run_times(),
        "next_renewal_at": next_renewal.isoformat() if next_renewal else None,
        "in_flight": daemon.scheduler.in_flight,
    }
