"""
Health endpoint.

Daemon-wide status for uptime monitors and load balancer checks.
"""

import logging

from fastapi import APIRouter, Depends

from certkeeper.core.daemon import RenewalDaemon
from certkeeper.endpoints.dependencies import get_daemon
from certkeeper.models.status import HealthReport

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthReport,
    summary="Daemon Health",
    description="""
    Summary of every managed domain set.

    `status` is `degraded` when any certificate has exhausted its retries
    or has already expired. Certificates whose web server reload failed are
    counted in `reload_errors` but do not degrade the daemon.
    """,
)
async def health(daemon: RenewalDaemon = Depends(get_daemon)) -> HealthReport:
    return await daemon.reporter.health_report()
