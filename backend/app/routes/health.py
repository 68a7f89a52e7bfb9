"""
Keystone Backend — Health, Metrics & API Info Routes
====================================================

What:  Probes for load balancers and monitoring, plus a small discovery
       endpoint.
How:   /health runs a lightweight check against each *enabled* dependency
       (SELECT 1, PING, HeadBucket); payment and e-mail providers are reported
       as configured without a network call. Any failing check marks the
       service degraded and answers 503 so the balancer routes away.

    GET /health    {status, timestamp, services, version, uptime}
    GET /metrics   process uptime, memory and CPU (stdlib resource / os.times)
    GET /api       name, version, environment, enabled features
"""

import logging
import os
import resource
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app import __version__
from app.dependencies import get_resources
from app.lifecycle import AppResources
from app.schemas.health import ApiInfo, CpuUsage, HealthResponse, MemoryUsage, MetricsResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def check_services(resources: AppResources) -> Dict[str, bool]:
    features = resources.features
    services = {"database": await resources.database.ping()}
    if features.redis:
        services["redis"] = resources.redis is not None and await resources.redis.ping()
    if features.s3:
        services["s3"] = resources.storage is not None and await resources.storage.head_bucket()
    if features.stripe:
        services["stripe"] = resources.payments is not None
    if features.sendgrid:
        services["sendgrid"] = resources.email is not None
    return services


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "A required or enabled dependency is down", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check(resources: AppResources = Depends(get_resources)):
    services = await check_services(resources)
    down = [name for name, ok in services.items() if not ok]
    if down:
        logger.warning("Health check degraded: %s", ", ".join(down))

    body = HealthResponse(
        status="degraded" if down else "ok",
        timestamp=_now(),
        services=services,
        version=__version__,
        uptime=round(resources.uptime, 2),
    )
    return JSONResponse(
        status_code=503 if down else 200,
        content=jsonable_encoder(body, by_alias=True),
    )


def _peak_rss_bytes() -> int:
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is kilobytes on Linux and bytes on macOS
    return peak if sys.platform == "darwin" else peak * 1024


def _vms_bytes() -> Optional[int]:
    try:
        with open("/proc/self/statm") as f:
            pages = int(f.read().split()[0])
    except (OSError, ValueError, IndexError):
        return None
    return pages * os.sysconf("SC_PAGE_SIZE")


@router.get("/metrics", response_model=MetricsResponse, summary="Process metrics")
async def metrics(resources: AppResources = Depends(get_resources)) -> MetricsResponse:
    uptime = resources.uptime
    times = os.times()
    busy = times.user + times.system
    return MetricsResponse(
        uptime=round(uptime, 2),
        memory=MemoryUsage(rss=_peak_rss_bytes(), vms=_vms_bytes()),
        cpu=CpuUsage(
            user=times.user,
            system=times.system,
            percent=round(busy / uptime * 100, 2) if uptime > 0 else 0.0,
        ),
        timestamp=_now(),
    )


@router.get("/api", response_model=ApiInfo, summary="API information")
async def api_info(resources: AppResources = Depends(get_resources)) -> ApiInfo:
    settings = resources.settings
    return ApiInfo(
        name=settings.app_name,
        version=__version__,
        environment=settings.environment,
        documentation="/docs",
        features=resources.features.enabled(),
    )
