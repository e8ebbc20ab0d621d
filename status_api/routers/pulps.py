"""
Pulp status routes: read-only views of Pulp descriptors.

Features:
  - Rate limiting per-IP via slowapi
  - Prometheus readiness gauges
  - Redis Stream integration for the per-descriptor event log
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from prometheus_client import Gauge
from slowapi import Limiter
from slowapi.util import get_remote_address

from pulp_operator.events import stream_key
from status_api.config import settings
from status_api.models import (
    ConditionListResponse, ErrorResponse, PulpEvent, PulpListResponse, PulpResponse,
)
from status_api.services.kubernetes_service import (
    count_pulps_by_readiness, get_pulp, list_pulps,
)

logger = logging.getLogger("pulps")

router = APIRouter(prefix="/pulps", tags=["pulps"])
limiter = Limiter(key_func=get_remote_address)

# --- Redis client (optional) ---
_redis_client = None


def _get_redis():
    """Lazy-init Redis. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        import redis
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        _redis_client.ping()
        logger.info(f"Redis connected: {settings.REDIS_URL}")
        return _redis_client
    except Exception as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        _redis_client = None
        return None


# --- Prometheus metrics ---
PULPS_TOTAL = Gauge(
    "pulp_status_pulps_total",
    "Current Pulp descriptors by readiness",
    ["state"],
)


def update_gauges():
    counts = count_pulps_by_readiness()
    for state in ("ready", "not_ready"):
        PULPS_TOTAL.labels(state=state).set(counts.get(state, 0))


def _get_or_404(namespace: str, name: str) -> PulpResponse:
    pulp = get_pulp(namespace, name)
    if not pulp:
        raise HTTPException(status_code=404, detail=f"Pulp '{namespace}/{name}' not found")
    return pulp


# =========================================================================
# REST Endpoints
# =========================================================================

@router.get("", response_model=PulpListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_pulps_endpoint(
    request: Request,
    namespace: Optional[str] = Query(None, description="Restrict to one namespace"),
):
    """List Pulp descriptors, optionally restricted to a namespace."""
    pulps = list_pulps(namespace=namespace)
    return PulpListResponse(pulps=pulps, total=len(pulps))


@router.get("/{namespace}/{name}", response_model=PulpResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_pulp_endpoint(namespace: str, name: str, request: Request):
    return _get_or_404(namespace, name)


@router.get("/{namespace}/{name}/conditions", response_model=ConditionListResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_pulp_conditions(namespace: str, name: str, request: Request):
    pulp = _get_or_404(namespace, name)
    return ConditionListResponse(name=pulp.name, conditions=pulp.conditions)


@router.get("/{namespace}/{name}/events", responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_pulp_events(
    namespace: str,
    name: str,
    request: Request,
    count: int = Query(50, ge=1, le=100, description="Maximum events returned"),
):
    """
    Recent operator events for a descriptor, oldest first.
    Source: the operator's Redis Stream; empty when Redis is not configured.
    """
    pulp = _get_or_404(namespace, name)
    events = []
    r = _get_redis()
    if r:
        try:
            entries = r.xrevrange(stream_key(pulp.namespace, pulp.name), count=count)
            for _entry_id, data in reversed(entries):
                events.append(PulpEvent(
                    timestamp=data.get("timestamp", ""),
                    severity=data.get("severity", ""),
                    reason=data.get("reason", ""),
                    message=data.get("message", ""),
                ))
        except Exception as e:
            logger.debug(f"Redis stream read failed: {e}")
    return {"name": pulp.name, "events": [e.model_dump() for e in events]}
