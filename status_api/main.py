"""
Pulp Status API: read-only routes under /api/pulps, plus /health and /metrics.

Run with:  pulp-status-api
"""

import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from status_api.config import settings
from status_api.routers.pulps import _get_redis, limiter, update_gauges
from status_api.routers.pulps import router as pulps_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("status-api")

app = FastAPI(
    title="Pulp Status API",
    description="Read-only view of Pulp deployments reconciled by the Pulp operator",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(pulps_router, prefix="/api")


@app.get("/health")
async def health():
    redis_status = "disabled"
    r = _get_redis()
    if r:
        try:
            r.ping()
            redis_status = "connected"
        except Exception:
            redis_status = "disconnected"
    return {"status": "healthy", "redis": redis_status}


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    try:
        update_gauges()
    except Exception as e:
        logger.warning(f"Could not refresh readiness gauges: {e}")
    return PlainTextResponse(content=generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


def run():
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    run()
