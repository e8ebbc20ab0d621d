"""
Observability sink: Kubernetes events posted through kopf, mirrored to a
Redis Stream for real-time consumers (the status API) when Redis is configured.
"""
import json as _json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

import kopf

from pulp_operator.config import settings

logger = logging.getLogger("pulp_operator.events")

NORMAL = "Normal"
WARNING = "Warning"

# Events kept per descriptor stream
STREAM_MAXLEN = 100

# ---------------------------------------------------------------------------
# Redis client (optional: graceful degradation if unavailable)
# ---------------------------------------------------------------------------
_redis_client = None


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _get_redis():
    """Lazy-init Redis client. Returns None if unavailable."""
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


def stream_key(namespace: str, name: str) -> str:
    """Redis Stream holding a descriptor's events; names are unique per namespace only."""
    return f"pulp:events:{namespace}/{name}"


def publish_event(namespace: str, name: str, severity: str, reason: str, message: str):
    """Publish an event to the descriptor's Redis Stream and the global channel."""
    r = _get_redis()
    if not r:
        return
    entry = {
        "namespace": namespace,
        "name": name,
        "severity": severity,
        "reason": reason,
        "message": message,
        "timestamp": _now(),
    }
    try:
        r.xadd(stream_key(namespace, name), entry, maxlen=STREAM_MAXLEN)
        r.publish("pulp:events", _json.dumps(entry))
    except Exception as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


def delete_event_stream(namespace: str, name: str):
    r = _get_redis()
    if not r:
        return
    try:
        r.delete(stream_key(namespace, name))
    except Exception as e:
        logger.debug(f"Redis stream cleanup failed (non-fatal): {e}")


class EventRecorder:
    """Interface the engine emits events through."""

    def event(self, subject: Dict[str, Any], severity: str, reason: str, message: str) -> None:
        raise NotImplementedError


class KopfEventRecorder(EventRecorder):
    """Posts Kubernetes events on the descriptor via kopf's event queue."""

    def event(self, subject: Dict[str, Any], severity: str, reason: str, message: str) -> None:
        if severity == WARNING:
            kopf.warn(subject, reason=reason, message=message)
        else:
            kopf.event(subject, type=severity, reason=reason, message=message)
        metadata = subject["metadata"]
        publish_event(metadata.get("namespace", ""), metadata["name"], severity, reason, message)
