from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    Reports whether the key table is loaded and the expiry sweeper is running.
    Used by load balancers and monitoring systems to determine service health.
    """

    sweeper = getattr(request.app.state, "sweeper", None)
    return {
        "status": "ok",
        "keys_loaded": getattr(request.app.state, "key_service", None) is not None,
        "sweeper_running": bool(sweeper and sweeper.running),
    }


@router.get("/keepalive", response_class=PlainTextResponse)
def keepalive() -> str:
    """Plain-text liveness probe for uptime pingers."""

    return "alive"
