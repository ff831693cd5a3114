from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException

from app.api.dependencies import ServicesDep

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    """Basic liveness probe (cheap)."""
    return {"status": "ok"}


@router.get("/ready")
def ready(services: ServicesDep) -> dict[str, object]:
    """Readiness probe: the user store must answer."""
    start = time.time()
    store_ok = services.store.ping()
    duration_ms = int((time.time() - start) * 1000)
    if not store_ok:
        raise HTTPException(status_code=503, detail={"store": False, "latency_ms": duration_ms})
    return {"status": "ready", "store": True, "latency_ms": duration_ms}
