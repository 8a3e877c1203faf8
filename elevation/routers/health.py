from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from elevation.providers.registry import get_provider
from elevation.services.health import check_health

router = APIRouter(tags=["misc"])


@router.get("/healthz")
async def healthz():
    health = await check_health(get_provider())
    return JSONResponse(health, status_code=200 if health["status"] == "healthy" else 503)


@router.get("/api/ping")
async def ping():
    return {"ok": True}
