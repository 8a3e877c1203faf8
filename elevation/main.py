from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from elevation.core.errors import ElevationError, http_status
from elevation.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from elevation.routers.auth import router as auth_router
from elevation.routers.devices import router as devices_router
from elevation.routers.elevation import router as elevation_router
from elevation.routers.factors import router as factors_router
from elevation.routers.health import router as health_router


async def elevation_error_handler(request: Request, exc: ElevationError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=http_status(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="MFA Elevation Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.add_exception_handler(ElevationError, elevation_error_handler)

    app.include_router(auth_router)
    app.include_router(factors_router)
    app.include_router(elevation_router)
    app.include_router(devices_router)
    app.include_router(health_router)

    return app

app = create_app()
