from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from faucet.api.routes import SERVICE_NAME, SERVICE_VERSION
from faucet.api.routes import router as ops_router
from faucet.api.structured_logging import RequestLogMiddleware
from faucet.runtime.config import load_faucet_config
from faucet.runtime.service import FaucetService

log = logging.getLogger("faucet.api")


def build_service() -> FaucetService:
    """Build and open the FaucetService from environment config.

    Tests monkeypatch `faucet.api.app.build_service` to inject fakes.
    """
    return FaucetService(load_faucet_config()).open()


def create_app(
    *,
    service: Optional[FaucetService] = None,
    boot_runtime: bool = True,
    autostart: Optional[bool] = None,
) -> FastAPI:
    """Create the ops FastAPI application.

    service:       use this service instead of building one
    boot_runtime:  False keeps the app lightweight (no service) for unit tests
    autostart:     start the monitor in lifespan; defaults to cfg.monitor_autostart
    """
    if service is None and boot_runtime:
        service = build_service()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        svc: Optional[FaucetService] = app.state.service
        start = autostart if autostart is not None else bool(svc and svc.cfg.monitor_autostart)
        if svc is not None and start:
            svc.start_monitor()
        yield
        if svc is not None:
            svc.close()

    app = FastAPI(
        title=f"{SERVICE_NAME} API",
        version=SERVICE_VERSION,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=_lifespan,
    )
    app.state.service = service

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "Endpoint not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.add_middleware(RequestLogMiddleware)
    app.include_router(ops_router)
    return app
