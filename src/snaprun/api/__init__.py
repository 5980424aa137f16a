"""FastAPI application exposing snaprun over HTTP."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import AppConfig, load_config
from ..errors import (
    InvalidLogNameError,
    InvalidRunIdError,
    InvalidTransitionError,
    PathEscapeError,
    PolicyViolation,
    RunNotFoundError,
)
from ..orchestrator import RunOrchestrator, build_orchestrator
from .routes import public_router, router

LOGGER = logging.getLogger("snaprun.api")


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    content = {"ok": False, "error": error}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def install_exception_handlers(app: FastAPI) -> None:
    """Make every failure a JSON body with ``ok: false``."""

    @app.exception_handler(RequestValidationError)
    async def _validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return _error(400, "invalid_request", details=details)

    @app.exception_handler(StarletteHTTPException)
    async def _http(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RunNotFoundError)
    async def _not_found(_: Request, exc: RunNotFoundError) -> JSONResponse:
        return _error(404, "run not found", runId=exc.run_id)

    @app.exception_handler(InvalidRunIdError)
    @app.exception_handler(InvalidLogNameError)
    @app.exception_handler(PathEscapeError)
    async def _bad_input(_: Request, exc: Exception) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(PolicyViolation)
    async def _policy(_: Request, exc: PolicyViolation) -> JSONResponse:
        return _error(400, exc.reason, code=exc.code)

    @app.exception_handler(InvalidTransitionError)
    async def _conflict(_: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(Exception)
    async def _internal(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error serving %s %s", request.method, request.url.path, exc_info=exc)
        return _error(500, "internal_error")


def create_app(config: Optional[AppConfig] = None, orchestrator: Optional[RunOrchestrator] = None) -> FastAPI:
    """Build the HTTP application around a single in-process orchestrator."""
    config = config or load_config()
    app = FastAPI(title="snaprun", version=__version__)
    app.state.config = config
    app.state.orchestrator = orchestrator or build_orchestrator(config)
    install_exception_handlers(app)
    app.include_router(public_router)
    app.include_router(router)
    LOGGER.info("snaprun API ready; data dir %s", config.paths.data_dir)
    return app


__all__ = ["create_app", "install_exception_handlers"]
