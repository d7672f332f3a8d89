"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pixguard.errors import AdmissionRejected, PixguardError
from pixguard.obs.logging import current_request_id


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PixguardError)
    async def pixguard_exc_handler(request: Request, exc: PixguardError):  # type: ignore[override]
        payload = {"detail": exc.detail, "error_code": exc.error_code, "request_id": current_request_id()}
        headers = {}
        if isinstance(exc, AdmissionRejected) and exc.retry_after:
            payload["retry_after"] = exc.retry_after
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        payload = {"detail": exc.detail, "request_id": current_request_id()}
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = {"detail": "validation_error", "errors": exc.errors(), "request_id": current_request_id()}
        return JSONResponse(status_code=422, content=payload)
