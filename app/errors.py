"""
Error taxonomy of the booking engine and the JSON envelope it renders to.

Every engine error is an ``HTTPException`` carrying a stable machine-readable
``code`` so routers can simply let it propagate.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException


class EngineError(HTTPException):
    code = "engine_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(status_code=self.http_status, detail=detail)
        self.extra = extra


class NotFound(EngineError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class SlotNotFound(NotFound):
    code = "slot_not_found"


class Unauthorized(EngineError):
    code = "unauthorized"
    http_status = status.HTTP_403_FORBIDDEN


class WrongKind(EngineError):
    code = "wrong_kind"
    http_status = status.HTTP_400_BAD_REQUEST


class InvalidArgument(EngineError):
    code = "invalid_argument"
    http_status = status.HTTP_400_BAD_REQUEST


class Gone(EngineError):
    code = "gone"
    http_status = status.HTTP_410_GONE


class Conflict(EngineError):
    code = "conflict"
    http_status = status.HTTP_409_CONFLICT


class StateInvalid(EngineError):
    code = "state_invalid"
    http_status = status.HTTP_400_BAD_REQUEST


class PaymentIncomplete(EngineError):
    code = "payment_incomplete"
    http_status = status.HTTP_400_BAD_REQUEST


class ProcessorError(EngineError):
    code = "processor_error"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, detail: str, processor_status: str | None = None) -> None:
        super().__init__(detail, processor_status=processor_status)
        self.processor_status = processor_status


class Transient(EngineError):
    code = "transient"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


_STATUS_CODES: dict[int, str] = {
    status.HTTP_400_BAD_REQUEST: InvalidArgument.code,
    status.HTTP_401_UNAUTHORIZED: "unauthenticated",
    status.HTTP_403_FORBIDDEN: Unauthorized.code,
    status.HTTP_404_NOT_FOUND: NotFound.code,
    status.HTTP_409_CONFLICT: Conflict.code,
    status.HTTP_502_BAD_GATEWAY: "upstream_error",
}


def error_body(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {
        "success": False,
        "message": message,
        "error": {"code": code, **extra},
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Render every HTTP error as ``{success: false, message, error}``."""

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if isinstance(exc, EngineError):
            code, extra = exc.code, exc.extra
        else:
            code, extra = _STATUS_CODES.get(exc.status_code, "http_error"), {}
        if exc.status_code >= 500:
            logger.warning("{} {} failed: {}", request.method, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(code, str(exc.detail), **extra),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg", "Invalid request"))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_body(
                InvalidArgument.code,
                message,
                details=[
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg")}
                    for e in exc.errors()
                ],
            ),
        )
