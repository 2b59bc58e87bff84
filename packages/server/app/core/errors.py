"""
Error taxonomy and the JSON error envelope.

Every error carries a stable machine-readable ``code`` and an optional human
``detail``; handlers render it as ``{"ok": false, "error": code, "detail": ...}``.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import JSONResponse

log = structlog.get_logger()


class ApiError(HTTPException):
    """Base class: an HTTPException that also knows its machine code."""

    status_code_default = 500
    code_default = "SERVER_ERROR"

    def __init__(
        self,
        code: Optional[str] = None,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code or self.code_default
        super().__init__(status_code=status_code or self.status_code_default, detail=detail)


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------

class AuthenticationError(ApiError):
    status_code_default = 401
    code_default = "NOT_AUTHENTICATED"


class AuthorizationError(ApiError):
    status_code_default = 403
    code_default = "FORBIDDEN"


class InputError(ApiError):
    status_code_default = 400
    code_default = "INVALID_INPUT"


class NotFoundError(ApiError):
    status_code_default = 404
    code_default = "NOT_FOUND"


class StateError(ApiError):
    """The request conflicts with the current subscription state."""

    status_code_default = 409
    code_default = "SUBSCRIPTION_NOT_ACTIVE"


class StoreConflict(ApiError):
    """A conditional update matched no row; callers retry once before surfacing."""

    status_code_default = 500
    code_default = "CONFLICT"


class StoreFailure(ApiError):
    status_code_default = 500
    code_default = "STORE_FAILURE"


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def error_body(code: str, detail: Optional[str] = None) -> dict:
    return {"ok": False, "error": code, "detail": detail}


def register_error_handlers(app: FastAPI) -> None:
    """Install handlers so every failure leaves as the ``ok: false`` envelope."""

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.detail))

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        code = {401: "NOT_AUTHENTICATED", 403: "FORBIDDEN", 404: "NOT_FOUND"}.get(
            exc.status_code, "HTTP_ERROR"
        )
        detail = exc.detail if isinstance(exc.detail, str) else None
        return JSONResponse(status_code=exc.status_code, content=error_body(code, detail))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()})
        return JSONResponse(
            status_code=400,
            content=error_body("INVALID_INPUT", f"Invalid fields: {', '.join(fields)}"),
        )

    @app.exception_handler(SQLAlchemyError)
    async def _store_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        log.error("store.failure", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content=error_body("STORE_FAILURE", None))
