"""
Domain exceptions and the FastAPI handlers that turn them into responses.

Status code mapping:
- ``AuthenticationError`` -> 401
- ``RequestValidationError`` -> 400 with per-field details
- ``NotFoundError`` -> 404 (absent rows and rows owned by someone else alike)
- ``ConflictError`` -> 409
- ``InvalidInputError`` and its subclasses (``BusinessRuleError``) -> 400
- ``DependencyError`` and anything unhandled, stray ``ValueError``s included,
  -> 500 with a generic message
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal server error"


class AuthenticationError(Exception):
    pass


class NotFoundError(ValueError):
    def __init__(self, entity: str) -> None:
        super().__init__(f"{entity} not found")
        self.entity = entity


class InvalidInputError(ValueError):
    pass


class BusinessRuleError(InvalidInputError):
    pass


class ConflictError(ValueError):
    pass


class DependencyError(RuntimeError):
    pass


async def _handle_authentication(
    request: Request, exc: AuthenticationError
) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


async def _handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # pydantic's ctx can carry exception instances, so copy the plain fields.
    details = [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "")),
        }
        for err in exc.errors()
    ]
    logger.info(f"validation_failed: path={request.url.path} errors={len(details)}")
    return JSONResponse(
        status_code=400, content={"error": "Invalid input", "details": details}
    )


async def _handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


async def _handle_conflict(request: Request, exc: ConflictError) -> JSONResponse:
    logger.info(f"version_conflict: path={request.url.path} detail={exc}")
    return JSONResponse(status_code=409, content={"error": str(exc)})


async def _handle_invalid_input(
    request: Request, exc: InvalidInputError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


async def _handle_dependency(request: Request, exc: DependencyError) -> JSONResponse:
    logger.error(
        f"dependency_failed: path={request.url.path} detail={exc}", exc_info=exc
    )
    return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception(
                f"unhandled_error: method={request.method} path={request.url.path}"
            )
            return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthenticationError, _handle_authentication)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
    app.add_exception_handler(NotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(ConflictError, _handle_conflict)  # type: ignore[arg-type]
    app.add_exception_handler(InvalidInputError, _handle_invalid_input)  # type: ignore[arg-type]
    app.add_exception_handler(DependencyError, _handle_dependency)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
