"""
Global exception handlers.

  - TrolleyOpsError        → its own status + {"error": {kind, code, message}}
  - RequestValidationError → 422 validation_error with per-field details
  - anything else          → opaque 500 internal_error
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.errors import ErrorKind, TrolleyOpsError

logger = structlog.get_logger()


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TrolleyOpsError)
    async def trolleyops_error_handler(request: Request, exc: TrolleyOpsError):
        log = logger.error if exc.http_status >= 500 else logger.info
        log("api.domain_error", path=request.url.path, kind=exc.kind.value, code=exc.code)
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.info("api.validation_error", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": {
                    "kind": ErrorKind.VALIDATION.value,
                    "code": "INVALID_REQUEST",
                    "message": "Invalid request data",
                    "details": [
                        {
                            "field": ".".join(str(loc) for loc in e["loc"]),
                            "message": e["msg"],
                            "type": e["type"],
                        }
                        for e in exc.errors()
                    ],
                }
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("api.unhandled_error", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "kind": ErrorKind.INTERNAL.value,
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                }
            },
        )
