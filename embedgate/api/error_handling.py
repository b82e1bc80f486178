from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from embedgate.api.schemas import ErrorResponse, OpenAICompatErrorResponse
from embedgate.logging import get_logger
from embedgate.service.errors import BackendError, InferError, ShapeError, ValidationError

logger = get_logger(__name__)

# Routes answering in the OpenAI-compatible dialect
OPENAI_PATHS = frozenset({"/embeddings", "/v1/embeddings"})


def _error_response(request: Request, exc: InferError) -> JSONResponse:
    """Render an error in the dialect of the route that raised it."""
    if request.url.path in OPENAI_PATHS:
        body = OpenAICompatErrorResponse(
            message=exc.message, code=exc.status_code, type=exc.error_type
        )
    else:
        body = ErrorResponse(error=exc.message, error_type=exc.error_type)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def _summarize_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid request body"


def register_exception_handlers(app: FastAPI) -> None:
    """Map the error taxonomy onto HTTP responses."""

    @app.exception_handler(InferError)
    async def handle_infer_error(request: Request, exc: InferError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        fields = {}
        if isinstance(exc, ShapeError):
            fields = {"kind": exc.kind, "length": exc.length, "position": exc.position}
        log_fn(
            "request_failed",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_type=exc.error_type,
            message=exc.message,
            **fields,
        )
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        error = ValidationError(_summarize_validation_errors(exc))
        logger.warning(
            "request_body_invalid",
            path=request.url.path,
            method=request.method,
            message=error.message,
        )
        return _error_response(request, error)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(request, BackendError("internal server error"))
