from typing import Any, Callable, Coroutine

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.responses import Response

from .context import new_request_id
from .errors import BoxOfficeError, UnexpectedFailure, ValidationFailure

ExceptionHandler = Callable[[Request, Exception], Coroutine[Any, Any, Response]]


def _request_id(request: Request) -> str:
    ctx = getattr(request.state, "ctx", None)
    return ctx.request_id if ctx is not None else new_request_id()


def _error_response(request: Request, error: BoxOfficeError) -> JSONResponse:
    request_id = _request_id(request)
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_body(request_id),
        headers={"X-Request-ID": request_id},
    )


async def box_office_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = exc if isinstance(exc, BoxOfficeError) else UnexpectedFailure("An unexpected error occurred")
    if error.status_code >= 500:
        logger.bind(request_id=_request_id(request)).error(
            "{} {} failed: {}", request.method, request.url.path, error
        )
    return _error_response(request, error)


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    errors = exc.errors() if isinstance(exc, RequestValidationError) else []
    error = ValidationFailure(
        "Request validation failed",
        details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in errors]},
    )
    return _error_response(request, error)


async def general_500_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).bind(request_id=_request_id(request)).error(
        "Unhandled error on {} {}", request.method, request.url.path
    )
    # opaque body: only the request id leaves the process
    return _error_response(request, UnexpectedFailure("An unexpected error occurred"))


EXCEPTION_HANDLERS: dict[type[Exception], ExceptionHandler] = {
    BoxOfficeError: box_office_error_handler,
    RequestValidationError: validation_error_handler,
    Exception: general_500_exception_handler,
}


def register_exception_handlers(app: FastAPI) -> None:
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
