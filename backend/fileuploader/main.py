import logging
import time
from contextlib import asynccontextmanager
from http import HTTPStatus

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fileuploader.api.routers import files as files_router
from fileuploader.api.routers import health as health_router
from fileuploader.core.config import Settings, get_settings
from fileuploader.core.errors import AppError, ErrorKind
from fileuploader.core.logging import setup_logging
from fileuploader.core.security import TokenService
from fileuploader.schemas import ErrorResponse
from fileuploader.services.ingestion import IngestionService
from fileuploader.services.rate_limiter import SlidingWindowRateLimiter
from fileuploader.services.storage import StorageBackend, build_storage_backend

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int, error: str, message: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    body = ErrorResponse(error=error, code=status_code, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return _error_response(exc.status_code, exc.kind.value, exc.message, exc.headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    try:
        error = HTTPStatus(exc.status_code).phrase.lower().replace(" ", "_")
    except ValueError:
        error = "error"
    return _error_response(exc.status_code, error, str(exc.detail), getattr(exc, "headers", None))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected invalid request to %s: %s", request.url.path, exc.errors())
    return _error_response(400, ErrorKind.INVALID_REQUEST.value, "Bad request")


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, ErrorKind.INTERNAL.value, "Internal server error")


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "Request processed: %s %s status=%d duration_ms=%.1f ip=%s user_agent=%r user_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
        getattr(request.state, "subject_id", None),
    )
    return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        "Starting fileuploader (%s): storage=%s max_file_size=%d rate_limit=%d/min",
        settings.env,
        app.state.ingestion_service.storage.scheme,
        settings.max_file_size,
        settings.rate_limit_per_minute,
    )
    yield
    logger.info("Shutting down fileuploader")


def create_app(
    settings: Settings | None = None,
    *,
    storage: StorageBackend | None = None,
    rate_limiter: SlidingWindowRateLimiter | None = None,
    token_service: TokenService | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        debug=settings.debug,
        title="File Uploader API",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.token_service = (
        token_service if token_service is not None else TokenService.from_settings(settings)
    )
    app.state.rate_limiter = (
        rate_limiter
        if rate_limiter is not None
        else SlidingWindowRateLimiter(settings.rate_limit_per_minute)
    )
    app.state.ingestion_service = IngestionService(
        settings, storage if storage is not None else build_storage_backend(settings)
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.middleware("http")(log_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(health_router.router)
    app.include_router(files_router.router)
    app.include_router(files_router.legacy_router)

    return app


app = create_app()


def serve() -> None:
    settings = get_settings()
    uvicorn.run("fileuploader.main:app", host=settings.host, port=settings.port)
