from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from signflow.api.routes import health, jobs, requests, signers
from signflow.core.config import settings
from signflow.core.errors import InternalError, SigningError, ValidationError
from signflow.core.logging_setup import logger
from signflow.db.session import init_db
from signflow.services import SigningRuntime, build_runtime


def _format_location(location: tuple) -> str:
    parts = [str(item) for item in location if item not in ("body", "query", "path", "header")]
    return ".".join(parts) or "request"


def register_exception_handlers(application: FastAPI) -> None:
    @application.exception_handler(SigningError)
    async def handle_signing_error(request: Request, exc: SigningError) -> JSONResponse:
        if isinstance(exc, InternalError):
            logger.error(
                "Internal error on %s %s: %s %s",
                request.method,
                request.url.path,
                exc.message,
                exc.details,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @application.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [f"{_format_location(tuple(item.get('loc', ())))}: {item.get('msg')}" for item in exc.errors()]
        error = ValidationError(errors)
        return JSONResponse(status_code=error.status_code, content=error.to_response())

    @application.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=InternalError("Internal error").to_response(),
        )


def create_app(runtime: SigningRuntime | None = None) -> FastAPI:
    signing_runtime = runtime or build_runtime()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
        init_db()
        signing_runtime.start()
        try:
            yield
        finally:
            signing_runtime.stop()

    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )
    application.state.runtime = signing_runtime
    register_exception_handlers(application)

    application.include_router(health.router, prefix="/health")
    application.include_router(requests.router, prefix=settings.api_v1_str)
    application.include_router(signers.router, prefix=settings.api_v1_str)
    application.include_router(jobs.router, prefix=settings.api_v1_str)

    @application.get("/")
    def root():
        return {"service": settings.project_name}

    logger.info("%s initialized", settings.project_name)
    return application


app = create_app()
