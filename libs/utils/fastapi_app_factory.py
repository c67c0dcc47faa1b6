"""FastAPI app construction shared by the service entrypoints."""

from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from libs.contracts.error import ErrorCode, ErrorDetail, ErrorResponse
from libs.utils.exceptions import AdmissionRouterError
from libs.utils.logging_config import configure_structured_logging, get_logger

logger = get_logger(__name__)

AppHook = Callable[[FastAPI], Awaitable[None]]
ReadinessCheck = Callable[[FastAPI], Dict[str, bool]]


def _lifespan(service_name: str, on_startup: Optional[AppHook], on_shutdown: Optional[AppHook]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Service starting", service=service_name)
        if on_startup is not None:
            await on_startup(app)
        try:
            yield
        finally:
            logger.info("Service stopping", service=service_name)
            if on_shutdown is not None:
                await on_shutdown(app)

    return lifespan


def _error_body(detail: ErrorDetail) -> dict:
    return ErrorResponse(error=detail).model_dump(mode="json")


def register_error_handlers(app: FastAPI) -> None:
    """Render service exceptions and request validation failures as ErrorResponse bodies."""

    @app.exception_handler(AdmissionRouterError)
    async def on_service_error(request: Request, exc: AdmissionRouterError):
        logger.warning(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error_code=exc.error_code.value,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.to_detail()))

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        problems: List[str] = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        detail = ErrorDetail(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Request validation failed",
            details={"errors": problems},
        )
        return JSONResponse(status_code=422, content=_error_body(detail))


def create_fastapi_app(
    title: str,
    description: str,
    version: str,
    service_name: str,
    startup_hook: Optional[AppHook] = None,
    shutdown_hook: Optional[AppHook] = None,
    readiness_check: Optional[ReadinessCheck] = None,
    cors_origins: Optional[List[str]] = None,
    log_level: str = "INFO",
) -> FastAPI:
    """Build the app: logging, lifespan hooks, CORS, error rendering and ``/health``.

    ``readiness_check`` returns a flag per component; ``/health`` reports
    ``degraded`` while any of them is false.
    """
    configure_structured_logging(level=log_level)

    app = FastAPI(
        title=title,
        description=description,
        version=version,
        lifespan=_lifespan(service_name, startup_hook, shutdown_hook),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    @app.get("/health")
    async def health(request: Request):
        components = readiness_check(request.app) if readiness_check else {}
        status = "healthy" if all(components.values()) else "degraded"
        return {"status": status, "service": service_name, "version": version, "components": components}

    return app
