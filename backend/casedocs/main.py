"""
CaseDocs pipeline API.

  create_app()          app factory; `app` below is what uvicorn serves
  lifespan()            refuses to start without PostgreSQL, then installs the
                        pipeline components on app.state
  _add_middleware()     gzip, CORS, production host check, X-Request-ID + access log
  _add_error_handlers() every error leaves as an ErrorResponse envelope

Routes live under settings.api_prefix; /health and /ready are unauthenticated.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from casedocs.api.dependencies import install_pipeline
from casedocs.api.v1.documents import router as documents_router
from casedocs.api.v1.queue import router as queue_router
from casedocs.core.config import settings
from casedocs.db.session import check_db_health
from casedocs.schemas.queue import HTTP_ERROR_MAP, ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("CaseDocs starting | env=%s bucket=%s issuer=%s",
                settings.app_env, settings.s3_bucket, settings.auth_issuer)

    db = await check_db_health()
    if db["status"] != "ok":
        logger.critical("Database unreachable at startup: %s", db)
        raise RuntimeError(f"DB unavailable: {db}")

    install_pipeline(app, settings)
    yield

    logger.info("CaseDocs stopping")
    from casedocs.db.session import engine
    await engine.dispose()


def _request_id(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get("X-Request-ID")
        or str(uuid.uuid4())
    )


def _error(status_code: int, body: ErrorResponse, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

ops_router = APIRouter(tags=["Operations"])


@ops_router.get("/health", summary="Process is up")
async def health() -> dict:
    return {"status": "ok", "service": "casedocs-pipeline"}


@ops_router.get("/ready", summary="Database is reachable")
async def readiness() -> JSONResponse:
    db = await check_db_health()
    if db["status"] != "ok":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "database": db},
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "database": db})


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def _add_middleware(app: FastAPI) -> None:
    # Last added runs outermost.
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Job-ID", "Retry-After"],
    )
    if settings.is_production:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=["api.casedocs.example.com", "*.casedocs.example.com"],
        )

    @app.middleware("http")
    async def tag_and_log(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id,
        )
        return response


def _add_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        request_id = _request_id(request)
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse(**{**exc.detail, "request_id": request_id})
        else:
            body = ErrorResponse(
                error_code=HTTP_ERROR_MAP.get(exc.status_code, "HTTP_ERROR"),
                message=str(exc.detail),
                request_id=request_id,
            )
        return _error(exc.status_code, body, exc.headers)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=" → ".join(str(loc) for loc in err["loc"]),
                    message=err["msg"],
                    code="VALIDATION_ERROR",
                )
                for err in exc.errors()
            ],
            request_id=_request_id(request),
        )
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, body)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, body, {"X-Request-ID": request_id})


def create_app() -> FastAPI:
    docs_enabled = not settings.is_production
    app = FastAPI(
        title="CaseDocs Document Pipeline",
        description="OCR job queue, text extraction, AI analysis and chunking for legal case documents.",
        version="1.0.0",
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    _add_middleware(app)
    _add_error_handlers(app)

    app.include_router(queue_router,     prefix=settings.api_prefix)
    app.include_router(documents_router, prefix=settings.api_prefix)
    app.include_router(ops_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "casedocs.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
