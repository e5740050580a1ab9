from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import structlog

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prflow.config import settings
from prflow.database import init_db, close_db, get_sessionmaker
from prflow.errors import ConfigurationError, WorkflowError
from prflow.logging_config import setup_logging
from prflow.middleware.correlation import CorrelationIdMiddleware
from prflow.services.notification_service import close_notification_sink
from prflow.services.stage_policy import get_stage_policy

# Import models so they are registered with Base.metadata
import prflow.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_prflow", env=settings.ENVIRONMENT)
    # Fail fast on a broken approval sequence instead of at the first decision
    get_stage_policy().validate()
    await init_db()
    yield
    await close_notification_sink()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers: every error leaves as
# {"error": {"code": "...", "message": "...", ...}}
# ---------------------------------------------------------------------------

@app.exception_handler(WorkflowError)
async def workflow_exception_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    if isinstance(exc, ConfigurationError):
        logger.error("workflow_misconfigured", error=exc.message, path=request.url.path)
    elif exc.status_code >= 500:
        logger.warning("workflow_unavailable", code=exc.code, error=exc.message)
    else:
        logger.info("workflow_rejected", code=exc.code, error=exc.message)

    headers = None
    if exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        headers = {"Retry-After": "1"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_detail()},
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
            }
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances (e.g. Decimal constraint failures)
    return [
        {key: value for key, value in err.items() if key != "ctx"}
        for err in exc.errors()
    ]


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(
    response: Response,
    sessionmaker: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        async with sessionmaker() as session:
            await asyncio.wait_for(
                session.execute(text("SELECT 1")), timeout=settings.STORE_TIMEOUT_SECONDS
            )
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from prflow.routes.purchase_requests import router as pr_router  # noqa: E402
from prflow.routes.purchase_requests import projects_router  # noqa: E402

app.include_router(pr_router, prefix="/api/v1/purchase-requests", tags=["Purchase Requests"])
app.include_router(projects_router, prefix="/api/v1/projects", tags=["Projects"])
