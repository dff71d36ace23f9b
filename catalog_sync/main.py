import structlog
import logging
import contextlib

from fastapi import FastAPI
from fastapi.exceptions import HTTPException

from catalog_sync.config import settings
from catalog_sync.database import SessionLocal, init_db, close_db
from catalog_sync.exceptions import AppError, app_error_handler, http_error_handler
from catalog_sync.lease import build_lease, init_redis_pool, close_redis_pool
from catalog_sync.routers.admin import router as admin_router
from catalog_sync.routers.sync import router as sync_router
from catalog_sync.services.billetweb import BilletwebClient
from catalog_sync.services.coordinator import RunCoordinator
from catalog_sync.services.scheduler import start_scheduler

# ── Structured logging setup ──────────────────────────────────────────────────
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)
logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)

log = structlog.get_logger(__name__)

SHUTDOWN_DRAIN_SECONDS = 30.0


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await init_db()
    if settings.SYNC_LEASE_BACKEND == "redis":
        await init_redis_pool()

    coordinator = RunCoordinator.from_settings(
        SessionLocal, BilletwebClient.from_settings(), lease=build_lease()
    )
    app.state.coordinator = coordinator
    app.state.scheduler = start_scheduler(coordinator)
    log.info("app.ready", scheduler=app.state.scheduler is not None)
    yield
    log.info("app.shutting_down")
    if app.state.scheduler is not None:
        app.state.scheduler.stop()
        await app.state.scheduler.wait_idle(SHUTDOWN_DRAIN_SECONDS)
    await close_redis_pool()
    await close_db()
    log.info("app.stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    lifespan=lifespan,
)

# ── Exception handlers ────────────────────────────────────────────────────────
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(admin_router)
app.include_router(sync_router)
