import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from app.api.v1 import security as security_routes
from app.core.config import settings
from app.db.redis_client import RedisResource
from app.db.session import Database
from app.security.audit.access_logger import (
    AccessLogMiddleware,
    CorrelationIdMiddleware,
)
from app.security.audit.login_activity import LoginActivityRepository
from app.security.auth.session_manager import SessionManager
from app.security.request_info import RequestInfoExtractor, build_geolocator
from app.services.collaborators import HttpNewDeviceNotifier, HttpUserDirectory
from app.services.security_service import SecurityService
from app.utils.error_handler import register_exception_handlers
from app.utils.logger import configure_logging, get_logger
from app.utils.rate_limiter import RedisFixedWindowLimiter

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Multi-device session management, login activity auditing and "
        "suspicious login detection"
    ),
    version="1.0.0",
)

# Initialize Sentry if DSN is provided
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.APP_ENV,
        traces_sample_rate=0.1,
    )
    app.add_middleware(SentryAsgiMiddleware)
    logger.info(
        "Sentry initialized with SentryAsgiMiddleware", environment=settings.APP_ENV
    )
else:
    logger.info("Sentry not configured (SENTRY_DSN not set)")

allowed_origins = settings.CORS_ALLOW_ORIGINS or ["http://localhost:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(AccessLogMiddleware)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

app.include_router(security_routes.router, prefix="/api/v1")
app.include_router(security_routes.auth_router, prefix="/api/v1")

# Initialize Prometheus metrics
instrumentator = Instrumentator(
    should_group_status_codes=False,
    excluded_handlers=["/metrics"],  # Don't monitor the metrics endpoint itself
)
instrumentator.instrument(app).expose(app)


@app.on_event("startup")
async def startup_event():
    """Connect the stores and wire the security service onto app.state."""
    logger.info(
        "Login security service starting up",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        sentry_enabled=bool(settings.SENTRY_DSN),
    )
    database = Database()
    database.connect()
    if settings.DB_AUTO_CREATE:
        database.create_all()

    redis_resource = RedisResource()
    client = await redis_resource.connect()

    session_manager = SessionManager(client)
    app.state.geolocator = build_geolocator()
    app.state.database = database
    app.state.redis = redis_resource
    app.state.session_manager = session_manager
    app.state.user_directory = HttpUserDirectory()
    app.state.notifier = HttpNewDeviceNotifier()
    app.state.security_service = SecurityService(
        session_manager,
        LoginActivityRepository(database.session_factory),
        users=app.state.user_directory,
        notifier=app.state.notifier,
        extractor=RequestInfoExtractor(app.state.geolocator),
    )
    app.state.rate_limiter = RedisFixedWindowLimiter("security", client)


@app.on_event("shutdown")
async def shutdown_event():
    """Drain notifications, then release collaborators and stores."""
    service = getattr(app.state, "security_service", None)
    if service is not None:
        await service.wait_for_notifications(timeout=10.0)
    for name in ("user_directory", "notifier"):
        collaborator = getattr(app.state, name, None)
        if collaborator is not None:
            await collaborator.aclose()
    geolocator = getattr(app.state, "geolocator", None)
    if hasattr(geolocator, "close"):
        geolocator.close()
    redis_resource = getattr(app.state, "redis", None)
    if redis_resource is not None:
        await redis_resource.close()
    database = getattr(app.state, "database", None)
    if database is not None:
        database.dispose()
    logger.info("Login security service shut down")


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint"""
    logger.info("Health check requested")
    return {"status": "ok"}
