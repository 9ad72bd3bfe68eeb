import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import structlog
from prometheus_fastapi_instrumentator import Instrumentator

from smartgo.api import chat, day_pois, trips
from smartgo.api.deps import limiter
from smartgo.core.errors import ItineraryError
from smartgo.core.generation.models import select_model_candidates
from smartgo.core.settings import Settings, get_settings
from smartgo.db.session import db_manager
from smartgo.middleware.logging import RequestLoggingMiddleware

settings = get_settings()

# ?key=... on generativelanguage URLs, and bare Google API keys
_KEY_PARAM_RE = re.compile(r'([?&]key=)[^&\s]+')
_GOOGLE_KEY_RE = re.compile(r'(AIza[0-9A-Za-z\-_]{35})')


def redact_api_keys(logger, method_name, event_dict):
    """structlog processor: scrub Gemini keys from every string in the event"""

    def scrub(value):
        if isinstance(value, str):
            value = _KEY_PARAM_RE.sub(r'\1REDACTED', value)
            value = _GOOGLE_KEY_RE.sub('REDACTED', value)
            if settings.GEMINI_API_KEY:
                value = value.replace(settings.GEMINI_API_KEY, 'REDACTED')
            return value
        if isinstance(value, list):
            return [scrub(item) for item in value]
        if isinstance(value, dict):
            return {key: scrub(item) for key, item in value.items()}
        return value

    for key, value in list(event_dict.items()):
        event_dict[key] = scrub(value)
    return event_dict


def configure_logging(config: Settings) -> None:
    renderer = structlog.processors.JSONRenderer() if config.LOG_JSON else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_api_keys,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib loggers (smartgo.core.*, sqlalchemy, google_genai) share the handlers
    handlers = [logging.StreamHandler()]
    if config.LOG_FILE:
        handlers.append(logging.FileHandler(config.LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(message)s',
        handlers=handlers,
    )


configure_logging(settings)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "smartgo_starting",
        models=select_model_candidates(settings.GEMINI_MODEL, settings.GEMINI_FALLBACK_MODELS),
        gemini_configured=bool(settings.GEMINI_API_KEY),
    )
    try:
        await db_manager.initialize()
        await db_manager.init_db()
    except Exception:
        logger.exception("database_startup_failed")
        raise
    logger.info("database_ready")

    yield

    logger.info("smartgo_stopping")
    try:
        await db_manager.close()
    except Exception as e:
        logger.error("database_close_failed", error=str(e))

app = FastAPI(
    title="SmartGo Trip API",
    description="Trip itineraries generated by Gemini and edited through chat",
    version="1.0.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.exception_handler(ItineraryError)
async def itinerary_error_handler(request: Request, exc: ItineraryError):
    """Domain failures keep their status and message; issues ride along for schema errors"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "itinerary_error",
        error=exc.message,
        error_type=exc.error_type,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health_check():
    """Liveness plus database connectivity and Gemini configuration"""
    db_health = await db_manager.health_check()
    db_status = db_health["status"]
    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "version": app.version,
        "components": {
            "database": db_status,
            "gemini": "configured" if settings.GEMINI_API_KEY else "missing_api_key",
        },
        "models": select_model_candidates(settings.GEMINI_MODEL, settings.GEMINI_FALLBACK_MODELS),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


app.include_router(trips.router, prefix="/api")
app.include_router(chat.router, prefix="/api")
app.include_router(day_pois.router, prefix="/api")
