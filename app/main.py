"""
Webhook Retry Service - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.domain.services.replay_handlers import load_replay_handler_modules

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {
        "name": "Webhook Retries",
        "description": "ניהול תור ה-retry של webhooks: סיכום, dead-letter, retry ידני והרצת batch.",
    },
    {"name": "Health", "description": "Liveness ו-readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "תור retry ו-dead-letter עבור webhooks נכנסים מ-Stripe, Mux ו-Twilio. "
        "אירועים שנכשלו נשמרים עם backoff אקספוננציאלי ומשוחזרים ע\"י Celery beat."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    # המיגרציות רצות רק על PostgreSQL. ב-SQLite (בדיקות) create_all מספיק.
    if engine.dialect.name == "postgresql":
        from app.db.migrations import run_all_migrations

        async with engine.begin() as conn:
            await run_all_migrations(conn)
        logger.info("Auto-migrations completed")

    loaded = load_replay_handler_modules()
    if loaded:
        logger.info("Replay handler modules loaded", extra_data={"modules": loaded})


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="בדיקה קלה שהתהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת DB ו-Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded עם פירוט השגיאה."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "celery": "ok"}
                }
            },
        },
        503: {
            "description": "לפחות תלות אחת לא זמינה",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "celery": "error: celery_unavailable",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe - בדיקת התלויות החיצוניות."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
