"""
ChannelSync - marketplace order ingestion API
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import uvicorn
import logging

from routes.api import register_routes
from channelsync.database import engine, Base, SessionLocal
from channelsync.config import settings
from channelsync.connectors import build_registry
from channelsync.errors import ChannelSyncError
from channelsync.services.handshake_store import DatabaseHandshakeStore
from channelsync.workers.scheduler import WorkerScheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="ChannelSync API",
    description="Marketplace order ingestion: OAuth, sync, webhooks, fulfillment push-back",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

app.state.registry = build_registry(settings)
app.state.handshake_store = DatabaseHandshakeStore(SessionLocal)
scheduler = WorkerScheduler(SessionLocal, app.state.registry)

logger.info(f"🚀 Starting ChannelSync API")
logger.info(f"📊 Environment: {settings.ENV}")
logger.info(f"🔗 Host: {settings.HOST}:{settings.PORT}")
logger.info(f"🔌 Connectors: {[c.name for c in app.state.registry]}")

if settings.IS_PRODUCTION and settings.ENCRYPTION_KEY == "your-32-character-encryption-key!!":
    logger.warning("⚠️ ENCRYPTION_KEY is the default in production. Set a Fernet key in environment.")
if not settings.WEBHOOK_BASE_URL:
    logger.warning("⚠️ WEBHOOK_BASE_URL is not set. Webhooks will not be registered on connect.")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": exc.errors(),
            "message": "Validation error: Please check your request format"
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(ChannelSyncError)
async def channel_error_handler(request: Request, exc: ChannelSyncError):
    """Typed errors that escape a controller become 502s with their structured body."""
    logger.error(f"Unhandled channel error: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": exc.to_dict()},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
logger.info(f"✅ CORS configured for {len(settings.ALLOWED_ORIGINS)} origin(s)")

register_routes(app, settings)


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "api",
        "db": db_status,
        "environment": settings.ENV,
        "connectors": [c.name for c in app.state.registry],
        "workers": scheduler.get_worker_status(),
    }


@app.on_event("startup")
async def startup_workers() -> None:
    """Start the periodic order sync."""
    if settings.ENABLE_SCHEDULER:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_workers() -> None:
    scheduler.stop_scheduler()


@app.get("/api")
async def root():
    """API root endpoint"""
    return {
        "message": "ChannelSync API",
        "version": "1.0.0",
        "environment": settings.ENV,
        "docs": "/docs" if settings.IS_DEVELOPMENT else "disabled in production"
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,
        log_level=settings.LOG_LEVEL.lower()
    )
