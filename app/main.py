# app/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import log_settings_summary, settings
from app.core.errors import DispatchError
from app.core.logging_setup import setup_logging
from app.db.mongodb_utils import close_mongo_connection, connect_to_mongo, create_db_indexes
from app.mqtt.mqtt_client import AsyncMQTTClient
from app.routers import alert_router, command_router, device_router, location_router
from app.services.container import build_services

setup_logging()
logger = logging.getLogger(__name__)


# 使用 lifespan 管理应用生命周期事件
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("FastAPI application startup...")
    log_settings_summary()
    if settings.STORE_BACKEND == "mongo":
        await connect_to_mongo()
        await create_db_indexes()

    mqtt_client = None
    if settings.MQTT_BROKER_HOST:
        mqtt_client = AsyncMQTTClient.from_settings()
    services = build_services(transport=mqtt_client)
    if mqtt_client is not None:
        mqtt_client.bind(services.presence, services.dispatch)
        await mqtt_client.connect()
    app.state.services = services
    await services.start()

    yield
    # Shutdown
    logger.info("FastAPI application shutdown...")
    await services.stop()
    if mqtt_client is not None:
        await mqtt_client.disconnect()
    if settings.STORE_BACKEND == "mongo":
        await close_mongo_connection()
    logger.info("FastAPI application shutdown complete.")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.PROJECT_VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
)

if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.kind, "detail": exc.detail},
    )


@app.get("/", summary="Root Endpoint")
async def read_root():
    return {"message": f"Welcome to {settings.PROJECT_NAME} v{settings.PROJECT_VERSION}"}


app.include_router(command_router.router, prefix=f"{settings.API_V1_STR}/commands", tags=["Commands"])
app.include_router(device_router.router, prefix=f"{settings.API_V1_STR}/devices", tags=["Devices"])
app.include_router(alert_router.router, prefix=f"{settings.API_V1_STR}/alerts", tags=["Alerts"])
app.include_router(location_router.router, prefix=f"{settings.API_V1_STR}/locations", tags=["Locations"])


@app.get("/health", summary="Health Check")
async def health_check(request: Request):
    services = getattr(request.app.state, "services", None)
    return {
        "status": "healthy",
        "storeBackend": settings.STORE_BACKEND,
        "pendingEvents": services.events.pending if services else 0,
    }
