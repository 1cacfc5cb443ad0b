# app/db/mongodb_utils.py
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from app.core.config import settings

logger = logging.getLogger(__name__)


class MongoDB:
    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

db_manager = MongoDB()

async def connect_to_mongo():
    logger.info("Connecting to MongoDB at %s...", str(settings.MONGO_URI).split("@")[-1])
    try:
        db_manager.client = AsyncIOMotorClient(
            str(settings.MONGO_URI),
            tz_aware=True,
            serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_TIMEOUT_MS,
        )
        db_manager.db = db_manager.client[str(settings.MONGO_DB_NAME)]
        # 尝试ping一下服务器，确认连接成功
        await db_manager.client.admin.command('ping')
        logger.info("Successfully connected to MongoDB!")
    except PyMongoError as e:
        logger.error("Failed to connect to MongoDB: %s", e)
        raise  # 重新抛出异常，让FastAPI知道启动失败

async def close_mongo_connection():
    if db_manager.client:
        logger.info("Closing MongoDB connection...")
        db_manager.client.close()
        logger.info("MongoDB connection closed.")

def get_database() -> AsyncIOMotorDatabase:
    if db_manager.db is None:
        raise RuntimeError("MongoDB not connected. Call connect_to_mongo first during app startup.")
    return db_manager.db

# --- Collection Getters ---
def get_device_collection():
    return get_database()["devices"]

def get_command_collection():
    return get_database()["commands"]

def get_alert_collection():
    return get_database()["alerts"]

def get_location_collection():
    return get_database()["locations"]

async def create_db_indexes():
    logger.info("Attempting to create database indexes...")
    db = get_database()
    try:
        # Devices
        await db["devices"].create_index("deviceId", unique=True)
        await db["devices"].create_index([("parentId", 1), ("isOnline", 1)])
        await db["devices"].create_index([("deviceId", 1), ("status", 1)])
        # offline sweep: isOnline + lastHeartbeat range
        await db["devices"].create_index([("isOnline", 1), ("lastHeartbeat", 1)])
        logger.info("Indexes for 'devices' collection ensured.")

        # Commands: pull query is deviceId + status, ordered by rank then age
        await db["commands"].create_index([("deviceId", 1), ("status", 1), ("priorityRank", -1), ("createdAt", 1)])
        await db["commands"].create_index([("parentId", 1), ("createdAt", -1)])
        await db["commands"].create_index([("status", 1), ("expiresAt", 1)])
        logger.info("Indexes for 'commands' collection ensured.")

        # Alerts
        await db["alerts"].create_index([("parentId", 1), ("isRead", 1)])
        await db["alerts"].create_index([("deviceId", 1), ("type", 1)])
        await db["alerts"].create_index([("parentId", 1), ("createdAt", -1)])
        await db["alerts"].create_index("createdAt")
        logger.info("Indexes for 'alerts' collection ensured.")

        # Locations
        await db["locations"].create_index([("deviceId", 1), ("timestamp", -1)])
        await db["locations"].create_index([("parentId", 1), ("timestamp", -1)])
        logger.info("Indexes for 'locations' collection ensured.")

        logger.info("Database indexes creation process completed.")
    except PyMongoError as e:
        logger.error("Error creating database indexes: %s", e)
