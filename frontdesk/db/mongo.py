import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from frontdesk.core.config import settings
from frontdesk.repositories.idempotency_repo import ensure_idempotency_indexes

logger = logging.getLogger(__name__)


class MongoDatabase:
    """MongoDB connection manager."""

    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

mongodb = MongoDatabase()

async def connect_to_mongo() -> Optional[AsyncIOMotorDatabase]:
    """Connect to MongoDB when a URL is configured."""
    if not settings.MONGODB_URL:
        logger.info("MONGODB_URL not set; idempotency records stay in memory")
        return None
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URL)
    mongodb.db = mongodb.client[settings.DATABASE_NAME]

    await ensure_idempotency_indexes(mongodb.db)
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)
    return mongodb.db

async def disconnect_from_mongo():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
        mongodb.client = None
        mongodb.db = None
        logger.info("Disconnected from MongoDB")