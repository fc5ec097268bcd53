# backend/sca/database.py
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from .config import settings

logger = logging.getLogger(__name__)


class Database:
    client: Optional[AsyncIOMotorClient] = None
    database: Optional[AsyncIOMotorDatabase] = None

db = Database()

async def connect_to_mongo() -> AsyncIOMotorDatabase:
    """Create database connection"""
    logger.info("Connecting to MongoDB...")

    db.client = AsyncIOMotorClient(settings.MONGODB_URL)
    db.database = db.client[settings.DATABASE_NAME]

    # Test connection
    try:
        await db.client.admin.command('ping')
        logger.info(f"✅ Connected to MongoDB: {settings.DATABASE_NAME}")
    except Exception as e:
        logger.error(f"❌ Failed to connect to MongoDB: {e}")
        raise

    return db.database

async def close_mongo_connection():
    """Close database connection"""
    if db.client:
        db.client.close()
        db.client = None
        db.database = None
        logger.info("✅ Disconnected from MongoDB")

async def get_database() -> AsyncIOMotorDatabase:
    """Get database instance"""
    return db.database

async def ping(database: AsyncIOMotorDatabase) -> bool:
    """True if the server answers a ping"""
    try:
        await database.command('ping')
        return True
    except Exception as e:
        logger.warning(f"Database ping failed: {e}")
        return False

# Database initialization
async def init_database(database: AsyncIOMotorDatabase):
    """Create the indexes used by the poller and the HTTP queries"""
    tasks_collection = database.tasks

    # Poller scans requested tasks oldest first
    await tasks_collection.create_index([("status", 1), ("request_date", 1)])
    await tasks_collection.create_index("user_id")
    await tasks_collection.create_index("instance_id")

    resources_collection = database.resources
    await resources_collection.create_index("user_id")
    await resources_collection.create_index("gids")

    logger.info("✅ Database indexes created")
