"""MongoDB connection and Beanie document registration."""
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.config import settings
from app.models import CellGroupAttendance, MinistryAttendance, ServiceAttendance


_client = None


async def db_startup():
    """Connect to MongoDB and initialize Beanie ODM (creates the date/entity indexes)."""
    global _client
    _client = AsyncIOMotorClient(settings.mongodb_url)
    await init_beanie(
        database=_client[settings.mongodb_db_name],
        document_models=[
            MinistryAttendance,
            ServiceAttendance,
            CellGroupAttendance,
        ],
    )


async def db_shutdown():
    """Close MongoDB connection."""
    global _client
    if _client:
        _client.close()
        _client = None


def get_database():
    if _client is None:
        raise RuntimeError("Database is not initialized; call db_startup() first")
    return _client[settings.mongodb_db_name]
