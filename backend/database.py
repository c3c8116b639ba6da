from motor.motor_asyncio import AsyncIOMotorClient

import config

# MongoDB connection
client = AsyncIOMotorClient(config.MONGO_URL)
db = client[config.DB_NAME]


def get_db():
    """FastAPI dependency returning the application database."""
    return db
