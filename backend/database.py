from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from config.env import MONGO_URI

load_dotenv()

_client = None
_db = None


def get_db():
    global _client, _db

    if _db is None:
        if not MONGO_URI:
            raise RuntimeError("MONGODB_URI not set")
        # tz_aware: every timestamp read back is UTC-aware
        _client = AsyncIOMotorClient(MONGO_URI, tz_aware=True)
        _db = _client.get_default_database()
    return _db
