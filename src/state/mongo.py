import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def history_enabled() -> bool:
    return bool(os.getenv("MONGODB_URI"))


def _get_db_name_from_uri(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.path and len(parsed.path) > 1:
        return parsed.path.lstrip("/")
    return os.getenv("MONGODB_DB", "quotawatch")


async def init_mongo() -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """Connect to MongoDB and ensure the usage_history indexes.

    Reads MONGODB_URI and the connect/socket timeouts from environment.
    """
    global _client, _db

    uri = os.getenv("MONGODB_URI", "mongodb://localhost:27017/quotawatch")
    connect_timeout_ms = int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "5000"))
    socket_timeout_ms = int(os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "10000"))

    try:
        _client = AsyncIOMotorClient(
            uri,
            maxPoolSize=int(os.getenv("MONGODB_MAX_POOL_SIZE", "10")),
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )
        db_name = _get_db_name_from_uri(uri)
        _db = _client[db_name]

        try:
            await _db.command("ping")
            logger.info("Connected to MongoDB database '%s'", db_name)
        except Exception as e:  # pragma: no cover
            logger.warning("MongoDB ping failed: %s", e)

        await _ensure_indexes(_db)
        return _client, _db
    except Exception as e:
        logger.exception("Failed to initialize MongoDB: %s", e)
        raise


async def close_mongo() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


async def _ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    col = db["usage_history"]
    try:
        await col.create_index([("service_id", 1), ("ts", -1)], name="service_ts_v1")
        logger.info("MongoDB indexes ensured for usage_history")
    except Exception as e:  # pragma: no cover - index creation failures should not crash
        logger.warning("Failed to ensure MongoDB indexes: %s", e)
