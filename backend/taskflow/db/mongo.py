from contextlib import asynccontextmanager
import asyncio
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from ..core.settings import settings

logger = logging.getLogger(__name__)

_client: AsyncIOMotorClient | None = None
_db = None


async def connect(max_retries: int = 10, delay: float = 2.0):
    """Connect to MongoDB on startup with retry logic and create indexes."""
    global _client, _db

    for attempt in range(max_retries):
        try:
            _client = AsyncIOMotorClient(
                settings.MONGODB_URI,
                serverSelectionTimeoutMS=5000,
                tz_aware=True,
            )
            # Actually test the connection with a ping
            await _client.admin.command('ping')
            _db = _client[settings.MONGODB_DB_NAME]
            logger.info("Connected to MongoDB")

            await create_indexes()
            return
        except PyMongoError as e:
            if attempt < max_retries - 1:
                logger.warning("MongoDB connection attempt %d failed, retrying in %ss... (%s)", attempt + 1, delay, e)
                await asyncio.sleep(delay)
            else:
                logger.error("Failed to connect to MongoDB after %d attempts: %s", max_retries, e)
                raise


async def create_indexes():
    """Create the unique indexes the access-control invariants rely on."""
    try:
        await _db["users"].create_index("user_id", unique=True)
        await _db["users"].create_index("email", unique=True)

        await _db["projects"].create_index("project_id", unique=True)
        await _db["projects"].create_index("owner_id")

        # One membership row per (project, user)
        await _db["project_members"].create_index([("project_id", 1), ("user_id", 1)], unique=True)
        await _db["project_members"].create_index("user_id")

        await _db["tasks"].create_index("task_id", unique=True)
        await _db["tasks"].create_index("project_id")
        await _db["tasks"].create_index("creator_id")

        await _db["invitations"].create_index("invitation_id", unique=True)
        await _db["invitations"].create_index("token", unique=True)
        await _db["invitations"].create_index([("project_id", 1), ("created_at", -1)])
        await _db["invitations"].create_index("email")
    except PyMongoError as e:
        logger.warning("Could not create indexes: %s", e)

    # At most one pending invitation per (project, email). Concurrent creates
    # depend on it, so the service does not start without it.
    try:
        await _db["invitations"].create_index(
            [("project_id", 1), ("email", 1)],
            unique=True,
            partialFilterExpression={"status": "pending"},
            name="one_pending_per_target",
        )
    except PyMongoError as e:
        logger.error("Could not create index one_pending_per_target: %s", e)
        raise
    logger.info("MongoDB indexes created")


async def close():
    """Close MongoDB connection on shutdown."""
    global _client
    if _client:
        _client.close()
        logger.info("MongoDB connection closed")


def db():
    """Return the database instance. Call after connect()."""
    if _db is None:
        raise RuntimeError("Database not connected. Call connect() first.")
    return _db


@asynccontextmanager
async def transaction():
    """
    Yield a session bound to a multi-document transaction, or None when
    transactions are disabled. Callers pass the value through as ``session=``.
    """
    if not settings.MONGODB_USE_TRANSACTIONS or _client is None:
        yield None
        return
    async with await _client.start_session() as session:
        async with session.start_transaction():
            yield session
