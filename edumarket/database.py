from edumarket.config import get_settings
from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

settings = get_settings()

_mongo_client: AsyncIOMotorClient | None = None


async def init_db(client=None, db_name: str | None = None) -> None:
    """Initialize MongoDB (Beanie) and register document models.

    `client` lets callers hand in an already built Motor-compatible client
    (tests use mongomock-motor).
    """
    global _mongo_client
    _mongo_client = client or AsyncIOMotorClient(settings.MONGODB_URI)
    from edumarket.models import DOCUMENT_MODELS

    await init_beanie(
        database=_mongo_client[db_name or settings.database_name],
        document_models=DOCUMENT_MODELS,
    )


async def ping_db() -> bool:
    """Check MongoDB connectivity."""
    if not _mongo_client:
        return False
    try:
        await _mongo_client.admin.command("ping")
        return True
    except Exception:
        return False
