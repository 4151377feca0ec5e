# wordslop_lobby/db/database.py

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.db.memory import InMemoryDocumentStore
from wordslop_lobby.db.mongo import MongoDocumentStore
from wordslop_lobby.db.store import DocumentStore
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection

logger = get_logger(__name__)


def create_store(settings=None) -> DocumentStore:
    """Build the document store selected by STORE_BACKEND."""
    settings = settings or default_settings

    if settings.STORE_BACKEND == "memory":
        store = InMemoryDocumentStore(max_attempts=settings.TRANSACTION_MAX_ATTEMPTS)
    else:
        # The client connects lazily, so this does not touch the network yet
        store = MongoDocumentStore(
            settings.MONGO_URI,
            settings.MONGO_DB_NAME,
            max_attempts=settings.TRANSACTION_MAX_ATTEMPTS,
        )

    logger.info(
        section=LogSection.SYSTEM,
        subsection=LogSubsection.SYSTEM.INITIALIZATION,
        message=f"Document store initialized: {settings.STORE_BACKEND}"
    )
    return store
