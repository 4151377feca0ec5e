"""
MongoDB index setup for the lobby collections
"""
from pymongo import IndexModel
from pymongo.errors import PyMongoError

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection

logger = get_logger("database_indexes")


async def create_database_indexes(db, settings=None):
    settings = settings or default_settings

    logger.info(
        section=LogSection.DATABASE,
        subsection=LogSubsection.DATABASE.INDEXES_CREATE,
        message="Creating database indexes"
    )

    try:
        # Public lobby list and passcode lookups
        await db[settings.LOBBIES_COLLECTION].create_indexes([
            IndexModel([("visibility", 1), ("status", 1)], name="visibility_status"),
            IndexModel([("passcode", 1)], name="passcode",
                       partialFilterExpression={"visibility": "PRIVATE"}),
            IndexModel([("hostUserId", 1)], name="host_user_id"),
        ])
        logger.info(section=LogSection.DATABASE,
                    subsection=LogSubsection.DATABASE.INDEXES_SUCCESS,
                    message=f"Indexes for {settings.LOBBIES_COLLECTION} created")

        await db[settings.PRESENCE_COLLECTION].create_indexes([
            IndexModel([("lastSeen", 1)], name="last_seen"),
        ])
        logger.info(section=LogSection.DATABASE,
                    subsection=LogSubsection.DATABASE.INDEXES_SUCCESS,
                    message=f"Indexes for {settings.PRESENCE_COLLECTION} created")

    except PyMongoError as e:
        logger.error(
            section=LogSection.DATABASE,
            subsection=LogSubsection.DATABASE.ERROR,
            message=f"Failed to create indexes: {e}"
        )
        raise
