# wordslop_lobby/main.py

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.db.database import create_store
from wordslop_lobby.db.indexes import create_database_indexes
from wordslop_lobby.db.mongo import MongoDocumentStore
from wordslop_lobby.db.store import DocumentStore
from wordslop_lobby.logging import (
    setup_application_logging,
    get_logger,
    LogSection,
    LogSubsection,
    close_all_rabbitmq_connections,
)
from wordslop_lobby.multiplayer.auto_start import AutoStarter
from wordslop_lobby.multiplayer.coordinator import LobbyCoordinator
from wordslop_lobby.multiplayer.presence import PresenceTracker
from wordslop_lobby.multiplayer.reaper import LobbyReaper, ReaperTask
from wordslop_lobby.multiplayer.round_state import RoundStateRepository
from wordslop_lobby.multiplayer.sync import LobbyViewSynchronizer
from wordslop_lobby.utils.time_utils import now_ms

logger = get_logger(__name__)


class LobbyService:
    """Wires every lobby component around one document store."""

    def __init__(self, store: DocumentStore, settings=None, clock=now_ms, run_reaper: bool = True):
        self.settings = settings or default_settings
        self.store = store
        self.clock = clock
        self.coordinator = LobbyCoordinator(store, self.settings, clock)
        self.rounds = RoundStateRepository(store, self.settings, clock)
        self.presence = PresenceTracker(store, self.settings, clock)
        self.reaper = LobbyReaper(store, self.settings, clock)
        self.reaper_task = ReaperTask(self.reaper) if run_reaper else None
        self.started = False

    def synchronizer_for(self, user_id: str) -> LobbyViewSynchronizer:
        return LobbyViewSynchronizer(self.store, user_id, self.settings, self.coordinator)

    def auto_starter_for(self, lobby_id: str) -> AutoStarter:
        return AutoStarter(self.coordinator, lobby_id, self.settings, self.clock)

    async def startup(self):
        logger.info(
            section=LogSection.SYSTEM,
            subsection=LogSubsection.SYSTEM.STARTUP,
            message=f"Starting lobby service on {self.settings.STORE_BACKEND} store"
        )

        if isinstance(self.store, MongoDocumentStore):
            try:
                await create_database_indexes(self.store.db, self.settings)
                logger.info(
                    section=LogSection.SYSTEM,
                    subsection=LogSubsection.SYSTEM.STARTUP,
                    message="Database indexes created"
                )
            except Exception as e:
                logger.error(
                    section=LogSection.SYSTEM,
                    subsection=LogSubsection.SYSTEM.STARTUP,
                    message=f"Failed to create database indexes: {str(e)}"
                )

        if self.reaper_task is not None:
            await self.reaper_task.start()
        self.started = True

    async def shutdown(self):
        logger.info(
            section=LogSection.SYSTEM,
            subsection=LogSubsection.SYSTEM.SHUTDOWN,
            message="Stopping lobby service"
        )

        if self.reaper_task is not None:
            await self.reaper_task.stop()
        await self.store.close()

        try:
            await close_all_rabbitmq_connections()
        except Exception as e:
            logger.error(
                section=LogSection.SYSTEM,
                subsection=LogSubsection.SYSTEM.SHUTDOWN,
                message=f"Failed to close RabbitMQ connections: {str(e)}"
            )
        self.started = False

    async def __aenter__(self):
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()


def create_lobby_service(settings=None, configure_logging: bool = True) -> LobbyService:
    settings = settings or default_settings
    if configure_logging:
        setup_application_logging(settings)
    return LobbyService(create_store(settings), settings)
