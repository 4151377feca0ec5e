from typing import Any, Callable, Dict, List

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.core.errors import Conflict
from wordslop_lobby.core.response import as_result
from wordslop_lobby.db.store import DocumentStore
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection
from wordslop_lobby.utils.time_utils import now_ms

logger = get_logger(__name__)


class PresenceTracker:
    """Who is online, independent of any lobby. Entries older than the threshold are dropped."""

    def __init__(self, store: DocumentStore, settings=None, clock: Callable[[], int] = now_ms):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock
        self.collection = self.settings.PRESENCE_COLLECTION

    @as_result
    async def update_user_presence(self, user_id: str, username: str) -> Dict[str, Any]:
        entry = {"userId": user_id, "username": username, "lastSeen": self.clock()}
        await self.store.set(self.collection, user_id, entry)
        logger.debug(
            section=LogSection.PRESENCE,
            subsection=LogSubsection.PRESENCE.UPDATE,
            message=f"Presence of {user_id} refreshed",
            user_id=user_id
        )
        return entry

    @as_result
    async def remove_user_presence(self, user_id: str) -> None:
        await self.store.delete(self.collection, user_id)
        logger.info(
            section=LogSection.PRESENCE,
            subsection=LogSubsection.PRESENCE.REMOVE,
            message=f"Presence of {user_id} removed",
            user_id=user_id
        )

    async def _online_users(self) -> List[Dict[str, Any]]:
        snapshots = await self.store.query(self.collection)
        now = self.clock()
        threshold = self.settings.presence_threshold_ms

        online, stale = [], []
        for snapshot in snapshots:
            last_seen = snapshot.data.get("lastSeen")
            if isinstance(last_seen, int) and now - last_seen < threshold:
                online.append(snapshot.data)
            else:
                stale.append(snapshot)

        if stale:
            def drop(batch):
                for snapshot in stale:
                    batch.delete(self.collection, snapshot.id, expected_revision=snapshot.revision)

            try:
                await self.store.run_batch(drop)
                logger.info(
                    section=LogSection.PRESENCE,
                    subsection=LogSubsection.PRESENCE.CLEANUP,
                    message=f"Dropped {len(stale)} stale presence entries"
                )
            except Conflict:
                # Someone came back online meanwhile; the next read cleans up
                logger.debug(
                    section=LogSection.PRESENCE,
                    subsection=LogSubsection.PRESENCE.CLEANUP,
                    message="Presence changed during cleanup, skipped"
                )

        return sorted(online, key=lambda entry: str(entry.get("username", "")))

    @as_result
    async def get_online_users(self) -> List[Dict[str, Any]]:
        return await self._online_users()

    @as_result
    async def get_online_user_count(self) -> int:
        return len(await self._online_users())
