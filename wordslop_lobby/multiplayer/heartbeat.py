import asyncio
from typing import Optional

from wordslop_lobby.logging import get_logger, LogSection, LogSubsection

logger = get_logger(__name__)


class HeartbeatTask:
    """
    Keeps one player alive in one lobby while the caller is looking at it.

    The loop stops by itself once the lobby (or the player in it) is gone.
    """

    def __init__(self, coordinator, lobby_id: str, user_id: str, interval: Optional[float] = None):
        self.coordinator = coordinator
        self.lobby_id = lobby_id
        self.user_id = user_id
        self.interval = interval if interval is not None else coordinator.settings.HEARTBEAT_INTERVAL_SEC
        self.running = False
        self.task = None
        self.beats = 0
        self.log = logger.bind(user_id=user_id, lobby_id=lobby_id)

    async def start(self):
        if self.running:
            return

        self.running = True
        self.task = asyncio.create_task(self._heartbeat_loop())
        self.log.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.HEARTBEAT,
            message=f"Heartbeat started for {self.user_id} in lobby {self.lobby_id}, every {self.interval}s"
        )

    async def stop(self):
        if not self.running and (self.task is None or self.task.done()):
            return

        self.running = False
        if self.task and self.task is not asyncio.current_task():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.log.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.HEARTBEAT,
            message=f"Heartbeat stopped for {self.user_id} in lobby {self.lobby_id}"
        )

    async def _heartbeat_loop(self):
        while self.running:
            result = await self.coordinator.update_heartbeat(self.lobby_id, self.user_id)
            if result.ok:
                self.beats += 1
                if result.data is False:
                    self.log.info(
                        section=LogSection.LOBBY,
                        subsection=LogSubsection.LOBBY.HEARTBEAT,
                        message=f"Lobby {self.lobby_id} no longer holds {self.user_id}, heartbeat ends"
                    )
                    self.running = False
                    return
            else:
                # Keep beating through transient store failures
                self.log.warning(
                    section=LogSection.LOBBY,
                    subsection=LogSubsection.LOBBY.HEARTBEAT,
                    message=f"Heartbeat failed: {result.message}"
                )
            await asyncio.sleep(self.interval)
