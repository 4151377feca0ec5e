# wordslop_lobby/multiplayer/auto_start.py

import asyncio
from enum import Enum
from typing import Callable, Optional

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection
from wordslop_lobby.models.lobby import Lobby, LobbyStatus
from wordslop_lobby.utils.time_utils import now_ms

logger = get_logger(__name__)


class CountdownEvent(str, Enum):
    NONE = "none"
    STARTED = "started"
    CANCELLED = "cancelled"
    FIRE = "fire"


def countdown_applies(lobby: Optional[Lobby]) -> bool:
    return (
        lobby is not None
        and lobby.status == LobbyStatus.WAITING
        and len(lobby.players) >= lobby.max_players
    )


class AutoStartCountdown:
    """
    Pure countdown state, fed with every observed lobby state.

    The countdown starts when a WAITING lobby becomes full, is cancelled as soon
    as it is seen below capacity (or no longer WAITING), and reports FIRE once
    when the full duration has elapsed while still full.
    """

    def __init__(self, duration_ms: int):
        self.duration_ms = duration_ms
        self.started_at: Optional[int] = None
        self.fired = False

    @property
    def running(self) -> bool:
        return self.started_at is not None and not self.fired

    def remaining_ms(self, now: int) -> Optional[int]:
        if not self.running:
            return None
        return max(0, self.started_at + self.duration_ms - now)

    def observe(self, lobby: Optional[Lobby], now: int) -> CountdownEvent:
        if not countdown_applies(lobby):
            if self.started_at is None:
                return CountdownEvent.NONE
            was_fired = self.fired
            self.started_at = None
            self.fired = False
            # After firing the lobby leaves WAITING; that is not a cancellation
            return CountdownEvent.NONE if was_fired else CountdownEvent.CANCELLED

        if self.started_at is None:
            self.started_at = now
            self.fired = False
            return CountdownEvent.STARTED

        if not self.fired and now - self.started_at >= self.duration_ms:
            self.fired = True
            return CountdownEvent.FIRE
        return CountdownEvent.NONE


class AutoStarter:
    """
    Drives an AutoStartCountdown from lobby observations and issues the
    WAITING -> IN_PROGRESS write when it fires.

    The write re-reads the lobby and only starts it while it is still WAITING
    and full, so a leave the starter has not observed yet still prevents the
    start. Several clients may run one for the same lobby.
    """

    def __init__(self, coordinator, lobby_id: str, settings=None, clock: Callable[[], int] = now_ms):
        self.coordinator = coordinator
        self.lobby_id = lobby_id
        self.settings = settings or default_settings
        self.clock = clock
        self.countdown = AutoStartCountdown(self.settings.auto_start_countdown_ms)
        self._latest: Optional[Lobby] = None
        self._timer: Optional[asyncio.Task] = None
        self.started = False
        self.log = logger.bind(lobby_id=lobby_id)

    async def on_view(self, view):
        """Listener hook for ObservationScope."""
        await self.on_lobby(view.lobby)

    async def on_lobby(self, lobby: Optional[Lobby]) -> CountdownEvent:
        self._latest = lobby
        event = self.countdown.observe(lobby, self.clock())

        if event == CountdownEvent.STARTED:
            self.log.info(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.AUTO_START,
                message=f"Lobby {self.lobby_id} is full, auto-start in {self.countdown.duration_ms} ms"
            )
            self._cancel_timer()
            self._timer = asyncio.create_task(self._run_timer())
        elif event == CountdownEvent.CANCELLED:
            self.log.info(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.AUTO_START,
                message=f"Auto-start countdown for lobby {self.lobby_id} cancelled"
            )
            self._cancel_timer()
        elif event == CountdownEvent.FIRE:
            await self._fire()
        return event

    async def _run_timer(self):
        while True:
            remaining = self.countdown.remaining_ms(self.clock())
            if remaining is None:
                return
            await asyncio.sleep(remaining / 1000)
            event = self.countdown.observe(self._latest, self.clock())
            if event == CountdownEvent.FIRE:
                await self._fire()
                return
            if event == CountdownEvent.CANCELLED:
                return

    async def _fire(self):
        result = await self.coordinator.auto_start_lobby(self.lobby_id)
        if result.ok and not result.data:
            self.log.info(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.AUTO_START,
                message=f"Lobby {self.lobby_id} is no longer full and waiting, auto-start skipped"
            )
        elif result.ok:
            self.started = True
            self.log.info(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.AUTO_START,
                message=f"Lobby {self.lobby_id} auto-started"
            )
        else:
            self.log.warning(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.AUTO_START,
                message=f"Auto-start of lobby {self.lobby_id} failed: {result.message}"
            )

    def _cancel_timer(self):
        if self._timer and not self._timer.done() and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None

    async def stop(self):
        timer = self._timer
        self._cancel_timer()
        if timer is not None:
            try:
                await timer
            except asyncio.CancelledError:
                pass
