# wordslop_lobby/multiplayer/sync.py

import asyncio
import inspect
from contextlib import aclosing
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.core.errors import StoreUnavailable
from wordslop_lobby.db.store import DocumentStore, Filter
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection
from wordslop_lobby.models.lobby import Lobby, LobbyStatus, Visibility

from .coordinator import LISTED_STATUSES, fetch_public_lobbies
from .heartbeat import HeartbeatTask
from .lobby_utils import try_parse_lobby
from .state_machine import is_listed

logger = get_logger(__name__)


class Route(str, Enum):
    MAIN_MENU = "main_menu"
    LOBBY = "lobby"
    GAME = "game"


class SyncMode(str, Enum):
    SUBSCRIBE = "subscribe"
    POLL = "poll"


@dataclass(frozen=True)
class LobbyView:
    """What the caller should show. Produced only by the synchronizer."""

    lobby: Optional[Lobby] = None
    public_lobbies: Tuple[Lobby, ...] = ()
    route: Route = Route.MAIN_MENU

    @property
    def in_lobby(self) -> bool:
        return self.lobby is not None


def reconcile(previous: LobbyView, lobby: Optional[Lobby], user_id: str) -> LobbyView:
    """
    Fold one observation of the current lobby into the view.

    A missing document, or one that no longer lists the caller, clears the
    lobby and sends the caller back to the main menu. A lobby that is in
    progress moves a caller on the lobby screen into the game. The route is
    only carried over while the observed lobby stays the same one.
    """
    if lobby is None or not lobby.has_player(user_id):
        return replace(previous, lobby=None, route=Route.MAIN_MENU)

    same_lobby = previous.lobby is not None and previous.lobby.id == lobby.id
    route = previous.route if same_lobby and previous.route != Route.MAIN_MENU else Route.LOBBY
    if route == Route.LOBBY and lobby.status == LobbyStatus.IN_PROGRESS:
        route = Route.GAME
    return replace(previous, lobby=lobby, route=route)


def reconcile_public(previous: LobbyView, lobbies: Sequence[Lobby]) -> LobbyView:
    listed = sorted((lobby for lobby in lobbies if is_listed(lobby)), key=lambda lobby: (lobby.created_at, lobby.id))
    return replace(previous, public_lobbies=tuple(listed))


class LobbyViewSynchronizer:
    """
    Holds the caller's LobbyView and replaces it as observations arrive.

    Subscription snapshots and poll results go through the same reconcile
    step, and listeners are only called when the view actually changes, so
    both read paths look the same to the caller.
    """

    def __init__(self, store: DocumentStore, user_id: str, settings=None, coordinator=None):
        self.store = store
        self.user_id = user_id
        self.settings = settings or default_settings
        self.coordinator = coordinator
        self.collection = self.settings.LOBBIES_COLLECTION
        self._view = LobbyView()
        self._listeners: List[Callable] = []
        self._changed = asyncio.Condition()

    @property
    def view(self) -> LobbyView:
        return self._view

    def add_listener(self, listener: Callable):
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def apply_lobby(self, lobby: Optional[Lobby]) -> bool:
        return await self._publish(reconcile(self._view, lobby, self.user_id))

    async def apply_public(self, lobbies: Sequence[Lobby]) -> bool:
        return await self._publish(reconcile_public(self._view, lobbies))

    async def _publish(self, new_view: LobbyView) -> bool:
        old_view = self._view
        if new_view == old_view:
            return False

        self._view = new_view
        if new_view.route != old_view.route:
            lobby = new_view.lobby or old_view.lobby
            logger.info(
                section=LogSection.SYNC,
                subsection=LogSubsection.SYNC.ROUTE,
                message=f"User {self.user_id}: {old_view.route.value} -> {new_view.route.value}",
                user_id=self.user_id,
                lobby_id=lobby.id if lobby else None
            )

        for listener in list(self._listeners):
            try:
                result = listener(new_view)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    section=LogSection.SYNC,
                    subsection=LogSubsection.SYNC.ERROR,
                    message=f"View listener {getattr(listener, '__qualname__', listener)} failed: {e!r}",
                    user_id=self.user_id
                )

        async with self._changed:
            self._changed.notify_all()
        return True

    async def wait_for(self, predicate: Callable[[LobbyView], bool], timeout: Optional[float] = None) -> LobbyView:
        async def _wait():
            async with self._changed:
                await self._changed.wait_for(lambda: predicate(self._view))
                return self._view

        return await asyncio.wait_for(_wait(), timeout)

    def observe(self, lobby_id: Optional[str] = None, mode: SyncMode = SyncMode.SUBSCRIBE,
                watch_public: bool = False, heartbeat: bool = False) -> "ObservationScope":
        heartbeat_task = None
        if heartbeat and lobby_id is not None:
            if self.coordinator is None:
                raise ValueError("A coordinator is required for heartbeats")
            heartbeat_task = HeartbeatTask(self.coordinator, lobby_id, self.user_id)
        return ObservationScope(self, lobby_id, SyncMode(mode), watch_public, heartbeat_task)


class ObservationScope:
    """
    Background observation bound to what the caller is looking at.

    Nothing runs until start(); stop() (or leaving the `async with` block)
    cancels every loop it owns. Observation of the current lobby, and its
    heartbeat, also end on their own once the caller has been routed back to
    the main menu.
    """

    def __init__(self, synchronizer: LobbyViewSynchronizer, lobby_id: Optional[str], mode: SyncMode,
                 watch_public: bool = False, heartbeat: Optional[HeartbeatTask] = None):
        self.synchronizer = synchronizer
        self.lobby_id = lobby_id
        self.mode = mode
        self.watch_public = watch_public
        self.heartbeat = heartbeat
        self.poll_interval = synchronizer.settings.POLL_INTERVAL_SEC
        self._tasks: List[asyncio.Task] = []
        self.running = False

    @property
    def store(self) -> DocumentStore:
        return self.synchronizer.store

    @property
    def collection(self) -> str:
        return self.synchronizer.collection

    async def start(self):
        if self.running:
            return
        self.running = True

        if self.lobby_id is not None:
            self._tasks.append(asyncio.create_task(self._watch_lobby()))
            if self.heartbeat is not None:
                await self.heartbeat.start()
        if self.watch_public:
            self._tasks.append(asyncio.create_task(self._watch_public()))

        logger.info(
            section=LogSection.SYNC,
            subsection=LogSubsection.SYNC.SCOPE,
            message=f"Observation started for {self.synchronizer.user_id}: lobby {self.lobby_id}, "
                    f"mode {self.mode.value}, public list {self.watch_public}",
            user_id=self.synchronizer.user_id,
            lobby_id=self.lobby_id
        )

    async def stop(self):
        if not self.running:
            return
        self.running = False

        if self.heartbeat is not None:
            await self.heartbeat.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        logger.info(
            section=LogSection.SYNC,
            subsection=LogSubsection.SYNC.SCOPE,
            message=f"Observation stopped for {self.synchronizer.user_id}",
            user_id=self.synchronizer.user_id,
            lobby_id=self.lobby_id
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # ------------------------------------------------------------------ current lobby

    async def _on_lobby(self, lobby: Optional[Lobby]) -> bool:
        """Apply one observation; False once the caller is out of the lobby."""
        await self.synchronizer.apply_lobby(lobby)
        if self.synchronizer.view.route == Route.MAIN_MENU:
            if self.heartbeat is not None:
                await self.heartbeat.stop()
            return False
        return True

    async def _watch_lobby(self):
        if self.mode == SyncMode.SUBSCRIBE:
            try:
                async with aclosing(self.store.subscribe_document(self.collection, self.lobby_id)) as snapshots:
                    async for snapshot in snapshots:
                        if not await self._on_lobby(try_parse_lobby(snapshot)):
                            return
                return
            except StoreUnavailable as e:
                logger.warning(
                    section=LogSection.SYNC,
                    subsection=LogSubsection.SYNC.SUBSCRIBE,
                    message=f"Subscription to lobby {self.lobby_id} lost ({e.message}), falling back to polling",
                    lobby_id=self.lobby_id
                )
        await self._poll_lobby()

    async def _poll_lobby(self):
        while self.running:
            try:
                snapshot = await self.store.get(self.collection, self.lobby_id)
            except StoreUnavailable as e:
                # Keep the last known view until the store answers again
                logger.warning(
                    section=LogSection.SYNC,
                    subsection=LogSubsection.SYNC.POLL,
                    message=f"Polling lobby {self.lobby_id} failed: {e.message}",
                    lobby_id=self.lobby_id
                )
            else:
                if not await self._on_lobby(try_parse_lobby(snapshot)):
                    return
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------ public list

    async def _watch_public(self):
        if self.mode == SyncMode.SUBSCRIBE:
            filters = [
                Filter("visibility", "==", Visibility.PUBLIC.value),
                Filter("status", "in", LISTED_STATUSES),
            ]
            try:
                async with aclosing(self.store.subscribe_query(self.collection, filters)) as results:
                    async for snapshots in results:
                        lobbies = [lobby for lobby in map(try_parse_lobby, snapshots) if lobby is not None]
                        await self.synchronizer.apply_public(lobbies)
                return
            except StoreUnavailable as e:
                logger.warning(
                    section=LogSection.SYNC,
                    subsection=LogSubsection.SYNC.SUBSCRIBE,
                    message=f"Public lobby subscription lost ({e.message}), falling back to polling"
                )
        await self._poll_public()

    async def _poll_public(self):
        while self.running:
            try:
                lobbies = await fetch_public_lobbies(self.store, self.collection)
            except StoreUnavailable as e:
                logger.warning(
                    section=LogSection.SYNC,
                    subsection=LogSubsection.SYNC.POLL,
                    message=f"Polling public lobbies failed: {e.message}"
                )
            else:
                await self.synchronizer.apply_public(lobbies)
            await asyncio.sleep(self.poll_interval)
