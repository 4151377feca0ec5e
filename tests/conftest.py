import pytest

from wordslop_lobby.core.config import Settings
from wordslop_lobby.db.memory import InMemoryDocumentStore
from wordslop_lobby.models.lobby import GameSettings, Player, Visibility
from wordslop_lobby.multiplayer.coordinator import LobbyCoordinator
from wordslop_lobby.multiplayer.presence import PresenceTracker
from wordslop_lobby.multiplayer.reaper import LobbyReaper
from wordslop_lobby.multiplayer.round_state import RoundStateRepository

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float):
        self.now += int(seconds * 1000)


def make_player(user_id: str, username: str = None) -> Player:
    return Player(user_id=user_id, username=username or user_id.capitalize())


@pytest.fixture()
def settings():
    return Settings(
        STORE_BACKEND="memory",
        HEARTBEAT_INTERVAL_SEC=0.01,
        INACTIVE_THRESHOLD_SEC=10.0,
        REAPER_INTERVAL_SEC=0.01,
        POLL_INTERVAL_SEC=0.01,
        AUTO_START_COUNTDOWN_SEC=10.0,
        TRANSACTION_MAX_ATTEMPTS=10,
    )


@pytest.fixture()
def store(settings):
    return InMemoryDocumentStore(max_attempts=settings.TRANSACTION_MAX_ATTEMPTS)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def coordinator(store, settings, clock):
    return LobbyCoordinator(store, settings, clock)


@pytest.fixture()
def reaper(store, settings, clock):
    return LobbyReaper(store, settings, clock)


@pytest.fixture()
def rounds(store, settings, clock):
    return RoundStateRepository(store, settings, clock)


@pytest.fixture()
def presence(store, settings, clock):
    return PresenceTracker(store, settings, clock)


@pytest.fixture()
def create_lobby(coordinator):
    """Create a lobby hosted by `host` and join `guests` in order; returns the lobby id."""

    async def _create(host="host", guests=(), max_players=6, visibility=Visibility.PUBLIC,
                      passcode=None, lobby_id="LOBBY1"):
        game_settings = GameSettings(visibility=visibility, passcode=passcode, max_players=max_players)
        result = await coordinator.create_lobby(game_settings, make_player(host), lobby_id=lobby_id)
        assert result.ok, result.message
        for guest in guests:
            joined = await coordinator.join_lobby(lobby_id, make_player(guest))
            assert joined.ok, joined.message
        return lobby_id

    return _create
