import asyncio
import string

import pytest
from pydantic import ValidationError

from conftest import make_player
from wordslop_lobby.core.config import Settings
from wordslop_lobby.db.database import create_store
from wordslop_lobby.db.indexes import create_database_indexes
from wordslop_lobby.db.memory import InMemoryDocumentStore
from wordslop_lobby.db.mongo import MongoDocumentStore
from wordslop_lobby.main import LobbyService, create_lobby_service
from wordslop_lobby.models.lobby import GameSettings
from wordslop_lobby.multiplayer.sync import Route
from wordslop_lobby.utils import generate_lobby_id_sync, ms_to_datetime, seconds_since


class TestSettings:

    def test_threshold_must_cover_three_heartbeats(self):
        with pytest.raises(ValidationError):
            Settings(HEARTBEAT_INTERVAL_SEC=5.0, INACTIVE_THRESHOLD_SEC=10.0)

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            Settings(STORE_BACKEND="sqlite")

    def test_millisecond_views(self):
        settings = Settings(INACTIVE_THRESHOLD_SEC=12.5, AUTO_START_COUNTDOWN_SEC=3)

        assert settings.inactive_threshold_ms == 12_500
        assert settings.auto_start_countdown_ms == 3_000
        assert settings.presence_threshold_ms == 60_000


@pytest.mark.asyncio
async def test_store_selection(settings):
    assert isinstance(create_store(settings), InMemoryDocumentStore)
    assert isinstance(create_store(settings.model_copy(update={"STORE_BACKEND": "mongo"})), MongoDocumentStore)


def test_small_helpers():
    lobby_id = generate_lobby_id_sync(8)
    assert len(lobby_id) == 8 and set(lobby_id) <= set(string.ascii_uppercase + string.digits)
    assert ms_to_datetime(0).year == 1970
    assert seconds_since(1_000, 3_500) == 2.5


@pytest.mark.asyncio
class TestLobbyService:

    async def test_reaper_runs_in_background(self, store, settings, clock):
        async with LobbyService(store, settings, clock) as service:
            assert service.started
            assert service.reaper_task.running
            game_settings = GameSettings(max_players=4)
            await service.coordinator.create_lobby(game_settings, make_player("amy"), lobby_id="LOBBY1")
            clock.advance(11)

            for _ in range(200):
                if not (await store.get("game_lobbies", "LOBBY1")).exists:
                    break
                await asyncio.sleep(0.01)

            assert not (await store.get("game_lobbies", "LOBBY1")).exists

        assert not service.started
        assert not service.reaper_task.running

    async def test_full_session(self, store, settings, clock):
        service = LobbyService(store, settings, clock, run_reaper=False)
        await service.startup()

        lobby_id = (await service.coordinator.create_lobby(GameSettings(max_players=2), make_player("amy"))).data
        synchronizer = service.synchronizer_for("bob")

        await service.coordinator.join_lobby(lobby_id, make_player("bob"))
        await service.coordinator.update_player_ready(lobby_id, "bob", True)
        async with synchronizer.observe(lobby_id, heartbeat=True):
            await synchronizer.wait_for(lambda v: v.route == Route.LOBBY, timeout=2)
            await service.coordinator.start_game(lobby_id, "amy")
            await synchronizer.wait_for(lambda v: v.route == Route.GAME, timeout=2)

        await service.rounds.submit_vote(lobby_id, "bob", "amy")
        assert (await service.rounds.get_vote_counts(lobby_id)).data == {"amy": 1}
        assert service.auto_starter_for(lobby_id).lobby_id == lobby_id

        await service.shutdown()
        assert service.reaper_task is None

    async def test_factory_uses_configured_backend(self, settings):
        service = create_lobby_service(settings, configure_logging=False)

        assert isinstance(service.store, InMemoryDocumentStore)
        await service.shutdown()


class RecordingCollection:
    def __init__(self):
        self.indexes = []

    async def create_indexes(self, models):
        self.indexes.extend(model.document["name"] for model in models)


@pytest.mark.asyncio
async def test_database_indexes(settings):
    db = {settings.LOBBIES_COLLECTION: RecordingCollection(), settings.PRESENCE_COLLECTION: RecordingCollection()}

    await create_database_indexes(db, settings)

    assert db[settings.LOBBIES_COLLECTION].indexes == ["visibility_status", "passcode", "host_user_id"]
    assert db[settings.PRESENCE_COLLECTION].indexes == ["last_seen"]
