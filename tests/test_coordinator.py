import asyncio

import pytest

from conftest import make_player
from wordslop_lobby.core.errors import StoreUnavailable
from wordslop_lobby.models.lobby import GameSettings, Lobby, LobbyStatus, Visibility
from wordslop_lobby.multiplayer.state_machine import invariant_violations
from wordslop_lobby.utils.id_generator import LOBBY_ID_CHARS


async def stored_lobby(store, lobby_id="LOBBY1"):
    snapshot = await store.get("game_lobbies", lobby_id)
    return Lobby.from_document(snapshot.data, lobby_id) if snapshot.exists else None


@pytest.mark.asyncio
class TestCreateLobby:

    async def test_create_writes_host_only_lobby(self, coordinator, store, clock):
        result = await coordinator.create_lobby(GameSettings(max_players=4), make_player("host"), lobby_id="ABC123")

        assert result.ok
        assert result.data == "ABC123"
        lobby = await stored_lobby(store, "ABC123")
        assert lobby.host_user_id == "host"
        assert lobby.status == LobbyStatus.WAITING
        assert lobby.max_players == 4
        assert [p.user_id for p in lobby.players] == ["host"]
        assert lobby.players[0].is_host is True
        assert lobby.players[0].joined_at == clock.now
        assert lobby.created_at == clock.now
        assert invariant_violations(lobby) == []

    async def test_create_generates_id(self, coordinator, store):
        result = await coordinator.create_lobby(GameSettings(), make_player("host"))

        assert result.ok
        assert len(result.data) == 6
        assert set(result.data) <= set(LOBBY_ID_CHARS)
        assert (await store.get("game_lobbies", result.data)).exists

    async def test_create_existing_id_fails(self, coordinator, create_lobby):
        await create_lobby(lobby_id="TAKEN1")

        result = await coordinator.create_lobby(GameSettings(), make_player("other"), lobby_id="TAKEN1")

        assert not result.ok
        assert result.code == "already_exists"

    async def test_create_private_lobby_keeps_passcode(self, coordinator, store):
        settings = GameSettings(visibility=Visibility.PRIVATE, passcode="4321")
        await coordinator.create_lobby(settings, make_player("host"), lobby_id="PRIV01")

        snapshot = await store.get("game_lobbies", "PRIV01")
        assert snapshot.data["visibility"] == "PRIVATE"
        assert snapshot.data["passcode"] == "4321"

    async def test_create_fails_when_store_is_down(self, coordinator, store):
        store.available = False

        result = await coordinator.create_lobby(GameSettings(), make_player("host"), lobby_id="DOWN01")

        assert not result.ok
        assert result.code == "store_unavailable"
        with pytest.raises(StoreUnavailable):
            result.unwrap()


@pytest.mark.asyncio
class TestJoinLobby:

    async def test_join_appends_in_order(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice", "bob"])

        lobby = await stored_lobby(store)
        assert [p.user_id for p in lobby.players] == ["host", "alice", "bob"]
        assert [p.is_host for p in lobby.players] == [True, False, False]
        assert not any(p.is_spectator for p in lobby.players)

    async def test_join_missing_lobby(self, coordinator):
        result = await coordinator.join_lobby("NOPE00", make_player("alice"))

        assert result.code == "not_found"

    async def test_join_full_lobby(self, coordinator, create_lobby):
        await create_lobby(guests=["alice"], max_players=2)

        result = await coordinator.join_lobby("LOBBY1", make_player("bob"))

        assert result.code == "full"

    async def test_join_twice(self, coordinator, create_lobby):
        await create_lobby(guests=["alice"])

        result = await coordinator.join_lobby("LOBBY1", make_player("alice"))

        assert result.code == "already_joined"

    async def test_join_in_progress_becomes_spectator(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice"])
        await coordinator.update_lobby_status("LOBBY1", LobbyStatus.IN_PROGRESS)

        result = await coordinator.join_lobby("LOBBY1", make_player("late"))

        assert result.ok
        late = (await stored_lobby(store)).find_player("late")
        assert late.is_spectator is True
        assert late.is_host is False

    async def test_join_starting_becomes_spectator(self, coordinator, store, create_lobby):
        await create_lobby()
        await coordinator.update_lobby_status("LOBBY1", LobbyStatus.STARTING)

        await coordinator.join_lobby("LOBBY1", make_player("late"))

        assert (await stored_lobby(store)).find_player("late").is_spectator is True

    async def test_join_finished_lobby_is_rejected(self, coordinator, create_lobby):
        await create_lobby()
        await coordinator.update_lobby_status("LOBBY1", LobbyStatus.FINISHED)

        result = await coordinator.join_lobby("LOBBY1", make_player("late"))

        assert result.code == "not_joinable"

    async def test_concurrent_joins_never_exceed_capacity(self, coordinator, store, create_lobby):
        await create_lobby(max_players=3)
        joiners = [make_player(f"user{i}") for i in range(6)]

        results = await asyncio.gather(*(coordinator.join_lobby("LOBBY1", p) for p in joiners))

        lobby = await stored_lobby(store)
        user_ids = [p.user_id for p in lobby.players]
        assert len(user_ids) == 3
        assert len(set(user_ids)) == 3
        assert sum(r.ok for r in results) == 2
        assert {r.code for r in results if not r.ok} == {"full"}
        assert store.conflicts > 0

    async def test_concurrent_duplicate_joins_add_player_once(self, coordinator, store, create_lobby):
        await create_lobby()

        results = await asyncio.gather(*(coordinator.join_lobby("LOBBY1", make_player("alice")) for _ in range(4)))

        lobby = await stored_lobby(store)
        assert [p.user_id for p in lobby.players] == ["host", "alice"]
        assert sum(r.ok for r in results) == 1
        assert {r.code for r in results if not r.ok} == {"already_joined"}

    async def test_join_private_lobby_by_passcode(self, coordinator, store, create_lobby):
        await create_lobby(visibility=Visibility.PRIVATE, passcode="1234", lobby_id="PRIV01")

        result = await coordinator.join_private_lobby("1234", make_player("alice"))

        assert result.ok
        assert result.data.id == "PRIV01"
        assert (await stored_lobby(store, "PRIV01")).has_player("alice")

    async def test_join_private_lobby_wrong_passcode(self, coordinator, create_lobby):
        await create_lobby(visibility=Visibility.PRIVATE, passcode="1234", lobby_id="PRIV01")

        result = await coordinator.join_private_lobby("9999", make_player("alice"))

        assert result.code == "invalid_passcode"

    async def test_reused_passcode_prefers_newest_lobby_with_room(self, coordinator, create_lobby, clock):
        await create_lobby(visibility=Visibility.PRIVATE, passcode="1234", lobby_id="OLD001")
        clock.advance(1)
        await create_lobby(visibility=Visibility.PRIVATE, passcode="1234", lobby_id="MID001")
        clock.advance(1)
        await create_lobby(visibility=Visibility.PRIVATE, passcode="1234", lobby_id="NEW001",
                           max_players=2, guests=["bob"])

        result = await coordinator.join_private_lobby("1234", make_player("alice"))

        assert result.ok
        assert result.data.id == "MID001"

    async def test_reused_passcode_with_every_lobby_full(self, coordinator, create_lobby, clock):
        await create_lobby(visibility=Visibility.PRIVATE, passcode="1234", lobby_id="OLD001",
                           max_players=2, guests=["bob"])
        clock.advance(1)
        await create_lobby(visibility=Visibility.PRIVATE, passcode="1234", lobby_id="NEW001",
                           max_players=2, guests=["carol"])

        result = await coordinator.join_private_lobby("1234", make_player("alice"))

        assert result.code == "full"
        assert result.error.details == {"max_players": 2}


@pytest.mark.asyncio
class TestLeaveLobby:

    async def test_last_player_leaving_deletes_lobby(self, coordinator, store, create_lobby):
        await create_lobby()

        result = await coordinator.leave_lobby("LOBBY1", "host")

        assert result.ok
        assert result.data is None
        assert not (await store.get("game_lobbies", "LOBBY1")).exists

    async def test_host_leaving_hands_over_to_guest(self, coordinator, store, create_lobby):
        await create_lobby(host="H", guests=["G"])

        await coordinator.leave_lobby("LOBBY1", "H")

        lobby = await stored_lobby(store)
        assert lobby.host_user_id == "G"
        assert lobby.host_username == "G"
        assert [p.user_id for p in lobby.players] == ["G"]
        assert lobby.players[0].is_host is True

    async def test_host_leaving_promotes_first_in_join_order(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice", "bob", "carol"])

        await coordinator.leave_lobby("LOBBY1", "host")

        lobby = await stored_lobby(store)
        assert lobby.host_user_id == "alice"
        assert [p.user_id for p in lobby.players if p.is_host] == ["alice"]
        assert invariant_violations(lobby) == []

    async def test_guest_leaving_keeps_host(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice", "bob"])

        await coordinator.leave_lobby("LOBBY1", "alice")

        lobby = await stored_lobby(store)
        assert lobby.host_user_id == "host"
        assert [p.user_id for p in lobby.players] == ["host", "bob"]

    async def test_leave_unknown_player(self, coordinator, create_lobby):
        await create_lobby()

        result = await coordinator.leave_lobby("LOBBY1", "stranger")

        assert result.code == "not_found"

    async def test_leave_missing_lobby(self, coordinator):
        result = await coordinator.leave_lobby("NOPE00", "host")

        assert result.code == "not_found"


@pytest.mark.asyncio
class TestReadyAndStatus:

    async def test_update_player_ready(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice"])

        result = await coordinator.update_player_ready("LOBBY1", "alice", True)

        assert result.ok
        lobby = await stored_lobby(store)
        assert lobby.find_player("alice").is_ready is True
        assert lobby.find_player("host").is_ready is False

    async def test_update_ready_for_absent_player(self, coordinator, create_lobby):
        await create_lobby()

        result = await coordinator.update_player_ready("LOBBY1", "ghost", True)

        assert result.code == "not_found"

    async def test_status_update_is_idempotent(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice"])

        await coordinator.update_lobby_status("LOBBY1", LobbyStatus.IN_PROGRESS)
        once = (await store.get("game_lobbies", "LOBBY1")).data
        await coordinator.update_lobby_status("LOBBY1", LobbyStatus.IN_PROGRESS)
        twice = (await store.get("game_lobbies", "LOBBY1")).data

        assert once == twice
        assert twice["status"] == "IN_PROGRESS"

    async def test_auto_start_rechecks_the_stored_lobby(self, coordinator, store, create_lobby):
        await create_lobby(max_players=2, guests=["bob"])
        await coordinator.leave_lobby("LOBBY1", "bob")

        result = await coordinator.auto_start_lobby("LOBBY1")

        assert result.ok
        assert result.data is False
        assert (await stored_lobby(store)).status == LobbyStatus.WAITING

    async def test_auto_start_full_lobby_once(self, coordinator, store, create_lobby):
        await create_lobby(max_players=2, guests=["bob"])

        assert (await coordinator.auto_start_lobby("LOBBY1")).data is True
        revision = (await store.get("game_lobbies", "LOBBY1")).revision

        again = await coordinator.auto_start_lobby("LOBBY1")

        assert again.ok
        assert again.data is False
        assert (await store.get("game_lobbies", "LOBBY1")).revision == revision
        assert (await stored_lobby(store)).status == LobbyStatus.IN_PROGRESS

    async def test_status_update_missing_lobby(self, coordinator):
        result = await coordinator.update_lobby_status("NOPE00", LobbyStatus.IN_PROGRESS)

        assert result.code == "not_found"

    async def test_status_update_unchecked_by_default(self, coordinator, create_lobby):
        await create_lobby()
        await coordinator.update_lobby_status("LOBBY1", LobbyStatus.FINISHED)

        result = await coordinator.update_lobby_status("LOBBY1", LobbyStatus.WAITING)

        assert result.ok

    async def test_status_update_enforced(self, store, settings, clock, create_lobby):
        from wordslop_lobby.multiplayer.coordinator import LobbyCoordinator

        strict = LobbyCoordinator(store, settings.model_copy(update={"ENFORCE_STATUS_TRANSITIONS": True}), clock)
        await create_lobby()

        assert (await strict.update_lobby_status("LOBBY1", LobbyStatus.IN_PROGRESS)).ok
        assert (await strict.update_lobby_status("LOBBY1", LobbyStatus.IN_PROGRESS)).ok
        result = await strict.update_lobby_status("LOBBY1", LobbyStatus.WAITING)

        assert result.code == "invalid_transition"

    async def test_start_game_requires_host(self, coordinator, create_lobby):
        await create_lobby(guests=["alice"])

        result = await coordinator.start_game("LOBBY1", "alice")

        assert result.code == "permission_denied"

    async def test_start_game_requires_ready_players(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice", "bob"])
        await coordinator.update_player_ready("LOBBY1", "alice", True)

        result = await coordinator.start_game("LOBBY1", "host")

        assert result.code == "invalid_transition"
        assert result.error.details["not_ready"] == ["bob"]
        assert (await stored_lobby(store)).status == LobbyStatus.WAITING

    async def test_start_game_when_everyone_ready(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice"])
        await coordinator.update_player_ready("LOBBY1", "alice", True)

        result = await coordinator.start_game("LOBBY1", "host")

        assert result.ok
        assert (await stored_lobby(store)).status == LobbyStatus.IN_PROGRESS

    async def test_start_game_host_alone(self, coordinator, create_lobby):
        await create_lobby()

        assert (await coordinator.start_game("LOBBY1", "host")).ok

    async def test_promote_spectators(self, coordinator, store, create_lobby):
        await create_lobby(guests=["alice"])
        await coordinator.update_player_ready("LOBBY1", "alice", True)
        await coordinator.update_lobby_status("LOBBY1", LobbyStatus.IN_PROGRESS)
        await coordinator.join_lobby("LOBBY1", make_player("late"))

        result = await coordinator.promote_spectators_to_players("LOBBY1")

        assert result.ok
        lobby = await stored_lobby(store)
        assert not any(p.is_spectator for p in lobby.players)
        assert not any(p.is_ready for p in lobby.players)


@pytest.mark.asyncio
class TestHeartbeat:

    async def test_heartbeat_refreshes_last_seen_only(self, coordinator, store, clock, create_lobby):
        await create_lobby(guests=["alice"])
        joined_at = clock.now
        clock.advance(5)

        result = await coordinator.update_heartbeat("LOBBY1", "alice")

        assert result.ok and result.data is True
        alice = (await stored_lobby(store)).find_player("alice")
        assert alice.last_seen_at == clock.now
        assert alice.joined_at == joined_at

    async def test_heartbeat_on_deleted_lobby_is_noop(self, coordinator, store):
        result = await coordinator.update_heartbeat("GONE00", "alice")

        assert result.ok
        assert result.data is False
        assert not (await store.get("game_lobbies", "GONE00")).exists

    async def test_heartbeat_for_evicted_player_is_noop(self, coordinator, store, create_lobby):
        await create_lobby()
        before = (await store.get("game_lobbies", "LOBBY1")).revision

        result = await coordinator.update_heartbeat("LOBBY1", "ghost")

        assert result.data is False
        assert (await store.get("game_lobbies", "LOBBY1")).revision == before


@pytest.mark.asyncio
class TestReads:

    async def test_get_lobby(self, coordinator, create_lobby):
        await create_lobby(guests=["alice"])

        result = await coordinator.get_lobby("LOBBY1")

        assert result.ok
        assert result.data.has_player("alice")

    async def test_malformed_lobby_reads_as_not_found(self, coordinator, store):
        await store.set("game_lobbies", "BROKEN", {"gameId": "BROKEN", "maxPlayers": "lots"})

        result = await coordinator.get_lobby("BROKEN")

        assert result.code == "not_found"

    async def test_list_public_lobbies(self, coordinator, store, create_lobby, clock):
        await create_lobby(lobby_id="PUB001")
        clock.advance(1)
        await create_lobby(lobby_id="PUB002")
        await create_lobby(lobby_id="PRIV01", visibility=Visibility.PRIVATE, passcode="1111")
        await create_lobby(lobby_id="DONE01")
        await coordinator.update_lobby_status("DONE01", LobbyStatus.FINISHED)
        await coordinator.update_lobby_status("PUB002", LobbyStatus.IN_PROGRESS)

        result = await coordinator.list_public_lobbies()

        assert [lobby.id for lobby in result.data] == ["PUB001", "PUB002"]

    async def test_describe_lobby(self, coordinator, create_lobby, clock):
        await create_lobby(guests=["alice"])
        clock.advance(12)
        await coordinator.update_heartbeat("LOBBY1", "alice")

        report = (await coordinator.describe_lobby("LOBBY1")).data

        players = {p["user_id"]: p for p in report["players"]}
        assert players["host"]["seconds_inactive"] == 12
        assert players["host"]["active"] is False
        assert players["alice"]["active"] is True
        assert report["host_present"] is True
        assert report["violations"] == []

    async def test_delete_all_lobbies(self, coordinator, store, create_lobby):
        await create_lobby(lobby_id="ONE001")
        await create_lobby(lobby_id="TWO002")

        result = await coordinator.delete_all_lobbies()

        assert result.data == 2
        assert await store.query("game_lobbies") == []
