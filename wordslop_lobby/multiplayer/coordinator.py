# wordslop_lobby/multiplayer/coordinator.py

from typing import Any, Callable, Dict, List, Optional

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.core.errors import (
    AlreadyJoined,
    Full,
    InvalidPasscode,
    InvalidTransition,
    LobbyError,
    NotFound,
    PermissionDenied,
    ProjectionMismatch,
)
from wordslop_lobby.core.response import as_result
from wordslop_lobby.db.store import DocumentStore, Filter, Transaction
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection
from wordslop_lobby.models.lobby import GameSettings, Lobby, LobbyStatus, Player, Visibility
from wordslop_lobby.utils.id_generator import generate_unique_lobby_id
from wordslop_lobby.utils.time_utils import now_ms, seconds_since

from .auto_start import countdown_applies
from .lobby_utils import get_lobby_in_transaction, replace_player, try_parse_lobby, with_players
from .state_machine import ensure_transition, invariant_violations, is_listed, joins_as_spectator

logger = get_logger(__name__)

LISTED_STATUSES = [LobbyStatus.WAITING.value, LobbyStatus.IN_PROGRESS.value]


class LobbyCoordinator:
    """
    Every mutation of a lobby document goes through here.

    Each operation that depends on the current player list runs as a store
    transaction (read lobby, validate, write lobby), so concurrent callers
    never overwrite each other's changes. Public methods return an
    OperationResult instead of raising.
    """

    def __init__(self, store: DocumentStore, settings=None, clock: Callable[[], int] = now_ms):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock
        self.collection = self.settings.LOBBIES_COLLECTION

    async def _transact(self, fn: Callable[[Transaction, Lobby], Any], lobby_id: str):
        async def run(tx: Transaction):
            lobby, _ = await get_lobby_in_transaction(tx, self.collection, lobby_id)
            return fn(tx, lobby)

        return await self.store.run_transaction(run)

    def _reject(self, subsection: str, lobby_id: str, user_id: Optional[str], exc: LobbyError):
        logger.warning(
            section=LogSection.LOBBY,
            subsection=subsection,
            message=f"Rejected: lobby {lobby_id}, user {user_id}: {exc.message}",
            user_id=user_id,
            lobby_id=lobby_id
        )

    # ------------------------------------------------------------------ create

    @as_result
    async def create_lobby(self, game_settings: GameSettings, host_player: Player,
                           lobby_id: Optional[str] = None) -> str:
        if lobby_id is None:
            lobby_id = await generate_unique_lobby_id(
                self.store, self.collection, self.settings.LOBBY_ID_LENGTH
            )

        now = self.clock()
        host = host_player.model_copy(update={
            "is_host": True,
            "is_ready": False,
            "is_spectator": False,
            "joined_at": now,
            "last_seen_at": now,
        })
        lobby = Lobby(
            id=lobby_id,
            host_user_id=host.user_id,
            host_username=host.username,
            visibility=game_settings.visibility,
            passcode=game_settings.passcode,
            max_players=game_settings.max_players,
            round_count=game_settings.round_count,
            players=[host],
            status=LobbyStatus.WAITING,
            game_mode=game_settings.game_mode,
            created_at=now,
        )

        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.CREATE,
            message=f"Creating lobby {lobby_id}: host {host.user_id}, {lobby.visibility.value}, "
                    f"max {lobby.max_players} players, {lobby.round_count} rounds",
            user_id=host.user_id,
            lobby_id=lobby_id
        )

        try:
            await self.store.create(self.collection, lobby_id, lobby.to_document())
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.CREATE, lobby_id, host.user_id, e)
            raise

        # Verify the stored projection; other players may already be joining,
        # so only the fields fixed at creation are compared
        stored = try_parse_lobby(await self.store.get(self.collection, lobby_id))
        if stored is None or not _same_identity(stored, lobby):
            logger.error(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.CREATE,
                message=f"Lobby {lobby_id} did not read back as written",
                lobby_id=lobby_id
            )
            raise ProjectionMismatch(details={"lobby_id": lobby_id})

        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.CREATE,
            message=f"Lobby {lobby_id} created",
            user_id=host.user_id,
            lobby_id=lobby_id
        )
        return lobby_id

    # ------------------------------------------------------------------ join

    async def _join(self, lobby_id: str, player: Player) -> Lobby:
        def join(tx, lobby: Lobby):
            spectator = joins_as_spectator(lobby.status)
            if lobby.is_full:
                raise Full(details={"max_players": lobby.max_players})
            if lobby.has_player(player.user_id):
                raise AlreadyJoined(details={"user_id": player.user_id})

            now = self.clock()
            joined = player.model_copy(update={
                "is_host": False,
                "is_ready": False,
                "is_spectator": spectator,
                "joined_at": now,
                "last_seen_at": now,
            })
            updated = lobby.model_copy(update={"players": [*lobby.players, joined]})
            tx.set(self.collection, lobby_id, updated.to_document())
            return updated

        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.JOIN,
            message=f"Join attempt: user {player.user_id} ({player.username}) -> lobby {lobby_id}",
            user_id=player.user_id,
            lobby_id=lobby_id
        )
        try:
            updated = await self._transact(join, lobby_id)
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.JOIN, lobby_id, player.user_id, e)
            raise

        joined = updated.find_player(player.user_id)
        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.JOIN,
            message=f"User {player.user_id} joined lobby {lobby_id} "
                    f"{'as spectator' if joined.is_spectator else 'as player'}: "
                    f"{len(updated.players)}/{updated.max_players}",
            user_id=player.user_id,
            lobby_id=lobby_id
        )
        return updated

    @as_result
    async def join_lobby(self, lobby_id: str, player: Player) -> Lobby:
        return await self._join(lobby_id, player)

    @as_result
    async def join_private_lobby(self, passcode: str, player: Player) -> Lobby:
        snapshots = await self.store.query(self.collection, [
            Filter("visibility", "==", Visibility.PRIVATE.value),
            Filter("passcode", "==", passcode),
        ])
        candidates = [
            lobby for lobby in map(try_parse_lobby, snapshots)
            if lobby is not None and lobby.status != LobbyStatus.FINISHED
        ]
        if not candidates:
            logger.warning(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.JOIN,
                message=f"No private lobby for passcode given by user {player.user_id}",
                user_id=player.user_id
            )
            raise InvalidPasscode()

        # A reused passcode resolves to the newest lobby with room, else the newest one
        open_lobbies = [lobby for lobby in candidates if not lobby.is_full]
        target = max(open_lobbies or candidates, key=lambda lobby: lobby.created_at)
        return await self._join(target.id, player)

    # ------------------------------------------------------------------ leave

    @as_result
    async def leave_lobby(self, lobby_id: str, user_id: str) -> Optional[Lobby]:
        """Remove a player. Returns the remaining lobby, or None once it was deleted."""

        def leave(tx, lobby: Lobby):
            if not lobby.has_player(user_id):
                raise NotFound(f"Player {user_id} is not in lobby {lobby_id}")

            remaining = [p for p in lobby.players if p.user_id != user_id]
            if not remaining:
                tx.delete(self.collection, lobby_id)
                return None

            updated = with_players(lobby, remaining)
            tx.set(self.collection, lobby_id, updated.to_document())
            return updated

        try:
            updated = await self._transact(leave, lobby_id)
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.LEAVE, lobby_id, user_id, e)
            raise

        if updated is None:
            message = f"User {user_id} left lobby {lobby_id}; lobby empty and deleted"
        else:
            message = (f"User {user_id} left lobby {lobby_id}. Players left: {len(updated.players)}, "
                       f"host: {updated.host_user_id}")
        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.LEAVE,
            message=message,
            user_id=user_id,
            lobby_id=lobby_id
        )
        return updated

    # ------------------------------------------------------------------ ready / status

    @as_result
    async def update_player_ready(self, lobby_id: str, user_id: str, ready: bool) -> Lobby:
        def set_ready(tx, lobby: Lobby):
            if not lobby.has_player(user_id):
                raise NotFound(f"Player {user_id} is not in lobby {lobby_id}")
            updated = lobby.model_copy(update={
                "players": replace_player(lobby.players, user_id, is_ready=ready)
            })
            tx.set(self.collection, lobby_id, updated.to_document())
            return updated

        try:
            updated = await self._transact(set_ready, lobby_id)
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.READY, lobby_id, user_id, e)
            raise

        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.READY,
            message=f"User {user_id} is {'ready' if ready else 'not ready'} in lobby {lobby_id}",
            user_id=user_id,
            lobby_id=lobby_id
        )
        return updated

    @as_result
    async def update_lobby_status(self, lobby_id: str, status: LobbyStatus) -> LobbyStatus:
        """
        Set the lobby status.

        By default this is a blind single-field write and callers must only ask
        for legal transitions. With ENFORCE_STATUS_TRANSITIONS the edge is
        checked against the current document first.
        """
        status = LobbyStatus(status)

        try:
            if self.settings.ENFORCE_STATUS_TRANSITIONS:
                def transition(tx, lobby: Lobby):
                    ensure_transition(lobby.status, status)
                    if lobby.status != status:
                        tx.update(self.collection, lobby_id, {"status": status.value})

                await self._transact(transition, lobby_id)
            else:
                await self.store.update(self.collection, lobby_id, {"status": status.value})
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.STATUS, lobby_id, None, e)
            raise

        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.STATUS,
            message=f"Lobby {lobby_id} status set to {status.value}",
            lobby_id=lobby_id
        )
        return status

    @as_result
    async def auto_start_lobby(self, lobby_id: str) -> bool:
        """
        WAITING -> IN_PROGRESS, re-checked against the stored lobby.

        Returns False without writing when the lobby is no longer full or has
        already left WAITING.
        """

        def auto_start(tx, lobby: Lobby):
            if not countdown_applies(lobby):
                return False
            tx.update(self.collection, lobby_id, {"status": LobbyStatus.IN_PROGRESS.value})
            return True

        try:
            started = await self._transact(auto_start, lobby_id)
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.AUTO_START, lobby_id, None, e)
            raise

        if started:
            logger.info(
                section=LogSection.LOBBY,
                subsection=LogSubsection.LOBBY.AUTO_START,
                message=f"Lobby {lobby_id} status set to {LobbyStatus.IN_PROGRESS.value} by auto-start",
                lobby_id=lobby_id
            )
        return started

    @as_result
    async def start_game(self, lobby_id: str, user_id: str) -> Lobby:
        """Host-only start: everyone else must be ready, unless the host is alone."""

        def start(tx, lobby: Lobby):
            if lobby.host_user_id != user_id:
                raise PermissionDenied(details={"host_user_id": lobby.host_user_id})
            if lobby.status not in (LobbyStatus.WAITING, LobbyStatus.STARTING):
                raise InvalidTransition(
                    f"Cannot start a lobby in {lobby.status.value}",
                    details={"from": lobby.status.value, "to": LobbyStatus.IN_PROGRESS.value}
                )
            not_ready = [
                p.user_id for p in lobby.players
                if not p.is_host and not p.is_spectator and not p.is_ready
            ]
            if not_ready:
                raise InvalidTransition("Not all players are ready", details={"not_ready": not_ready})

            updated = lobby.model_copy(update={"status": LobbyStatus.IN_PROGRESS})
            tx.set(self.collection, lobby_id, updated.to_document())
            return updated

        try:
            updated = await self._transact(start, lobby_id)
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.STATUS, lobby_id, user_id, e)
            raise

        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.STATUS,
            message=f"Host {user_id} started lobby {lobby_id} with {len(updated.players)} players",
            user_id=user_id,
            lobby_id=lobby_id
        )
        return updated

    @as_result
    async def promote_spectators_to_players(self, lobby_id: str) -> Lobby:
        """Start of a new round: spectators become players and nobody is ready."""

        def promote(tx, lobby: Lobby):
            players = [p.model_copy(update={"is_spectator": False, "is_ready": False}) for p in lobby.players]
            updated = lobby.model_copy(update={"players": players})
            tx.set(self.collection, lobby_id, updated.to_document())
            return updated, sum(1 for p in lobby.players if p.is_spectator)

        try:
            updated, promoted = await self._transact(promote, lobby_id)
        except LobbyError as e:
            self._reject(LogSubsection.LOBBY.SPECTATORS, lobby_id, None, e)
            raise

        logger.info(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.SPECTATORS,
            message=f"Promoted {promoted} spectators in lobby {lobby_id}",
            lobby_id=lobby_id
        )
        return updated

    # ------------------------------------------------------------------ heartbeat

    @as_result
    async def update_heartbeat(self, lobby_id: str, user_id: str) -> bool:
        """
        Refresh one player's lastSeenAt. A lobby or player that is already gone
        is not an error; the result data is False in that case.
        """

        async def beat(tx: Transaction):
            lobby = try_parse_lobby(await tx.get(self.collection, lobby_id))
            if lobby is None or not lobby.has_player(user_id):
                return False
            updated = lobby.model_copy(update={
                "players": replace_player(lobby.players, user_id, last_seen_at=self.clock())
            })
            tx.set(self.collection, lobby_id, updated.to_document())
            return True

        refreshed = await self.store.run_transaction(beat)
        logger.debug(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.HEARTBEAT,
            message=f"Heartbeat from {user_id} in lobby {lobby_id}: "
                    f"{'refreshed' if refreshed else 'lobby or player gone'}",
            user_id=user_id,
            lobby_id=lobby_id
        )
        return refreshed

    # ------------------------------------------------------------------ reads

    @as_result
    async def get_lobby(self, lobby_id: str) -> Lobby:
        snapshot = await self.store.get(self.collection, lobby_id)
        lobby = try_parse_lobby(snapshot)
        if lobby is None:
            raise NotFound(f"Lobby {lobby_id} not found")
        return lobby

    @as_result
    async def list_public_lobbies(self) -> List[Lobby]:
        return await fetch_public_lobbies(self.store, self.collection)

    @as_result
    async def describe_lobby(self, lobby_id: str) -> Dict[str, Any]:
        """Diagnostic dump of one lobby, including how long each player has been silent."""
        snapshot = await self.store.get(self.collection, lobby_id)
        if not snapshot.exists:
            raise NotFound(f"Lobby {lobby_id} not found")

        now = self.clock()
        report: Dict[str, Any] = {"id": lobby_id, "now": now, "raw": snapshot.data}
        lobby = try_parse_lobby(snapshot)
        if lobby is None:
            report["error"] = "malformed"
            return report

        report.update({
            "status": lobby.status.value,
            "host_user_id": lobby.host_user_id,
            "host_present": lobby.host is not None,
            "players": [
                {
                    "user_id": p.user_id,
                    "username": p.username,
                    "seconds_inactive": seconds_since(p.last_seen_at, now),
                    "active": now - p.last_seen_at <= self.settings.inactive_threshold_ms,
                }
                for p in lobby.players
            ],
            "violations": invariant_violations(lobby),
        })
        return report

    # ------------------------------------------------------------------ maintenance

    @as_result
    async def delete_all_lobbies(self) -> int:
        snapshots = await self.store.query(self.collection)

        def delete_all(batch):
            for snapshot in snapshots:
                batch.delete(self.collection, snapshot.id)

        await self.store.run_batch(delete_all)
        logger.warning(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.MAINTENANCE,
            message=f"Deleted all {len(snapshots)} lobbies"
        )
        return len(snapshots)


async def fetch_public_lobbies(store: DocumentStore, collection: str) -> List[Lobby]:
    """Public lobbies in WAITING or IN_PROGRESS, oldest first. Malformed documents are skipped."""
    snapshots = await store.query(collection, [
        Filter("visibility", "==", Visibility.PUBLIC.value),
        Filter("status", "in", LISTED_STATUSES),
    ])
    lobbies = [lobby for lobby in map(try_parse_lobby, snapshots) if lobby is not None and is_listed(lobby)]
    return sorted(lobbies, key=lambda lobby: (lobby.created_at, lobby.id))


def _same_identity(stored: Lobby, written: Lobby) -> bool:
    return (
        stored.id == written.id
        and stored.host_user_id == written.host_user_id
        and stored.visibility == written.visibility
        and stored.passcode == written.passcode
        and stored.max_players == written.max_players
        and stored.round_count == written.round_count
        and stored.game_mode == written.game_mode
        and stored.created_at == written.created_at
    )
