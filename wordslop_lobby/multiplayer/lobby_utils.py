from typing import List, Optional, Sequence, Tuple

from wordslop_lobby.core.errors import NotFound
from wordslop_lobby.db.store import Snapshot, Transaction
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection
from wordslop_lobby.models.lobby import Lobby, Player

logger = get_logger(__name__)


async def get_lobby_in_transaction(tx: Transaction, collection: str, lobby_id: str) -> Tuple[Lobby, Snapshot]:
    """Read and parse a lobby inside a transaction; missing or unreadable -> NotFound."""
    snapshot = await tx.get(collection, lobby_id)
    return parse_lobby(snapshot), snapshot


def parse_lobby(snapshot: Snapshot) -> Lobby:
    if not snapshot.exists:
        raise NotFound(f"Lobby {snapshot.id} not found")
    try:
        return Lobby.from_document(snapshot.data, snapshot.id)
    except NotFound as e:
        logger.warning(
            section=LogSection.LOBBY,
            subsection=LogSubsection.LOBBY.VALIDATION,
            message=f"Stored lobby {snapshot.id} is malformed: {e.details.get('reason', e.message)}",
            lobby_id=snapshot.id
        )
        raise


def try_parse_lobby(snapshot: Snapshot) -> Optional[Lobby]:
    """Like parse_lobby, but a missing or malformed document yields None."""
    try:
        return parse_lobby(snapshot)
    except NotFound:
        return None


def with_players(lobby: Lobby, players: Sequence[Player]) -> Lobby:
    """
    Replace the player list, keeping exactly one host.

    If the current host is no longer present, leadership goes to the first
    remaining player (join order). `isHost` is recomputed for everyone.
    """
    players = list(players)
    if not players:
        return lobby.model_copy(update={"players": []})

    host = next((p for p in players if p.user_id == lobby.host_user_id), players[0])
    players = [p.model_copy(update={"is_host": p.user_id == host.user_id}) for p in players]
    return lobby.model_copy(update={
        "players": players,
        "host_user_id": host.user_id,
        "host_username": host.username,
    })


def replace_player(players: Sequence[Player], user_id: str, **changes) -> List[Player]:
    return [p.model_copy(update=changes) if p.user_id == user_id else p for p in players]
