# wordslop_lobby/multiplayer/state_machine.py
from typing import Dict, FrozenSet, List, Optional

from wordslop_lobby.core.errors import InvalidTransition, NotJoinable
from wordslop_lobby.models.lobby import Lobby, LobbyStatus

# WAITING -> STARTING -> IN_PROGRESS -> FINISHED, plus the shortcut taken by
# the host start button and the way back when a countdown is cancelled
TRANSITIONS: Dict[LobbyStatus, FrozenSet[LobbyStatus]] = {
    LobbyStatus.WAITING: frozenset({LobbyStatus.STARTING, LobbyStatus.IN_PROGRESS}),
    LobbyStatus.STARTING: frozenset({LobbyStatus.WAITING, LobbyStatus.IN_PROGRESS}),
    LobbyStatus.IN_PROGRESS: frozenset({LobbyStatus.FINISHED}),
    LobbyStatus.FINISHED: frozenset(),
}


def can_transition(current: LobbyStatus, target: LobbyStatus) -> bool:
    # Re-applying the current status is always a no-op
    return current == target or target in TRANSITIONS[current]


def ensure_transition(current: LobbyStatus, target: LobbyStatus):
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move lobby from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value}
        )


def joins_as_spectator(status: LobbyStatus) -> bool:
    """
    Whether a newcomer joining now must be a spectator.
    Raises NotJoinable once the game has finished.
    """
    if status == LobbyStatus.FINISHED:
        raise NotJoinable(details={"status": status.value})
    return status != LobbyStatus.WAITING


def is_listed(lobby: Lobby) -> bool:
    """Lobbies shown in the public browser."""
    return lobby.status in (LobbyStatus.WAITING, LobbyStatus.IN_PROGRESS)


def invariant_violations(lobby: Lobby) -> List[str]:
    problems = []
    if len(lobby.players) > lobby.max_players:
        problems.append(f"{len(lobby.players)} players exceed capacity {lobby.max_players}")
    if not lobby.players:
        problems.append("lobby has no players")
        return problems

    if lobby.host is None:
        problems.append(f"hostUserId {lobby.host_user_id} is not in the lobby")
    hosts = [p.user_id for p in lobby.players if p.is_host]
    if hosts != [lobby.host_user_id]:
        problems.append(f"host flags {hosts} do not match hostUserId {lobby.host_user_id}")
    return problems


def first_violation(lobby: Lobby) -> Optional[str]:
    problems = invariant_violations(lobby)
    return problems[0] if problems else None
