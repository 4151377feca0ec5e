# wordslop_lobby/core/errors.py

from typing import Any, Dict, Optional


class LobbyError(Exception):
    """Base class for every failure surfaced by the lobby engine."""

    code = "lobby_error"
    default_message = "Lobby operation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFound(LobbyError):
    code = "not_found"
    default_message = "Lobby not found"


class Full(LobbyError):
    code = "full"
    default_message = "Lobby is full"


class AlreadyJoined(LobbyError):
    code = "already_joined"
    default_message = "Player already in lobby"


class AlreadyExists(LobbyError):
    code = "already_exists"
    default_message = "Document already exists"


class ProjectionMismatch(LobbyError):
    code = "projection_mismatch"
    default_message = "Stored lobby does not match the written lobby"


class Conflict(LobbyError):
    code = "conflict"
    default_message = "Transaction retry budget exhausted"


class StoreUnavailable(LobbyError):
    code = "store_unavailable"
    default_message = "Document store is unavailable"


class NotJoinable(LobbyError):
    code = "not_joinable"
    default_message = "Lobby is not accepting players"


class InvalidTransition(LobbyError):
    code = "invalid_transition"
    default_message = "Illegal lobby status transition"


class PermissionDenied(LobbyError):
    code = "permission_denied"
    default_message = "Only the host can do this"


class InvalidPasscode(LobbyError):
    code = "invalid_passcode"
    default_message = "No private lobby matches this passcode"
