# wordslop_lobby/models/lobby.py
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from wordslop_lobby.core.config import settings
from wordslop_lobby.core.errors import NotFound


class LobbyStatus(str, Enum):
    WAITING = "WAITING"          # open, collecting players
    STARTING = "STARTING"        # about to start
    IN_PROGRESS = "IN_PROGRESS"  # round being played
    FINISHED = "FINISHED"        # results collected


class Visibility(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class GameMode(str, Enum):
    TESTING = "TESTING"  # CPU players allowed
    ONLINE = "ONLINE"


PASSCODE_PATTERN = r"^\d{4}$"


def validate_passcode(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    value = value.strip()
    if not re.fullmatch(PASSCODE_PATTERN, value):
        raise ValueError("Passcode must be exactly 4 digits")
    return value


def validate_positive(value: int) -> int:
    if value <= 0:
        raise ValueError("Must be a positive integer")
    return value


def check_visibility(visibility: Visibility, passcode: Optional[str]):
    if visibility == Visibility.PRIVATE and not passcode:
        raise ValueError("Private lobbies require a passcode")
    if visibility == Visibility.PUBLIC and passcode:
        raise ValueError("Public lobbies cannot have a passcode")


class _DocumentModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Player(_DocumentModel):
    user_id: str
    username: str
    is_ready: bool = False
    is_host: bool = False
    is_spectator: bool = False
    joined_at: int = 0      # epoch ms, never changes after joining
    last_seen_at: int = 0   # epoch ms, refreshed by heartbeat

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v):
        if not v or not v.strip():
            raise ValueError("userId must not be empty")
        return v

    @model_validator(mode="before")
    @classmethod
    def fill_last_seen(cls, data):
        # Documents written before lastSeenAt existed only carry joinedAt
        if isinstance(data, dict) and "lastSeenAt" not in data and "last_seen_at" not in data:
            joined = data.get("joinedAt", data.get("joined_at"))
            if joined is not None:
                data = {**data, "lastSeenAt": joined}
        return data

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class GameSettings(_DocumentModel):
    """Options chosen by the host when creating a lobby."""

    visibility: Visibility = Visibility.PUBLIC
    passcode: Optional[str] = None
    round_count: int = Field(default_factory=lambda: settings.DEFAULT_ROUND_COUNT)
    max_players: int = Field(default_factory=lambda: settings.DEFAULT_MAX_PLAYERS)
    game_mode: GameMode = GameMode.ONLINE

    @field_validator("passcode", mode="before")
    @classmethod
    def validate_passcode_field(cls, v): return validate_passcode(v)

    @field_validator("round_count", "max_players")
    @classmethod
    def validate_positive_field(cls, v): return validate_positive(v)

    @model_validator(mode="after")
    def validate_visibility(self):
        check_visibility(self.visibility, self.passcode)
        return self


class Lobby(_DocumentModel):
    """
    One game session. The stored document is the only source of truth;
    instances are immutable projections of it.
    """

    id: str = Field(alias="gameId")
    host_user_id: str
    host_username: str
    visibility: Visibility = Visibility.PUBLIC
    passcode: Optional[str] = None
    max_players: int = 6
    round_count: int = 3
    players: List[Player] = Field(default_factory=list)
    status: LobbyStatus = LobbyStatus.WAITING
    game_mode: GameMode = GameMode.ONLINE
    created_at: int = 0

    @field_validator("passcode", mode="before")
    @classmethod
    def validate_passcode_field(cls, v): return validate_passcode(v)

    @field_validator("max_players", "round_count")
    @classmethod
    def validate_positive_field(cls, v): return validate_positive(v)

    @field_validator("players")
    @classmethod
    def validate_unique_players(cls, v):
        ids = [p.user_id for p in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate userId in players")
        return v

    @model_validator(mode="after")
    def validate_visibility(self):
        check_visibility(self.visibility, self.passcode)
        return self

    @property
    def is_full(self) -> bool:
        return len(self.players) >= self.max_players

    @property
    def host(self) -> Optional[Player]:
        return next((p for p in self.players if p.user_id == self.host_user_id), None)

    def find_player(self, user_id: str) -> Optional[Player]:
        return next((p for p in self.players if p.user_id == user_id), None)

    def has_player(self, user_id: str) -> bool:
        return self.find_player(user_id) is not None

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(by_alias=True, mode="json")
        doc["passcode"] = self.passcode or ""
        return doc

    @classmethod
    def from_document(cls, data: Optional[Dict[str, Any]], lobby_id: Optional[str] = None) -> "Lobby":
        """Project a stored document; anything unreadable counts as a missing lobby."""
        if data is None:
            raise NotFound(f"Lobby {lobby_id} not found" if lobby_id else None)
        try:
            return cls.model_validate(data)
        except (ValidationError, TypeError) as e:
            raise NotFound(
                f"Lobby {lobby_id} could not be parsed",
                details={"reason": str(e)}
            ) from e
