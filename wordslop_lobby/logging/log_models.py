import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import pytz


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogSection(Enum):
    """Which part of the engine a record comes from"""
    LOBBY = "lobby"
    ROUND = "round"
    REAPER = "reaper"
    SYNC = "sync"
    PRESENCE = "presence"
    DATABASE = "database"
    SYSTEM = "system"


class LogSubsection:

    class LOBBY:
        CREATE = "create"
        JOIN = "join"
        LEAVE = "leave"
        READY = "ready"
        STATUS = "status"
        HEARTBEAT = "heartbeat"
        AUTO_START = "auto_start"
        SPECTATORS = "spectators"
        MAINTENANCE = "maintenance"
        VALIDATION = "validation"

    class ROUND:
        READY_STATE = "ready_state"
        VOTE = "vote"
        EMOJI = "emoji"
        CLEAR = "clear"
        ERROR = "error"

    class REAPER:
        PASS_START = "pass_start"
        PLAYER_EVICTED = "player_evicted"
        HOST_REASSIGNED = "host_reassigned"
        LOBBY_DELETED = "lobby_deleted"
        MALFORMED = "malformed"
        SUMMARY = "summary"
        ERROR = "error"

    class SYNC:
        SUBSCRIBE = "subscribe"
        POLL = "poll"
        ROUTE = "route"
        SCOPE = "scope"
        ERROR = "error"

    class PRESENCE:
        UPDATE = "update"
        REMOVE = "remove"
        CLEANUP = "cleanup"

    class DATABASE:
        TRANSACTION = "transaction"
        SUBSCRIPTION = "subscription"
        INDEXES_CREATE = "indexes_create"
        INDEXES_SUCCESS = "indexes_success"
        ERROR = "error"

    class SYSTEM:
        INITIALIZATION = "initialization"
        STARTUP = "startup"
        SHUTDOWN = "shutdown"
        BACKGROUND_TASK = "background_task"
        ERROR = "error"


# Set by setup_application_logging from LOG_TIMEZONE
log_timezone = pytz.utc


def _timestamp() -> str:
    return datetime.now(log_timezone).isoformat(timespec="milliseconds")


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class StructuredLogEntry:
    """
    One log line. Lobby and user ids are top-level keys so that a lobby's
    whole history can be grepped out of the log file.
    """

    level: LogLevel
    section: LogSection
    subsection: str
    message: str
    extra_data: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    lobby_id: Optional[str] = None
    timestamp: str = field(default_factory=_timestamp)
    log_id: str = field(default_factory=_short_id)

    def to_dict(self) -> Dict[str, Any]:
        entry = {
            "timestamp": self.timestamp,
            "log_id": self.log_id,
            "level": self.level.value,
            "section": self.section.value if isinstance(self.section, LogSection) else str(self.section),
            "subsection": self.subsection,
            "message": self.message,
        }
        for key in ("user_id", "lobby_id"):
            if getattr(self, key):
                entry[key] = getattr(self, key)
        if self.extra_data:
            entry["extra_data"] = self.extra_data
        return entry

    def to_json_string(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)
