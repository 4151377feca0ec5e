from .auto_start import AutoStartCountdown, AutoStarter, CountdownEvent
from .coordinator import LobbyCoordinator
from .heartbeat import HeartbeatTask
from .presence import PresenceTracker
from .reaper import LobbyReaper, ReaperReport, ReaperTask
from .round_state import RoundStateRepository
from .sync import LobbyView, LobbyViewSynchronizer, ObservationScope, Route, SyncMode

__all__ = [
    "AutoStartCountdown",
    "AutoStarter",
    "CountdownEvent",
    "LobbyCoordinator",
    "HeartbeatTask",
    "PresenceTracker",
    "LobbyReaper",
    "ReaperReport",
    "ReaperTask",
    "RoundStateRepository",
    "LobbyView",
    "LobbyViewSynchronizer",
    "ObservationScope",
    "Route",
    "SyncMode",
]
