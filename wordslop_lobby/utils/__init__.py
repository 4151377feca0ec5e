from .id_generator import generate_lobby_id_sync, generate_unique_lobby_id
from .time_utils import ms_to_datetime, now_ms, seconds_since

__all__ = [
    "generate_lobby_id_sync",
    "generate_unique_lobby_id",
    "ms_to_datetime",
    "now_ms",
    "seconds_since",
]
