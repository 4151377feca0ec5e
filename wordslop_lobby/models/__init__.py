from .lobby import GameMode, GameSettings, Lobby, LobbyStatus, Player, Visibility
from .round import EmojiAward, ReadyState

__all__ = [
    "GameMode",
    "GameSettings",
    "Lobby",
    "LobbyStatus",
    "Player",
    "Visibility",
    "EmojiAward",
    "ReadyState",
]
