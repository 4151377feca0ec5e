# wordslop_lobby/models/round.py
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _RoundModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ReadyState(_RoundModel):
    """One player's entry in the per-lobby ready-state document."""
    is_ready: bool = False
    selected_words: List[str] = Field(default_factory=list)
    username: str = "Unknown"
    updated_at: int = 0


class EmojiAward(_RoundModel):
    sentence_index: int
    emoji: str
    awarded_by: str
    awarded_at: int = 0

    @property
    def key(self) -> str:
        # One award per sentence per user
        return f"{self.sentence_index}_{self.awarded_by}"
