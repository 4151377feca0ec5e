# wordslop_lobby/multiplayer/round_state.py

from collections import Counter
from typing import Callable, Dict, List, Sequence

from pydantic import ValidationError

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.core.response import as_result
from wordslop_lobby.db.store import DocumentStore, Transaction
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection
from wordslop_lobby.models.round import EmojiAward, ReadyState
from wordslop_lobby.utils.time_utils import now_ms

from .lobby_utils import try_parse_lobby

logger = get_logger(__name__)


class RoundStateRepository:
    """
    Per-round side documents, one of each per lobby and keyed by lobby id:
    ready states (with the words each player picked), votes, and emoji awards.

    They are written independently of the lobby document and only need to
    catch up with it eventually.
    """

    def __init__(self, store: DocumentStore, settings=None, clock: Callable[[], int] = now_ms):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock

    async def _merge_field(self, collection: str, lobby_id: str, key: str, value):
        """Set one top-level key of a side document, creating the document if needed."""

        async def merge(tx: Transaction):
            snapshot = await tx.get(collection, lobby_id)
            data = dict(snapshot.data or {})
            data[key] = value
            tx.set(collection, lobby_id, data)

        await self.store.run_transaction(merge)

    async def _username(self, lobby_id: str, user_id: str) -> str:
        lobby = try_parse_lobby(await self.store.get(self.settings.LOBBIES_COLLECTION, lobby_id))
        player = lobby.find_player(user_id) if lobby else None
        return player.username if player else "Unknown"

    # -------------------------
    # ready states

    @as_result
    async def update_player_game_ready(self, lobby_id: str, user_id: str, ready: bool,
                                       selected_words: Sequence[str] = ()) -> ReadyState:
        state = ReadyState(
            is_ready=ready,
            selected_words=list(selected_words),
            username=await self._username(lobby_id, user_id),
            updated_at=self.clock(),
        )
        await self._merge_field(self.settings.READY_STATES_COLLECTION, lobby_id, user_id, state.to_document())

        logger.info(
            section=LogSection.ROUND,
            subsection=LogSubsection.ROUND.READY_STATE,
            message=f"User {user_id} round-ready={ready} with {len(state.selected_words)} words in lobby {lobby_id}",
            user_id=user_id,
            lobby_id=lobby_id
        )
        return state

    @as_result
    async def get_game_ready_states(self, lobby_id: str) -> Dict[str, ReadyState]:
        snapshot = await self.store.get(self.settings.READY_STATES_COLLECTION, lobby_id)
        states = {}
        for user_id, value in (snapshot.data or {}).items():
            if not isinstance(value, dict):
                continue
            try:
                states[user_id] = ReadyState.model_validate(value)
            except ValidationError:
                logger.warning(
                    section=LogSection.ROUND,
                    subsection=LogSubsection.ROUND.ERROR,
                    message=f"Ignoring malformed ready state of {user_id} in lobby {lobby_id}",
                    user_id=user_id,
                    lobby_id=lobby_id
                )
        return states

    # -------------------------
    # votes

    @as_result
    async def submit_vote(self, lobby_id: str, voter_user_id: str, voted_for_user_id: str) -> None:
        await self._merge_field(self.settings.VOTING_RESULTS_COLLECTION, lobby_id, voter_user_id, voted_for_user_id)
        logger.info(
            section=LogSection.ROUND,
            subsection=LogSubsection.ROUND.VOTE,
            message=f"User {voter_user_id} voted for {voted_for_user_id} in lobby {lobby_id}",
            user_id=voter_user_id,
            lobby_id=lobby_id
        )

    async def _votes(self, lobby_id: str) -> Dict[str, str]:
        snapshot = await self.store.get(self.settings.VOTING_RESULTS_COLLECTION, lobby_id)
        return {voter: target for voter, target in (snapshot.data or {}).items() if isinstance(target, str)}

    @as_result
    async def get_voting_results(self, lobby_id: str) -> Dict[str, str]:
        """voter userId -> voted-for userId"""
        return await self._votes(lobby_id)

    @as_result
    async def get_vote_counts(self, lobby_id: str) -> Dict[str, int]:
        return dict(Counter((await self._votes(lobby_id)).values()))

    # -------------------------
    # emojis

    @as_result
    async def award_emoji(self, lobby_id: str, sentence_index: int, emoji: str, awarded_by_user_id: str) -> EmojiAward:
        award = EmojiAward(
            sentence_index=sentence_index,
            emoji=emoji,
            awarded_by=awarded_by_user_id,
            awarded_at=self.clock(),
        )
        # A second award for the same sentence by the same user replaces the first
        await self._merge_field(self.settings.SENTENCE_EMOJIS_COLLECTION, lobby_id, award.key, award.to_document())

        logger.info(
            section=LogSection.ROUND,
            subsection=LogSubsection.ROUND.EMOJI,
            message=f"User {awarded_by_user_id} gave {emoji} to sentence {sentence_index} in lobby {lobby_id}",
            user_id=awarded_by_user_id,
            lobby_id=lobby_id
        )
        return award

    @as_result
    async def get_sentence_emojis(self, lobby_id: str) -> Dict[int, List[str]]:
        """sentence index -> emojis awarded to it, oldest first"""
        snapshot = await self.store.get(self.settings.SENTENCE_EMOJIS_COLLECTION, lobby_id)
        awards = []
        for value in (snapshot.data or {}).values():
            if not isinstance(value, dict):
                continue
            try:
                awards.append(EmojiAward.model_validate(value))
            except ValidationError:
                continue

        grouped: Dict[int, List[str]] = {}
        for award in sorted(awards, key=lambda a: a.awarded_at):
            grouped.setdefault(award.sentence_index, []).append(award.emoji)
        return grouped

    # -------------------------
    # end of round

    @as_result
    async def clear_round_data(self, lobby_id: str) -> None:
        collections = [
            self.settings.READY_STATES_COLLECTION,
            self.settings.VOTING_RESULTS_COLLECTION,
            self.settings.SENTENCE_EMOJIS_COLLECTION,
        ]

        def clear(batch):
            for collection in collections:
                batch.delete(collection, lobby_id)

        await self.store.run_batch(clear)
        logger.info(
            section=LogSection.ROUND,
            subsection=LogSubsection.ROUND.CLEAR,
            message=f"Round data cleared for lobby {lobby_id}",
            lobby_id=lobby_id
        )
