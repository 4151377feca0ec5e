# wordslop_lobby/multiplayer/reaper.py

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional, Tuple

from wordslop_lobby.core.config import settings as default_settings
from wordslop_lobby.core.errors import Conflict, NotFound
from wordslop_lobby.core.response import as_result
from wordslop_lobby.db.store import DocumentStore
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection
from wordslop_lobby.models.lobby import Lobby, Player
from wordslop_lobby.utils.time_utils import now_ms

from .lobby_utils import with_players

logger = get_logger(__name__)

KEEP = "keep"
UPDATE = "update"
DELETE = "delete"


@dataclass
class ReapDecision:
    action: str
    lobby: Optional[Lobby] = None
    removed: List[Player] = field(default_factory=list)
    host_reassigned: bool = False


@dataclass
class ReaperReport:
    scanned: int = 0
    deleted: int = 0
    updated: int = 0
    players_removed: int = 0
    hosts_reassigned: int = 0
    skipped: int = 0
    attempts: int = 0

    def to_dict(self):
        return asdict(self)


def partition_players(lobby: Lobby, now: int, threshold_ms: int) -> Tuple[List[Player], List[Player]]:
    active, inactive = [], []
    for player in lobby.players:
        (active if now - player.last_seen_at <= threshold_ms else inactive).append(player)
    return active, inactive


def reap_lobby(lobby: Lobby, now: int, threshold_ms: int) -> ReapDecision:
    """Decide what one pass does to one lobby. Pure; the caller writes the result."""
    active, inactive = partition_players(lobby, now, threshold_ms)
    if not active:
        return ReapDecision(DELETE, removed=inactive)
    if not inactive:
        return ReapDecision(KEEP, lobby=lobby)

    updated = with_players(lobby, active)
    return ReapDecision(
        UPDATE,
        lobby=updated,
        removed=inactive,
        host_reassigned=updated.host_user_id != lobby.host_user_id,
    )


class LobbyReaper:
    """
    Evicts players whose heartbeat has expired, hands the host role on and
    deletes lobbies nobody is left in.

    One pass commits all of its writes as a single batch. Each write is
    conditioned on the revision that was scanned, so if any lobby changed
    mid-pass the batch is rejected and the pass is redone from a fresh scan.
    """

    def __init__(self, store: DocumentStore, settings=None, clock: Callable[[], int] = now_ms):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock
        self.collection = self.settings.LOBBIES_COLLECTION

    @as_result
    async def cleanup_orphaned_lobbies(self) -> ReaperReport:
        attempts = self.settings.TRANSACTION_MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                report = await self._reap_once()
                report.attempts = attempt
                return report
            except Conflict:
                logger.warning(
                    section=LogSection.REAPER,
                    subsection=LogSubsection.REAPER.PASS_START,
                    message=f"Lobbies changed during reaper pass, rescanning ({attempt}/{attempts})"
                )
        raise Conflict("Reaper pass kept conflicting with concurrent writers", details={"attempts": attempts})

    async def _reap_once(self) -> ReaperReport:
        threshold_ms = self.settings.inactive_threshold_ms
        snapshots = await self.store.query(self.collection)
        now = self.clock()
        report = ReaperReport(scanned=len(snapshots))

        logger.debug(
            section=LogSection.REAPER,
            subsection=LogSubsection.REAPER.PASS_START,
            message=f"Reaper pass over {len(snapshots)} lobbies, threshold {threshold_ms} ms"
        )

        writes = []
        for snapshot in snapshots:
            try:
                lobby = Lobby.from_document(snapshot.data, snapshot.id)
            except NotFound as e:
                report.skipped += 1
                logger.warning(
                    section=LogSection.REAPER,
                    subsection=LogSubsection.REAPER.MALFORMED,
                    message=f"Skipping malformed lobby {snapshot.id}: {e.details.get('reason', e.message)}",
                    lobby_id=snapshot.id
                )
                continue

            decision = reap_lobby(lobby, now, threshold_ms)
            if decision.action == KEEP:
                continue

            report.players_removed += len(decision.removed)
            for player in decision.removed:
                logger.info(
                    section=LogSection.REAPER,
                    subsection=LogSubsection.REAPER.PLAYER_EVICTED,
                    message=f"Evicting {player.user_id} from lobby {lobby.id}: "
                            f"silent for {(now - player.last_seen_at) / 1000:.1f}s",
                    user_id=player.user_id,
                    lobby_id=lobby.id
                )

            if decision.action == DELETE:
                report.deleted += 1
                logger.info(
                    section=LogSection.REAPER,
                    subsection=LogSubsection.REAPER.LOBBY_DELETED,
                    message=f"Deleting lobby {lobby.id}: no active players",
                    lobby_id=lobby.id
                )
            else:
                report.updated += 1
                if decision.host_reassigned:
                    report.hosts_reassigned += 1
                    logger.info(
                        section=LogSection.REAPER,
                        subsection=LogSubsection.REAPER.HOST_REASSIGNED,
                        message=f"Lobby {lobby.id} host {lobby.host_user_id} -> {decision.lobby.host_user_id}",
                        lobby_id=lobby.id
                    )
            writes.append((snapshot, decision))

        def apply(batch):
            for snapshot, decision in writes:
                if decision.action == DELETE:
                    batch.delete(self.collection, snapshot.id, expected_revision=snapshot.revision)
                else:
                    batch.set(self.collection, snapshot.id, decision.lobby.to_document(),
                              expected_revision=snapshot.revision)

        if writes:
            await self.store.run_batch(apply)

        logger.info(
            section=LogSection.REAPER,
            subsection=LogSubsection.REAPER.SUMMARY,
            message=f"Reaper pass done: scanned {report.scanned}, deleted {report.deleted}, "
                    f"updated {report.updated}, evicted {report.players_removed}, skipped {report.skipped}",
            extra_data=report.to_dict()
        )
        return report


class ReaperTask:
    """Runs the reaper on a fixed interval, independent of any caller session."""

    def __init__(self, reaper: LobbyReaper, interval: Optional[float] = None):
        self.reaper = reaper
        self.interval = interval if interval is not None else reaper.settings.REAPER_INTERVAL_SEC
        self.running = False
        self.task = None
        self.passes = 0

    async def start(self):
        if self.running:
            return

        self.running = True
        self.task = asyncio.create_task(self._reap_loop())
        logger.info(
            section=LogSection.SYSTEM,
            subsection=LogSubsection.SYSTEM.BACKGROUND_TASK,
            message=f"Reaper task started, interval {self.interval}s"
        )

    async def stop(self):
        if not self.running:
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        logger.info(
            section=LogSection.SYSTEM,
            subsection=LogSubsection.SYSTEM.BACKGROUND_TASK,
            message="Reaper task stopped"
        )

    async def _reap_loop(self):
        while self.running:
            result = await self.reaper.cleanup_orphaned_lobbies()
            self.passes += 1
            if not result.ok:
                logger.error(
                    section=LogSection.REAPER,
                    subsection=LogSubsection.REAPER.ERROR,
                    message=f"Reaper pass failed: {result.code}: {result.message}"
                )
            await asyncio.sleep(self.interval)
