import asyncio
import logging
import sqlite3

from .distill import DistillStrategy, HeuristicStrategy
from .models import Checkpoint
from .search import MemoryReader
from .storage import MemoryStore, StoreError

logger = logging.getLogger(__name__)

CHECKPOINT_HEADER = "[Pre-Compaction Checkpoint]"


class CheckpointManager:
    """Flushes the store and records a summary before the host compacts context."""

    def __init__(
        self,
        store: MemoryStore,
        reader: MemoryReader,
        strategy: DistillStrategy | None = None,
        timeout: float = 5.0,
    ):
        self.store = store
        self.reader = reader
        self.strategy = strategy or HeuristicStrategy()
        self.timeout = timeout
        self.heuristic = HeuristicStrategy()

    async def _summarize(self, turns) -> str:
        try:
            return await asyncio.wait_for(self.strategy.summarize(turns), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Checkpoint summary exceeded %.1fs", self.timeout)
        except Exception as e:
            logger.warning("Checkpoint summary failed: %s", e)
        try:
            return await self.heuristic.summarize(turns)
        except Exception as e:
            logger.warning("Heuristic checkpoint summary failed: %s", e)
            return ""

    async def checkpoint(self, session_id: str) -> Checkpoint | None:
        """Write a checkpoint covering turns since the previous one.

        Returns None when the session has recorded nothing new. An empty
        summary is still a valid checkpoint.
        """
        await self.store.flush()

        since = await self.reader.last_checkpoint_seq(session_id)
        turns = await self.reader.session_turns(session_id, after_seq=since)
        if not turns:
            logger.debug("No new turns for session %s since seq %d", session_id, since)
            return None

        body = await self._summarize(turns)
        summary = f"{CHECKPOINT_HEADER}\n{body}" if body else ""
        try:
            active_files = await self.reader.active_files(session_id)
        except (StoreError, sqlite3.Error) as e:
            logger.warning("Could not read active files for %s: %s", session_id, e)
            active_files = []
        return await self.store.add_checkpoint(session_id, summary, active_files)
