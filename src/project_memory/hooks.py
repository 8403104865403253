"""Hook boundary: one short-lived invocation per host event.

Every hook checks the kill switch first, then does its work under a per-kind
timeout. Nothing here ever raises to the caller; failures are logged and the
hook produces no output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .checkpoint import CheckpointManager
from .config import MemoryConfig, is_disabled, load_config, resolve_db_path
from .distill import DistillStrategy, Distiller, ExternalModelStrategy, HeuristicStrategy
from .indexer import SymbolIndexer
from .ingest import DEFAULT_SESSION, EventIngestor
from .inject import ContextInjector
from .llm import LLMClient
from .models import TurnKind
from .search import MemoryReader
from .storage import MemoryStore, StoreBusy

logger = logging.getLogger(__name__)

HOOK_TIMEOUTS: dict[str, float] = {
    "prompt": 2.0,
    "read": 2.0,
    "bash": 2.0,
    "edit": 5.0,
    "pre-compact": 10.0,
    "session-start": 10.0,
    "session-end": 30.0,
}
HOOK_KINDS = tuple(HOOK_TIMEOUTS)
INGEST_KINDS = {
    "prompt": TurnKind.PROMPT,
    "edit": TurnKind.EDIT,
    "read": TurnKind.READ,
    "bash": TurnKind.BASH,
}
# Share of the session-start budget spent catching the index up with the tree.
CATCH_UP_SHARE = 0.5


def build_strategy(
    config: MemoryConfig, timeout: float = 30.0, env: Mapping[str, str] | None = None
) -> DistillStrategy:
    if config.use_model(env):
        return ExternalModelStrategy(LLMClient(config.llm, timeout=timeout))
    return HeuristicStrategy()


class HookRunner:
    """Wires the store and components for one invocation in one project."""

    def __init__(
        self,
        project_dir: str | Path,
        config: MemoryConfig | None = None,
        env: Mapping[str, str] | None = None,
        strategy: DistillStrategy | None = None,
    ):
        self.project_dir = str(Path(project_dir).resolve())
        self.config = config or load_config(self.project_dir, env)
        self.db_path = resolve_db_path(self.project_dir, self.config, env)
        self.store = MemoryStore(self.db_path, self.config.busy_timeout_ms)
        self.reader = MemoryReader(self.db_path)
        self.indexer = SymbolIndexer(self.store, self.project_dir)
        self.env = env
        self._strategy = strategy

    @property
    def strategy(self) -> DistillStrategy:
        if self._strategy is None:
            self._strategy = build_strategy(self.config, self.config.distill.timeout_seconds, self.env)
        return self._strategy

    async def handle(self, kind: str, raw: dict[str, Any]) -> str | None:
        await self.store.initialize()
        session_id = raw.get("session_id") or DEFAULT_SESSION

        if kind in INGEST_KINDS:
            ingestor = EventIngestor(self.store, self.indexer, self.project_dir)
            await ingestor.ingest_safe(INGEST_KINDS[kind], raw, session_id)
            return None
        if kind == "pre-compact":
            manager = CheckpointManager(
                self.store,
                self.reader,
                self.strategy,
                timeout=HOOK_TIMEOUTS["pre-compact"] / 2,
            )
            await manager.checkpoint(session_id)
            return None
        if kind == "session-start":
            return await self.session_start(session_id, raw.get("source") or "startup")
        if kind == "session-end":
            distiller = Distiller(
                self.store,
                self.reader,
                self.strategy,
                timeout=min(self.config.distill.timeout_seconds, HOOK_TIMEOUTS["session-end"] * 0.8),
            )
            outcome = await distiller.distill_session(session_id)
            logger.info(
                "Session %s closed: %d knowledge entries added (%s)",
                session_id, outcome.added, outcome.strategy,
            )
            return None
        raise ValueError(f"unknown hook kind: {kind}")

    async def session_start(self, session_id: str, source: str) -> str | None:
        await self.store.ensure_session(session_id, self.project_dir)
        injector = ContextInjector(self.reader, self.config.ranking)
        if source == "compact":
            context = await injector.compact_context(session_id, self.config.compact_budget)
        else:
            deadline = time.monotonic() + HOOK_TIMEOUTS["session-start"] * CATCH_UP_SHARE
            stats = await self.indexer.index_project(self.project_dir, deadline=deadline)
            logger.info(
                "Index catch-up: %d re-indexed, %d unchanged, %d removed%s",
                stats.files_indexed, stats.files_unchanged, stats.files_removed,
                " (stopped at deadline)" if stats.deadline_reached else "",
            )
            context = await injector.startup_context(self.config.startup_budget, exclude_session=session_id)
        if not context:
            return None
        return json.dumps({
            "hookSpecificOutput": {
                "hookEventName": "SessionStart",
                "additionalContext": context,
            }
        })


async def run_hook(
    kind: str,
    raw: dict[str, Any] | None,
    project_dir: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    config: MemoryConfig | None = None,
    strategy: DistillStrategy | None = None,
) -> str | None:
    """Run one hook. Returns text for the host's stdout, or None. Never raises."""
    if is_disabled(env):
        logger.debug("project-memory disabled; skipping %s hook", kind)
        return None
    if kind not in HOOK_TIMEOUTS:
        logger.warning("Unknown hook kind %r", kind)
        return None
    raw = raw if isinstance(raw, dict) else {}
    try:
        runner = HookRunner(project_dir or raw.get("cwd") or os.getcwd(), config, env, strategy)
        return await asyncio.wait_for(runner.handle(kind, raw), timeout=HOOK_TIMEOUTS[kind])
    except asyncio.TimeoutError:
        logger.warning("%s hook exceeded %.0fs and was abandoned", kind, HOOK_TIMEOUTS[kind])
    except StoreBusy as e:
        logger.warning("%s hook skipped, store busy: %s", kind, e)
    except Exception as e:
        logger.warning("%s hook failed: %s", kind, e, exc_info=logger.isEnabledFor(logging.DEBUG))
    return None
