from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from peewee import DatabaseError, OperationalError, fn

from .models import Checkpoint, DistilledKnowledge, NewTurn, Symbol, Turn, TurnKind
from .orm_models import (
    ALL_MODELS,
    DEFAULT_BUSY_TIMEOUT_MS,
    FTS_SCHEMA,
    CheckpointModel,
    IndexedFileModel,
    KnowledgeModel,
    SchemaVersionModel,
    SessionModel,
    SymbolModel,
    TurnModel,
    database,
    init_memory_database,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class StoreError(Exception):
    """Base class for store failures."""


class StoreBusy(StoreError):
    """The write lock could not be acquired within the bounded wait."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_lock_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class MemoryStore:
    """Write path of the project memory database.

    Every mutation runs inside ``BEGIN IMMEDIATE`` so concurrent hook processes
    are serialized by SQLite's write lock. Readers use ``search.MemoryReader``
    and see the last committed snapshot.
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        self.db_path = str(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        init_memory_database(self.db_path, busy_timeout_ms)

    async def _run(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        init_memory_database(self.db_path, self.busy_timeout_ms)
        try:
            yield
        except (OperationalError, sqlite3.OperationalError) as exc:
            if _is_lock_error(exc):
                raise StoreBusy(str(exc)) from exc
            raise StoreError(str(exc)) from exc
        except (DatabaseError, sqlite3.DatabaseError) as exc:
            raise StoreError(str(exc)) from exc

    @contextmanager
    def _write(self) -> Iterator[None]:
        with self._guard(), database.connection_context(), database.atomic("IMMEDIATE"):
            yield

    # -- schema ---------------------------------------------------------

    def _initialize_sync(self) -> None:
        with self._guard(), database.connection_context():
            database.create_tables(ALL_MODELS, safe=True)
            database.connection().executescript(FTS_SCHEMA)
            SchemaVersionModel.insert(
                version=SCHEMA_VERSION,
                applied_at=_now(),
                description="sessions, turns, symbols, knowledge, checkpoints, fts5 projections",
            ).on_conflict_ignore().execute()

    async def initialize(self) -> None:
        await self._run(self._initialize_sync)

    # -- sessions -------------------------------------------------------

    def _ensure_session_sync(self, session_id: str, project_dir: str = "") -> None:
        with self._write():
            _insert_session(session_id, project_dir)

    async def ensure_session(self, session_id: str, project_dir: str = "") -> None:
        await self._run(self._ensure_session_sync, session_id, project_dir)

    def _end_session_sync(self, session_id: str, summary: str | None) -> bool:
        with self._write():
            _insert_session(session_id, "")
            updated = (
                SessionModel.update(ended_at=_now(), summary=summary)
                .where((SessionModel.id == session_id) & SessionModel.ended_at.is_null())
                .execute()
            )
        return updated == 1

    async def end_session(self, session_id: str, summary: str | None) -> bool:
        """Close a session. Only the first call sets the summary."""
        return await self._run(self._end_session_sync, session_id, summary)

    # -- turns ----------------------------------------------------------

    def _append_turn_sync(self, new: NewTurn, project_dir: str = "") -> Turn | None:
        with self._write():
            _insert_session(new.session_id, project_dir)
            if _is_duplicate(new):
                logger.debug("Suppressed redelivered %s event for session %s", new.kind.value, new.session_id)
                return None
            row = TurnModel.create(
                session=new.session_id,
                seq=_next_seq(new.session_id),
                kind=new.kind.value,
                timestamp=(new.timestamp or datetime.now(timezone.utc)).isoformat(),
                file_path=new.file_path,
                payload=new.payload,
                body=new.body,
                event_key=new.event_key,
                host_event_id=new.host_event_id,
            )
            return _turn_model_to_record(row)

    async def append_turn(self, new: NewTurn, project_dir: str = "") -> Turn | None:
        """Append a turn; returns None when the event was already recorded."""
        return await self._run(self._append_turn_sync, new, project_dir)

    # -- symbols --------------------------------------------------------

    def _replace_symbols_sync(
        self, file_path: str, content_hash: str, language: str, symbols: list[Symbol]
    ) -> int:
        rows = [
            {
                "file_path": file_path,
                "name": s.name,
                "kind": s.kind,
                "start_line": s.start_line,
                "end_line": s.end_line,
                "signature": s.signature,
                "doc_comment": s.doc_comment,
                "parent_name": s.parent_name,
                "content_hash": content_hash,
            }
            for s in symbols
        ]
        with self._write():
            SymbolModel.delete().where(SymbolModel.file_path == file_path).execute()
            for start in range(0, len(rows), 200):
                SymbolModel.insert_many(rows[start:start + 200]).execute()
            IndexedFileModel.insert(
                file_path=file_path,
                content_hash=content_hash,
                language=language,
                symbol_count=len(rows),
                indexed_at=_now(),
            ).on_conflict_replace().execute()
        return len(rows)

    async def replace_symbols(
        self, file_path: str, content_hash: str, language: str, symbols: list[Symbol]
    ) -> int:
        """Atomically supersede a file's symbol set with one keyed to ``content_hash``."""
        return await self._run(self._replace_symbols_sync, file_path, content_hash, language, symbols)

    def _remove_file_symbols_sync(self, file_path: str) -> int:
        with self._write():
            deleted = SymbolModel.delete().where(SymbolModel.file_path == file_path).execute()
            IndexedFileModel.delete().where(IndexedFileModel.file_path == file_path).execute()
        return deleted

    async def remove_file_symbols(self, file_path: str) -> int:
        return await self._run(self._remove_file_symbols_sync, file_path)

    def _indexed_hash_sync(self, file_path: str) -> str | None:
        with self._guard(), database.connection_context():
            row = IndexedFileModel.get_or_none(IndexedFileModel.file_path == file_path)
            return row.content_hash if row else None

    async def indexed_hash(self, file_path: str) -> str | None:
        return await self._run(self._indexed_hash_sync, file_path)

    def _indexed_paths_sync(self) -> list[str]:
        with self._guard(), database.connection_context():
            query = IndexedFileModel.select(IndexedFileModel.file_path).order_by(IndexedFileModel.file_path)
            return [row.file_path for row in query]

    async def indexed_paths(self) -> list[str]:
        return await self._run(self._indexed_paths_sync)

    # -- knowledge ------------------------------------------------------

    def _add_knowledge_sync(self, entries: Iterable[DistilledKnowledge], session_id: str | None) -> int:
        inserted = 0
        with self._write():
            if session_id:
                _insert_session(session_id, "")
            for entry in entries:
                text = entry.text.strip()
                if not text:
                    continue
                exists = (
                    KnowledgeModel.select()
                    .where((KnowledgeModel.category == entry.category.value) & (KnowledgeModel.text == text))
                    .exists()
                )
                if exists:
                    continue
                KnowledgeModel.create(
                    category=entry.category.value,
                    subject=entry.subject,
                    text=text,
                    session=session_id,
                    confidence=max(0.0, min(1.0, entry.confidence)),
                    source=entry.source.value,
                    created_at=_now(),
                )
                inserted += 1
        return inserted

    async def add_knowledge(self, entries: Iterable[DistilledKnowledge], session_id: str | None = None) -> int:
        """Append knowledge entries, skipping ones already known. Returns the number added."""
        return await self._run(self._add_knowledge_sync, list(entries), session_id)

    # -- checkpoints ----------------------------------------------------

    def _add_checkpoint_sync(self, session_id: str, summary: str, active_files: list[str]) -> Checkpoint:
        now = datetime.now(timezone.utc)
        with self._write():
            _insert_session(session_id, "")
            row = CheckpointModel.create(
                session=session_id,
                created_at=now.isoformat(),
                summary=summary,
                active_files=json.dumps(active_files),
            )
            TurnModel.create(
                session=session_id,
                seq=_next_seq(session_id),
                kind=TurnKind.CHECKPOINT.value,
                timestamp=now.isoformat(),
                file_path=None,
                payload=json.dumps({"checkpoint_id": row.id, "active_files": active_files}),
                body=summary or "[checkpoint]",
                event_key=f"checkpoint:{row.id}",
            )
        return Checkpoint(
            id=row.id,
            session_id=session_id,
            created_at=now,
            summary=summary,
            active_files=active_files,
        )

    async def add_checkpoint(self, session_id: str, summary: str, active_files: list[str]) -> Checkpoint:
        return await self._run(self._add_checkpoint_sync, session_id, summary, active_files)

    # -- durability -----------------------------------------------------

    def _flush_sync(self) -> None:
        # Taking and releasing the write lock waits out any in-flight writer;
        # the WAL checkpoint then folds committed pages into the main file.
        with self._write():
            pass
        with self._guard(), database.connection_context():
            database.execute_sql("PRAGMA wal_checkpoint(PASSIVE)")

    async def flush(self) -> None:
        await self._run(self._flush_sync)


def _insert_session(session_id: str, project_dir: str) -> None:
    SessionModel.insert(
        id=session_id,
        project_dir=project_dir,
        started_at=_now(),
    ).on_conflict_ignore().execute()


def _next_seq(session_id: str) -> int:
    current = TurnModel.select(fn.MAX(TurnModel.seq)).where(TurnModel.session == session_id).scalar()
    return (current or 0) + 1


def _is_duplicate(new: NewTurn) -> bool:
    if new.host_event_id:
        return (
            TurnModel.select()
            .where((TurnModel.session == new.session_id) & (TurnModel.host_event_id == new.host_event_id))
            .exists()
        )
    last = (
        TurnModel.select(TurnModel.event_key)
        .where(TurnModel.session == new.session_id)
        .order_by(TurnModel.seq.desc())
        .first()
    )
    return last is not None and bool(new.event_key) and last.event_key == new.event_key


def _turn_model_to_record(row: TurnModel) -> Turn:
    return Turn(
        id=row.id,
        session_id=row.session_id,
        seq=row.seq,
        kind=TurnKind(row.kind),
        timestamp=datetime.fromisoformat(row.timestamp),
        file_path=row.file_path,
        payload=row.payload,
        body=row.body,
    )
