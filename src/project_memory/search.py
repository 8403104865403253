import json
import os
from collections import Counter
from datetime import datetime
from pathlib import Path

import aiosqlite

from .models import (
    Checkpoint,
    FileTouch,
    KnowledgeCategory,
    KnowledgeEntry,
    KnowledgeSource,
    ProjectStructure,
    SearchHit,
    SessionSummary,
    StatusReport,
    Symbol,
    Turn,
    TurnKind,
)
from .storage import StoreError


def sanitize_fts_query(query: str) -> str:
    """Quote every whitespace-separated token so FTS5 treats it as a literal.

    Tokens are joined with spaces, which FTS5 reads as an implicit AND.
    """
    tokens = []
    for token in query.split():
        clean = token.replace('"', "")
        if clean:
            tokens.append(f'"{clean}"')
    return " ".join(tokens)


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so ``text`` matches literally under ``ESCAPE '\\'``."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MemoryReader:
    """Read path over the project memory database.

    Each call opens its own short-lived connection; under WAL that gives a
    consistent view of the last committed transaction.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)

    def _connect(self):
        if not os.path.exists(self.db_path):
            raise StoreError(f"memory database not found: {self.db_path}")
        return aiosqlite.connect(self.db_path)

    # -- full-text ------------------------------------------------------

    async def search_turns(
        self,
        query: str,
        limit: int = 10,
        session_id: str | None = None,
        kind: TurnKind | None = None,
    ) -> list[SearchHit]:
        match = sanitize_fts_query(query)
        if not match:
            return []
        sql = """SELECT t.*, snippet(turns_fts, 0, '[', ']', '...', 16) AS snip,
                        bm25(turns_fts) AS rank
                 FROM turns_fts JOIN turns t ON t.id = turns_fts.rowid
                 WHERE turns_fts MATCH ?"""
        params: list = [match]
        if session_id:
            sql += " AND t.session_id = ?"
            params.append(session_id)
        if kind:
            sql += " AND t.kind = ?"
            params.append(kind.value)
        sql += " ORDER BY rank, t.seq DESC LIMIT ?"
        params.append(limit)

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        # bm25() is lower-is-better; flip it so larger relevance means a better match.
        return [
            SearchHit(turn=_row_to_turn(row), snippet=row["snip"] or "", relevance=-float(row["rank"]))
            for row in rows
        ]

    async def search_knowledge(
        self, query: str, limit: int = 10, category: KnowledgeCategory | None = None
    ) -> list[KnowledgeEntry]:
        match = sanitize_fts_query(query)
        if not match:
            return []
        sql = """SELECT k.* FROM knowledge_fts JOIN knowledge k ON k.id = knowledge_fts.rowid
                 WHERE knowledge_fts MATCH ?"""
        params: list = [match]
        if category:
            sql += " AND k.category = ?"
            params.append(category.value)
        sql += " ORDER BY bm25(knowledge_fts), k.id LIMIT ?"
        params.append(limit)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_knowledge(row) for row in rows]

    # -- sessions and turns ---------------------------------------------

    async def session_turns(
        self,
        session_id: str,
        after_seq: int = 0,
        kinds: list[TurnKind] | None = None,
    ) -> list[Turn]:
        sql = "SELECT * FROM turns WHERE session_id = ? AND seq > ?"
        params: list = [session_id, after_seq]
        if kinds:
            sql += f" AND kind IN ({', '.join('?' for _ in kinds)})"
            params.extend(k.value for k in kinds)
        sql += " ORDER BY seq"
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_turn(row) for row in rows]

    async def last_checkpoint_seq(self, session_id: str) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT MAX(seq) FROM turns WHERE session_id = ? AND kind = ?",
                (session_id, TurnKind.CHECKPOINT.value),
            )
            row = await cursor.fetchone()
        return row[0] or 0

    async def recent_sessions(self, limit: int = 5, exclude: str | None = None) -> list[SessionSummary]:
        """Closed sessions that carry a summary, newest first."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """SELECT * FROM sessions
                   WHERE summary IS NOT NULL AND summary != '' AND id != ?
                   ORDER BY started_at DESC, id DESC LIMIT ?""",
                (exclude or "", limit),
            )
            rows = await cursor.fetchall()
        return [
            SessionSummary(
                id=row["id"],
                started_at=datetime.fromisoformat(row["started_at"]),
                ended_at=datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
                summary=row["summary"],
            )
            for row in rows
        ]

    async def latest_checkpoint(self, session_id: str) -> Checkpoint | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM checkpoints WHERE session_id = ? ORDER BY id DESC LIMIT 1",
                (session_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Checkpoint(
            id=row["id"],
            session_id=row["session_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            summary=row["summary"],
            active_files=json.loads(row["active_files"] or "[]"),
        )

    async def active_files(self, session_id: str, limit: int = 20) -> list[str]:
        """Files edited or read in the session, most recently touched first."""
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT file_path, MAX(seq) AS last_seq FROM turns
                   WHERE session_id = ? AND file_path IS NOT NULL AND kind IN ('edit', 'read')
                   GROUP BY file_path ORDER BY last_seq DESC LIMIT ?""",
                (session_id, limit),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def touched_files(self, limit: int = 200) -> list[FileTouch]:
        async with self._connect() as db:
            cursor = await db.execute(
                """SELECT file_path, MAX(timestamp) AS last, COUNT(*) AS n FROM turns
                   WHERE file_path IS NOT NULL
                   GROUP BY file_path ORDER BY last DESC, file_path LIMIT ?""",
                (limit,),
            )
            rows = await cursor.fetchall()
        return [
            FileTouch(file_path=row[0], last_touched=datetime.fromisoformat(row[1]), touches=row[2])
            for row in rows
        ]

    async def file_history(self, file_path: str, limit: int = 50) -> list[Turn]:
        """Turns that touched ``file_path`` across all sessions, newest first."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """SELECT * FROM turns WHERE file_path = ?
                   ORDER BY timestamp DESC, seq DESC, id DESC LIMIT ?""",
                (file_path, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_turn(row) for row in rows]

    # -- symbols and knowledge -------------------------------------------

    async def list_symbols(self, filter: str = "", kind: str | None = None, limit: int = 100) -> list[Symbol]:
        """Symbols whose name or file path contains ``filter``."""
        sql = "SELECT * FROM symbols WHERE 1=1"
        params: list = []
        if filter:
            sql += " AND (name LIKE ? ESCAPE '\\' OR file_path LIKE ? ESCAPE '\\')"
            like = f"%{escape_like(filter)}%"
            params.extend([like, like])
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY file_path, start_line, id LIMIT ?"
        params.append(limit)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_symbol(row) for row in rows]

    async def file_symbols(self, file_path: str) -> list[Symbol]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM symbols WHERE file_path = ? ORDER BY start_line, id", (file_path,)
            )
            rows = await cursor.fetchall()
        return [_row_to_symbol(row) for row in rows]

    async def list_knowledge(self, category: KnowledgeCategory | None = None) -> list[KnowledgeEntry]:
        sql = "SELECT * FROM knowledge"
        params: list = []
        if category:
            sql += " WHERE category = ?"
            params.append(category.value)
        sql += " ORDER BY category, id"
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_knowledge(row) for row in rows]

    # -- aggregates -----------------------------------------------------

    async def project_structure(self, top_dirs: int = 10) -> ProjectStructure:
        async with self._connect() as db:
            cursor = await db.execute("SELECT file_path, symbol_count FROM indexed_files")
            files = await cursor.fetchall()
            cursor = await db.execute(
                "SELECT kind, COUNT(*) AS n FROM symbols GROUP BY kind ORDER BY n DESC, kind"
            )
            kinds = await cursor.fetchall()

        dirs: Counter[str] = Counter()
        for file_path, _count in files:
            dirs[os.path.dirname(file_path) or "."] += 1
        directories = sorted(dirs.items(), key=lambda item: (-item[1], item[0]))[:top_dirs]
        return ProjectStructure(
            total_files=len(files),
            total_symbols=sum(count for _path, count in files),
            symbol_kinds=[(row[0], row[1]) for row in kinds],
            directories=directories,
        )

    async def status(self, enabled: bool = True, sample_size: int = 10) -> StatusReport:
        async with self._connect() as db:
            counts = {}
            for table in ("sessions", "turns", "knowledge", "symbols", "indexed_files"):
                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = (await cursor.fetchone())[0]
            cursor = await db.execute("SELECT kind, COUNT(*) FROM symbols GROUP BY kind ORDER BY kind")
            by_kind = {row[0]: row[1] for row in await cursor.fetchall()}
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM symbols ORDER BY file_path, start_line, id LIMIT ?", (sample_size,)
            )
            sample = [_row_to_symbol(row) for row in await cursor.fetchall()]
        return StatusReport(
            enabled=enabled,
            db_path=self.db_path,
            sessions=counts["sessions"],
            turns=counts["turns"],
            knowledge=counts["knowledge"],
            symbols=counts["symbols"],
            files=counts["indexed_files"],
            symbols_by_kind=by_kind,
            sample_symbols=sample,
        )


def _row_to_turn(row) -> Turn:
    return Turn(
        id=row["id"],
        session_id=row["session_id"],
        seq=row["seq"],
        kind=TurnKind(row["kind"]),
        timestamp=datetime.fromisoformat(row["timestamp"]),
        file_path=row["file_path"],
        payload=row["payload"],
        body=row["body"],
    )


def _row_to_symbol(row) -> Symbol:
    return Symbol(
        id=row["id"],
        file_path=row["file_path"],
        name=row["name"],
        kind=row["kind"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        signature=row["signature"],
        doc_comment=row["doc_comment"],
        parent_name=row["parent_name"],
        content_hash=row["content_hash"],
    )


def _row_to_knowledge(row) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=row["id"],
        category=KnowledgeCategory(row["category"]),
        subject=row["subject"],
        text=row["text"],
        session_id=row["session_id"],
        confidence=row["confidence"],
        source=KnowledgeSource(row["source"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )
