from __future__ import annotations

import json
import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .config import MemoryConfig, is_disabled, load_config, resolve_db_path
from .models import KnowledgeCategory, TurnKind
from .ranking import RankingRequest, RankingWeights, rank_search_hits
from .search import MemoryReader
from .storage import MemoryStore

# Full-text candidates fetched per requested result before re-ranking.
SEARCH_OVERFETCH = 3


class MemoryApp:
    """Application wrapper holding shared state for MCP tool handlers."""

    def __init__(self, store: MemoryStore, reader: MemoryReader, weights: RankingWeights | None = None):
        self.store = store
        self.reader = reader
        self.weights = weights or RankingWeights()

    async def search(self, query: str, limit: int = 10, session_id: str = "", kind: str = "") -> str:
        if kind:
            try:
                selected = TurnKind(kind)
            except ValueError:
                valid = ", ".join(k.value for k in TurnKind)
                return f"Unknown kind '{kind}'. Expected one of: {valid}."
        else:
            selected = None
        hits = await self.reader.search_turns(
            query, limit=max(limit, 1) * SEARCH_OVERFETCH, session_id=session_id or None, kind=selected
        )
        if not hits:
            return "No matching turns found."
        ranked = rank_search_hits(hits, RankingRequest(budget=0, weights=self.weights))[:limit]
        output = []
        for h in ranked:
            output.append({
                "id": h.turn.id,
                "score": round(h.score, 4),
                "session": h.turn.session_id,
                "seq": h.turn.seq,
                "kind": h.turn.kind.value,
                "timestamp": h.turn.timestamp.isoformat(),
                "file": h.turn.file_path,
                "snippet": h.snippet,
            })
        return json.dumps(output, indent=2)

    async def symbols(self, filter: str = "", kind: str = "", limit: int = 100) -> str:
        results = await self.reader.list_symbols(filter, kind=kind or None, limit=limit)
        if not results:
            return "No matching symbols found."
        output = []
        for s in results:
            output.append({
                "name": s.name,
                "kind": s.kind,
                "file": s.file_path,
                "lines": [s.start_line, s.end_line],
                "signature": s.signature,
                "parent": s.parent_name,
                "doc": s.doc_comment,
            })
        return json.dumps(output, indent=2)

    async def decisions(self, category: str = "", query: str = "", limit: int = 20) -> str:
        if category:
            try:
                selected = KnowledgeCategory(category)
            except ValueError:
                valid = ", ".join(c.value for c in KnowledgeCategory)
                return f"Unknown category '{category}'. Expected one of: {valid}."
        else:
            selected = None
        if query:
            entries = await self.reader.search_knowledge(query, limit=limit, category=selected)
            if not entries:
                return "No matching knowledge found."
        else:
            entries = await self.reader.list_knowledge(selected)
            if not entries:
                return "No knowledge recorded yet."
        output = []
        for k in entries:
            output.append({
                "id": k.id,
                "category": k.category.value,
                "subject": k.subject or None,
                "text": k.text,
                "confidence": round(k.confidence, 2),
                "source": k.source.value,
                "session": k.session_id or None,
            })
        return json.dumps(output, indent=2)

    async def files(self, limit: int = 200, file_path: str = "") -> str:
        if file_path:
            return await self._file_history(file_path, limit)
        touched = await self.reader.touched_files(limit)
        if not touched:
            return "No files touched yet."
        output = [
            {"file": f.file_path, "last_touched": f.last_touched.isoformat(), "touches": f.touches}
            for f in touched
        ]
        return json.dumps(output, indent=2)

    async def _file_history(self, file_path: str, limit: int) -> str:
        turns = await self.reader.file_history(file_path, limit)
        if not turns:
            return f"No history for {file_path}."
        output = []
        for t in turns:
            output.append({
                "id": t.id,
                "session": t.session_id,
                "seq": t.seq,
                "kind": t.kind.value,
                "timestamp": t.timestamp.isoformat(),
                "body": t.body,
            })
        return json.dumps(output, indent=2)

    async def status(self) -> str:
        report = await self.reader.status(enabled=not is_disabled())
        return report.model_dump_json(indent=2)


async def create_app(
    db_path: str | None = None,
    project_dir: str | None = None,
    config: MemoryConfig | None = None,
) -> MemoryApp:
    project_dir = str(Path(project_dir or os.getcwd()).resolve())
    config = config or load_config(project_dir)
    db_path = db_path or resolve_db_path(project_dir, config)
    store = MemoryStore(db_path, config.busy_timeout_ms)
    await store.initialize()
    return MemoryApp(store=store, reader=MemoryReader(db_path), weights=config.ranking)


def create_mcp_server(project_dir: str | None = None) -> FastMCP:
    mcp = FastMCP("project-memory")
    app: MemoryApp | None = None

    async def get_app() -> MemoryApp:
        nonlocal app
        if app is None:
            app = await create_app(project_dir=project_dir)
        return app

    @mcp.tool()
    async def search(query: str, limit: int = 10, session_id: str = "", kind: str = "") -> str:
        """Full-text search over every recorded turn in this project. Results are ranked by term relevance, recency and turn type. Optionally restrict to one session id or one kind (prompt, edit, read, bash, checkpoint)."""
        return await (await get_app()).search(query=query, limit=limit, session_id=session_id, kind=kind)

    @mcp.tool()
    async def symbols(filter: str = "", kind: str = "") -> str:
        """List code symbols whose name or file path contains the filter. Optionally restrict to a kind such as function, class or method."""
        return await (await get_app()).symbols(filter=filter, kind=kind)

    @mcp.tool()
    async def decisions(category: str = "", query: str = "") -> str:
        """List distilled project knowledge. Category is one of decision, convention, preference or bugfix; omit it for all. A query ranks entries by full-text match instead of listing them all."""
        return await (await get_app()).decisions(category=category, query=query)

    @mcp.tool()
    async def files(file_path: str = "") -> str:
        """List files touched by edits and reads, most recent first. With a file path, return that file's turns newest first."""
        return await (await get_app()).files(file_path=file_path)

    @mcp.tool()
    async def status() -> str:
        """Report whether memory is enabled and how much has been recorded."""
        return await (await get_app()).status()

    return mcp


def main():
    mcp = create_mcp_server()
    mcp.run()


if __name__ == "__main__":
    main()
