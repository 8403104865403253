"""Compose the text handed back to the host at session start.

Every payload is built against a byte budget and is never longer than it.
The same store state and budget always produce the same bytes.
"""

import logging

from .ingest import truncate_utf8
from .models import KnowledgeCategory, TurnKind
from .ranking import RankingRequest, RankingWeights, rank_turns, select_within_budget
from .search import MemoryReader

logger = logging.getLogger(__name__)

STARTUP_BUDGET = 8000
COMPACT_BUDGET = 16000

HEADER = "[project-memory] Context restored from earlier work in this project.\n\n"
CATEGORY_ORDER = [
    KnowledgeCategory.DECISION,
    KnowledgeCategory.CONVENTION,
    KnowledgeCategory.PREFERENCE,
    KnowledgeCategory.BUGFIX,
]
CATEGORY_TITLES = {
    KnowledgeCategory.DECISION: "Decisions",
    KnowledgeCategory.CONVENTION: "Conventions",
    KnowledgeCategory.PREFERENCE: "Preferences",
    KnowledgeCategory.BUGFIX: "Bug fixes",
}
RECENT_SESSIONS = 3
MIN_SECTION_BYTES = 40


def _size(text: str) -> int:
    return len(text.encode("utf-8"))


def _clip(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else text[:max_chars] + "..."


class _Composer:
    """Accumulates sections until the budget runs out."""

    def __init__(self, budget: int):
        self.budget = max(budget, 0)
        self.parts: list[str] = []
        self.used = 0
        self.full = False

    @property
    def remaining(self) -> int:
        return self.budget - self.used

    def add(self, text: str) -> bool:
        """Append ``text``; if it does not fit, append what fits and mark full."""
        if self.full or not text:
            return not self.full
        size = _size(text)
        if size <= self.remaining:
            self.parts.append(text)
            self.used += size
            return True
        if self.remaining > 0:
            clipped = truncate_utf8(text, self.remaining, marker="...\n")
            self.parts.append(clipped)
            self.used += _size(clipped)
        self.full = True
        return False

    def render(self) -> str:
        return "".join(self.parts)


class ContextInjector:
    def __init__(self, reader: MemoryReader, weights: RankingWeights | None = None):
        self.reader = reader
        self.weights = weights or RankingWeights()

    async def startup_context(self, budget: int = STARTUP_BUDGET, exclude_session: str | None = None) -> str:
        """Project structure, prior session summaries and all distilled knowledge."""
        out = _Composer(budget)
        sections: list[str] = []

        structure = await self.reader.project_structure()
        if structure.total_symbols > 0:
            kinds = ", ".join(f"{n} {k}" for k, n in structure.symbol_kinds[:8])
            lines = [
                f"## Project Structure ({structure.total_symbols} symbols across {structure.total_files} files)",
                f"Symbols: {kinds}",
            ]
            if structure.directories:
                lines.append("Directories: " + ", ".join(f"{d} ({n})" for d, n in structure.directories[:8]))
            sections.append("\n".join(lines) + "\n\n")

        sessions = await self.reader.recent_sessions(RECENT_SESSIONS, exclude=exclude_session)
        if sessions:
            lines = ["## Recent Sessions"]
            for s in sessions:
                ended = s.ended_at.isoformat(timespec="minutes") if s.ended_at else "in progress"
                lines.append(f"- {s.id[:8]} (ended {ended}): {_clip(s.summary or '', 300)}")
            sections.append("\n".join(lines) + "\n\n")

        knowledge = await self.reader.list_knowledge()
        if knowledge:
            lines = ["## Project Knowledge"]
            for category in CATEGORY_ORDER:
                entries = [k for k in knowledge if k.category == category]
                if not entries:
                    continue
                entries.sort(key=lambda k: (-k.confidence, k.id or 0))
                lines.append(f"### {CATEGORY_TITLES[category]}")
                for k in entries:
                    subject = f"**{k.subject}** " if k.subject else ""
                    lines.append(f"- {subject}({k.confidence:.0%}): {_clip(k.text, 200)}")
            sections.append("\n".join(lines) + "\n")

        if not sections:
            return ""
        out.add(HEADER)
        for section in sections:
            if not out.add(section):
                break
        return out.render()

    async def compact_context(self, session_id: str, budget: int = COMPACT_BUDGET) -> str:
        """Checkpoint, the session's prompts, active files, then ranked activity."""
        turns = await self.reader.session_turns(session_id)
        checkpoint = await self.reader.latest_checkpoint(session_id)
        if not turns and checkpoint is None:
            return ""
        active_files = await self.reader.active_files(session_id)

        out = _Composer(budget)
        out.add(HEADER)

        if checkpoint is not None and checkpoint.summary:
            cap = max(budget // 4, 0)
            section = "## Session Checkpoint\n" + checkpoint.summary.rstrip("\n") + "\n\n"
            if _size(section) > cap:
                section = truncate_utf8(section, cap, marker="...\n\n")
            out.add(section)

        prompts = [t for t in turns if t.kind == TurnKind.PROMPT]
        if prompts and not out.full:
            out.add(self._requests_section(prompts, out.remaining))

        if active_files and not out.full and out.remaining > MIN_SECTION_BYTES:
            lines = ["## Active Files"]
            room = out.remaining - _size("## Active Files\n\n")
            for path in active_files:
                line = f"- {path}"
                if _size(line) + 1 > room:
                    break
                lines.append(line)
                room -= _size(line) + 1
            if len(lines) > 1:
                out.add("\n".join(lines) + "\n\n")

        rest = [t for t in turns if t.kind not in (TurnKind.PROMPT, TurnKind.CHECKPOINT)]
        title = "## Session Activity\n"
        if rest and not out.full and out.remaining > _size(title) + MIN_SECTION_BYTES:
            request = RankingRequest(
                budget=out.remaining - _size(title),
                session_id=session_id,
                active_files=active_files,
                weights=self.weights,
            )
            ranked = rank_turns(rest, request)
            body = select_within_budget(ranked, request.budget)
            if body:
                out.add(title + body)

        return out.render()

    def _requests_section(self, prompts, room: int) -> str:
        """All prompts in order; when they do not fit, the newest ones win."""
        title = "## User Requests\n"
        room -= _size(title) + 1
        kept = []
        for turn in reversed(prompts):
            line = f"{turn.seq}. {_clip(turn.body, 300)}\n"
            if _size(line) > room:
                if not kept and room > 0:
                    kept.append(truncate_utf8(line, room, marker="...\n"))
                break
            kept.append(line)
            room -= _size(line)
        return title + "".join(reversed(kept)) + "\n"
