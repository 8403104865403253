"""Knowledge distillation and summaries at session end.

Two interchangeable strategies produce the same output shape: the heuristic
one pattern-matches prompts, edit descriptions and shell commands; the
external-model one sends a bounded transcript to an LLM and falls back to the
heuristic on any failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Protocol

from pydantic import BaseModel

from .llm import LLMClient, parse_json
from .models import DistilledKnowledge, KnowledgeCategory, KnowledgeSource, Turn, TurnKind
from .search import MemoryReader
from .storage import MemoryStore

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 12_000
MAX_TURN_CHARS = 500
SUMMARY_REQUESTS = 20

TECH_PATTERNS: list[tuple[str, str]] = [
    ("jwt", "authentication"),
    ("bcrypt", "password hashing"),
    ("oauth", "authentication"),
    ("redis", "caching"),
    ("postgres", "database"),
    ("postgresql", "database"),
    ("sqlite", "database"),
    ("mysql", "database"),
    ("mongodb", "database"),
    ("graphql", "API"),
    ("grpc", "API"),
    ("docker", "deployment"),
    ("kubernetes", "deployment"),
    ("webpack", "bundling"),
    ("vite", "bundling"),
    ("tokio", "async runtime"),
    ("asyncio", "async runtime"),
    ("actix", "web framework"),
    ("axum", "web framework"),
    ("express", "web framework"),
    ("fastapi", "web framework"),
    ("flask", "web framework"),
    ("django", "web framework"),
    ("react", "UI framework"),
    ("vue", "UI framework"),
    ("svelte", "UI framework"),
    ("pydantic", "data validation"),
    ("sqlalchemy", "ORM"),
    ("peewee", "ORM"),
]

BUILD_TOOLS: dict[str, str] = {
    "cargo": "Cargo (Rust)",
    "npm": "npm",
    "npx": "npm",
    "yarn": "yarn",
    "pnpm": "pnpm",
    "bun": "bun",
    "pip": "pip/Python",
    "poetry": "Poetry",
    "uv": "uv",
    "go": "Go toolchain",
    "make": "make",
    "gradle": "Gradle",
    "mvn": "Maven",
    "bundle": "Bundler",
}
# Only trusted when they are the command being run, not when mentioned in prose.
AMBIGUOUS_TOOLS = frozenset({"go", "make", "bun", "uv", "bundle"})

TEST_FRAMEWORKS: list[tuple[str, str]] = [
    ("cargo test", "cargo test"),
    ("go test", "go test"),
    ("npm test", "npm test"),
    ("pytest", "pytest"),
    ("unittest", "unittest"),
    ("vitest", "vitest"),
    ("jest", "jest"),
    ("mocha", "mocha"),
    ("rspec", "rspec"),
    ("junit", "JUnit"),
]

CATEGORY_ALIASES: dict[str, KnowledgeCategory] = {
    "decision": KnowledgeCategory.DECISION,
    "architecture": KnowledgeCategory.DECISION,
    "convention": KnowledgeCategory.CONVENTION,
    "pattern": KnowledgeCategory.CONVENTION,
    "preference": KnowledgeCategory.PREFERENCE,
    "bugfix": KnowledgeCategory.BUGFIX,
    "bug_fix": KnowledgeCategory.BUGFIX,
    "debugging_insight": KnowledgeCategory.BUGFIX,
}

DISTILL_PROMPT = """\
You are a knowledge extraction system. Analyze the coding-session transcript and extract \
knowledge that will still matter in future sessions.

For each entry, determine:
- category: one of "decision", "preference", "convention", "bugfix"
- subject: a short label (2-6 words) describing what the knowledge is about
- content: a concise description (1-3 sentences) of the knowledge
- confidence: 0.0-1.0 indicating how confident you are this is persistent knowledge

Focus on technology choices and why they were made, user preferences and coding \
conventions, and bug fixes with their root causes.

Do NOT extract trivial facts (a file was read, a command was run) or one-off task details.

Respond with ONLY a JSON array, for example:
[{"category": "decision", "subject": "auth strategy", "content": "Chose JWT because the API is stateless.", "confidence": 0.9}]
If nothing is worth keeping, respond with []."""

SUMMARY_PROMPT = """\
Summarize the following coding-session activity as a short chronological narrative \
(at most 12 lines). Mention the tasks the user asked for, the files that changed and \
any unresolved problems. Plain text only, no preamble."""


def _truncate(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else text[:max_chars] + "..."


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"(?<![\w-]){re.escape(word)}(?![\w-])", text) is not None


def _edit_description(turn: Turn) -> str:
    try:
        return str(json.loads(turn.payload).get("description") or "")
    except (ValueError, AttributeError):
        return turn.body.split("\n", 1)[0]


def _bash_command(turn: Turn) -> str:
    first = turn.body.split("\n", 1)[0]
    return first[2:] if first.startswith("$ ") else first


def _short_path(path: str) -> str:
    parts = path.replace("\\", "/").split("/")
    return "/".join(parts[-2:])


class DistillStrategy(Protocol):
    async def distill(self, turns: list[Turn]) -> list[DistilledKnowledge]: ...

    async def summarize(self, turns: list[Turn]) -> str: ...


class HeuristicStrategy:
    """Deterministic, offline pattern matching."""

    name = "heuristic"

    async def distill(self, turns: list[Turn]) -> list[DistilledKnowledge]:
        return self.extract(turns)

    async def summarize(self, turns: list[Turn]) -> str:
        return checkpoint_narrative(turns)

    def extract(self, turns: list[Turn]) -> list[DistilledKnowledge]:
        found: list[DistilledKnowledge] = []
        seen: set[tuple[KnowledgeCategory, str]] = set()

        def add(category: KnowledgeCategory, subject: str, text: str, confidence: float) -> None:
            key = (category, text)
            if key not in seen:
                seen.add(key)
                found.append(
                    DistilledKnowledge(
                        category=category,
                        subject=subject,
                        text=text,
                        confidence=confidence,
                        source=KnowledgeSource.HEURISTIC,
                    )
                )

        for turn in turns:
            if turn.kind == TurnKind.PROMPT:
                self._from_prompt(turn.body, add)
            elif turn.kind == TurnKind.EDIT:
                self._from_edit(turn, add)
            elif turn.kind == TurnKind.BASH:
                self._from_command(_bash_command(turn).lower(), add)
        return found

    def _from_prompt(self, text: str, add) -> None:
        lower = text.lower()
        for keyword, area in TECH_PATTERNS:
            if _has_word(lower, keyword):
                add(
                    KnowledgeCategory.DECISION,
                    f"{area} choice",
                    f"User chose {keyword} for {area}. Context: {_truncate(text, 200)}",
                    0.7,
                )
        if _has_word(lower, "always") or _has_word(lower, "never"):
            add(KnowledgeCategory.PREFERENCE, _preference_subject(lower), _truncate(text, 300), 0.8)
        if "instead of" in lower or "rather than" in lower or re.search(r"\bprefer", lower):
            add(KnowledgeCategory.PREFERENCE, "coding preference", _truncate(text, 300), 0.7)
        self._tools_in_text(lower, add, trust_ambiguous=False)

    def _from_edit(self, turn: Turn, add) -> None:
        description = _edit_description(turn)
        lower = description.lower()
        if re.search(r"\bfix", lower) or re.search(r"\bbug", lower):
            subject = f"bug fix in {_short_path(turn.file_path)}" if turn.file_path else "bug fix"
            add(KnowledgeCategory.BUGFIX, subject, _truncate(turn.body, 300), 0.8)
        self._tools_in_text(lower, add, trust_ambiguous=False)

    def _from_command(self, command: str, add) -> None:
        self._tools_in_text(command, add, trust_ambiguous=True)

    def _tools_in_text(self, lower: str, add, trust_ambiguous: bool) -> None:
        for name, framework in TEST_FRAMEWORKS:
            if _has_word(lower, name):
                add(KnowledgeCategory.CONVENTION, "test framework", f"Uses {framework} for testing", 0.9)
                break
        if trust_ambiguous:
            words = lower.split()
            tool = words[0] if words else ""
            if tool in ("sudo", "env") and len(words) > 1:
                tool = words[1]
            if tool in BUILD_TOOLS:
                add(KnowledgeCategory.CONVENTION, "build tool", f"Uses {BUILD_TOOLS[tool]}", 0.9)
            return
        for name, label in BUILD_TOOLS.items():
            if name not in AMBIGUOUS_TOOLS and _has_word(lower, name):
                add(KnowledgeCategory.CONVENTION, "build tool", f"Uses {label}", 0.8)


def _preference_subject(lower: str) -> str:
    match = re.search(r"\b(always|never)\s+([\w-]+(?:\s+[\w-]+){0,2})", lower)
    if match:
        return f"{match.group(1)} {match.group(2)}"
    return "coding preference"


def build_transcript(turns: list[Turn], max_chars: int = MAX_TRANSCRIPT_CHARS) -> str:
    labels = {
        TurnKind.PROMPT: "USER",
        TurnKind.EDIT: "EDIT",
        TurnKind.READ: "READ",
        TurnKind.BASH: "BASH",
        TurnKind.CHECKPOINT: "CHECKPOINT",
    }
    lines = []
    for turn in turns:
        files = f" [files: {turn.file_path}]" if turn.file_path else ""
        lines.append(f"[{labels[turn.kind]}]{files} {_truncate(turn.body, MAX_TURN_CHARS)}")
    return _truncate("\n".join(lines), max_chars)


def parse_model_entries(text: str) -> list[DistilledKnowledge]:
    """Parse the model's JSON array, mapping or dropping unknown categories."""
    data = parse_json(text)
    if not isinstance(data, list):
        raise ValueError("expected a JSON array of knowledge entries")
    entries = []
    for item in data:
        if not isinstance(item, dict):
            continue
        category = CATEGORY_ALIASES.get(str(item.get("category", "")).lower())
        content = str(item.get("content") or item.get("text") or "").strip()
        if category is None or not content:
            continue
        try:
            confidence = float(item.get("confidence", 0.7))
        except (TypeError, ValueError):
            confidence = 0.7
        entries.append(
            DistilledKnowledge(
                category=category,
                subject=str(item.get("subject") or ""),
                text=content,
                confidence=max(0.1, min(1.0, confidence)),
                source=KnowledgeSource.MODEL,
            )
        )
    return entries


class ExternalModelStrategy:
    """LLM-backed distillation; any failure degrades to ``fallback``."""

    name = "model"

    def __init__(self, client: LLMClient, fallback: HeuristicStrategy | None = None):
        self.client = client
        self.fallback = fallback or HeuristicStrategy()

    async def distill(self, turns: list[Turn]) -> list[DistilledKnowledge]:
        if not turns:
            return []
        try:
            response = await self.client.acomplete(DISTILL_PROMPT, build_transcript(turns))
            return parse_model_entries(response)
        except Exception as e:
            logger.warning("Model distillation failed, falling back to heuristics: %s", e)
            return await self.fallback.distill(turns)

    async def summarize(self, turns: list[Turn]) -> str:
        if not turns:
            return ""
        try:
            response = await self.client.acomplete(SUMMARY_PROMPT, build_transcript(turns), max_tokens=512)
            if response.strip():
                return response.strip()
        except Exception as e:
            logger.warning("Model summary failed, falling back to heuristics: %s", e)
        return await self.fallback.summarize(turns)


def checkpoint_narrative(turns: list[Turn]) -> str:
    """Chronological digest of tasks, modified files and recent edits."""
    prompts = [t for t in turns if t.kind == TurnKind.PROMPT]
    edits = [t for t in turns if t.kind == TurnKind.EDIT]
    commands = [t for t in turns if t.kind == TurnKind.BASH]

    sections = []
    if prompts:
        lines = [f"  {i}. {_truncate(t.body, 200)}" for i, t in enumerate(prompts, 1)]
        sections.append("Tasks:\n" + "\n".join(lines))
    modified = sorted({t.file_path for t in edits if t.file_path})
    if modified:
        sections.append("Files modified:\n" + "\n".join(f"  - {p}" for p in modified))
    if edits:
        recent = [f"  - {_truncate(t.body, 300)}" for t in edits[-10:]]
        sections.append("Recent edits:\n" + "\n".join(recent))
    if commands:
        sections.append(f"Commands run: {len(commands)}")
    return "\n\n".join(sections)


def session_summary(turns: list[Turn]) -> str | None:
    prompts = [t for t in turns if t.kind == TurnKind.PROMPT][:SUMMARY_REQUESTS]
    if not prompts:
        return None
    edits = [t for t in turns if t.kind == TurnKind.EDIT]
    files = {t.file_path for t in turns if t.file_path}
    lines = ["User requests:"]
    lines.extend(f"{i}. {_truncate(t.body, 200)}" for i, t in enumerate(prompts, 1))
    lines.append("")
    lines.append(f"Stats: {len(edits)} code edits across {len(files)} files")
    return "\n".join(lines)


class DistillOutcome(BaseModel):
    session_id: str
    strategy: str = "heuristic"
    entries: int = 0
    added: int = 0
    summary: str | None = None
    timed_out: bool = False
    closed: bool = False


class Distiller:
    """Runs a strategy over a session's turns and records the results.

    The strategy gets ``timeout`` seconds; on timeout or error the heuristic
    result is used. ``distill_session`` never raises.
    """

    def __init__(
        self,
        store: MemoryStore,
        reader: MemoryReader,
        strategy: DistillStrategy | None = None,
        timeout: float = 20.0,
    ):
        self.store = store
        self.reader = reader
        self.strategy = strategy or HeuristicStrategy()
        self.timeout = timeout
        self.heuristic = HeuristicStrategy()

    async def _extract(self, turns: list[Turn], outcome: DistillOutcome) -> list[DistilledKnowledge]:
        outcome.strategy = getattr(self.strategy, "name", type(self.strategy).__name__)
        try:
            return await asyncio.wait_for(self.strategy.distill(turns), timeout=self.timeout)
        except asyncio.TimeoutError:
            outcome.timed_out = True
            logger.warning("Distillation exceeded %.1fs, using heuristics", self.timeout)
        except Exception as e:
            logger.warning("Distillation strategy failed, using heuristics: %s", e)
        outcome.strategy = self.heuristic.name
        return self.heuristic.extract(turns)

    async def distill_session(self, session_id: str) -> DistillOutcome:
        outcome = DistillOutcome(session_id=session_id)
        try:
            turns = await self.reader.session_turns(session_id)
            entries = await self._extract(turns, outcome) if turns else []
            outcome.entries = len(entries)
            outcome.summary = session_summary(turns)
            if entries:
                outcome.added = await self.store.add_knowledge(entries, session_id)
            outcome.closed = await self.store.end_session(session_id, outcome.summary)
        except Exception as e:
            logger.warning("Session %s distillation aborted: %s", session_id, e)
        return outcome
