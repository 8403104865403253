import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from anthropic.types import TextBlock

from project_memory.config import LLMSettings
from project_memory.distill import (
    Distiller,
    ExternalModelStrategy,
    HeuristicStrategy,
    build_transcript,
    checkpoint_narrative,
    parse_model_entries,
    session_summary,
)
from project_memory.ingest import EventIngestor
from project_memory.llm import LLMClient, LLMError
from project_memory.models import KnowledgeCategory, KnowledgeSource, Turn, TurnKind

TS = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _turn(seq, kind, body, file_path=None, payload=""):
    return Turn(session_id="s1", seq=seq, kind=kind, timestamp=TS, body=body, file_path=file_path, payload=payload)


def _mock_anthropic_response(text: str):
    mock_response = MagicMock()
    mock_response.content = [TextBlock(type="text", text=text)]
    return mock_response


def _async_client():
    mock_client = MagicMock()
    mock_client.messages.create = AsyncMock()
    return mock_client


def _model_strategy(mock_client):
    settings = LLMSettings(provider="anthropic", api_key="k")
    return ExternalModelStrategy(LLMClient(settings, async_client=mock_client))


class TestHeuristicStrategy:
    def test_test_framework_from_prompt(self):
        [entry] = HeuristicStrategy().extract([_turn(1, TurnKind.PROMPT, "use pytest for testing")])
        assert entry.category == KnowledgeCategory.CONVENTION
        assert entry.text == "Uses pytest for testing"
        assert entry.subject == "test framework"
        assert entry.source == KnowledgeSource.HEURISTIC

    def test_technology_decision(self):
        entries = HeuristicStrategy().extract([_turn(1, TurnKind.PROMPT, "Let's store sessions in Redis")])
        decisions = [e for e in entries if e.category == KnowledgeCategory.DECISION]
        assert [e.subject for e in decisions] == ["caching choice"]
        assert "redis" in decisions[0].text

    def test_preferences(self):
        entries = HeuristicStrategy().extract([
            _turn(1, TurnKind.PROMPT, "Always use type hints in new code"),
            _turn(2, TurnKind.PROMPT, "I prefer dataclasses rather than dicts"),
        ])
        prefs = [e for e in entries if e.category == KnowledgeCategory.PREFERENCE]
        assert [e.subject for e in prefs] == ["always use type hints", "coding preference"]

    def test_bugfix_from_edit_description(self):
        payload = json.dumps({"path": "src/auth.py", "description": "Fix off-by-one in token expiry"})
        turn = _turn(1, TurnKind.EDIT, "Edit src/auth.py: Fix off-by-one", file_path="src/auth.py", payload=payload)
        [entry] = HeuristicStrategy().extract([turn])
        assert entry.category == KnowledgeCategory.BUGFIX
        assert entry.subject == "bug fix in src/auth.py"

    def test_build_tool_from_command(self):
        entries = HeuristicStrategy().extract([_turn(1, TurnKind.BASH, "$ cargo build --release\nCompiling")])
        assert [(e.subject, e.text) for e in entries] == [("build tool", "Uses Cargo (Rust)")]

    def test_ambiguous_tool_in_prose_is_ignored(self):
        entries = HeuristicStrategy().extract([_turn(1, TurnKind.PROMPT, "go ahead and make it faster")])
        assert entries == []

    def test_ambiguous_tool_as_command_counts(self):
        entries = HeuristicStrategy().extract([_turn(1, TurnKind.BASH, "$ go test ./...")])
        texts = {e.text for e in entries}
        assert texts == {"Uses go test for testing", "Uses Go toolchain"}

    def test_duplicates_collapse(self):
        turns = [_turn(i, TurnKind.PROMPT, "run pytest") for i in range(1, 4)]
        assert len(HeuristicStrategy().extract(turns)) == 1

    def test_deterministic(self):
        turns = [
            _turn(1, TurnKind.PROMPT, "use pytest and postgres; never commit secrets"),
            _turn(2, TurnKind.BASH, "$ npm test"),
        ]
        assert HeuristicStrategy().extract(turns) == HeuristicStrategy().extract(turns)


class TestSummaries:
    def test_session_summary(self):
        turns = [
            _turn(1, TurnKind.PROMPT, "add login"),
            _turn(2, TurnKind.EDIT, "Edit a.py", file_path="a.py"),
            _turn(3, TurnKind.EDIT, "Edit b.py", file_path="b.py"),
            _turn(4, TurnKind.PROMPT, "write tests"),
        ]
        assert session_summary(turns) == (
            "User requests:\n1. add login\n2. write tests\n\nStats: 2 code edits across 2 files"
        )

    def test_session_summary_without_prompts(self):
        assert session_summary([_turn(1, TurnKind.BASH, "$ ls")]) is None

    def test_checkpoint_narrative(self):
        turns = [
            _turn(1, TurnKind.PROMPT, "refactor db"),
            _turn(2, TurnKind.EDIT, "Edit db.py: split", file_path="db.py"),
            _turn(3, TurnKind.BASH, "$ pytest"),
        ]
        text = checkpoint_narrative(turns)
        assert text.startswith("Tasks:\n  1. refactor db")
        assert "Files modified:\n  - db.py" in text
        assert "Recent edits:\n  - Edit db.py: split" in text
        assert text.endswith("Commands run: 1")

    def test_checkpoint_narrative_empty(self):
        assert checkpoint_narrative([]) == ""

    def test_transcript_is_bounded(self):
        turns = [_turn(i, TurnKind.PROMPT, "x" * 400) for i in range(100)]
        assert len(build_transcript(turns)) <= 12_003
        assert build_transcript(turns[:1]).startswith("[USER] ")


class TestParseModelEntries:
    def test_aliases_and_fences(self):
        text = "```json\n" + json.dumps([
            {"category": "architecture", "subject": "api", "content": "REST over gRPC", "confidence": 0.9},
            {"category": "bug_fix", "subject": "race", "content": "Lock around cache fill", "confidence": 2},
            {"category": "trivia", "content": "ignored"},
            {"category": "decision", "content": ""},
        ]) + "\n```"
        entries = parse_model_entries(text)
        assert [(e.category, e.text) for e in entries] == [
            (KnowledgeCategory.DECISION, "REST over gRPC"),
            (KnowledgeCategory.BUGFIX, "Lock around cache fill"),
        ]
        assert entries[1].confidence == 1.0
        assert all(e.source == KnowledgeSource.MODEL for e in entries)

    def test_non_array_raises(self):
        with pytest.raises(ValueError):
            parse_model_entries('{"category": "decision"}')


class TestExternalModelStrategy:
    async def test_uses_model_output(self):
        mock_client = _async_client()
        mock_client.messages.create.return_value = _mock_anthropic_response(
            json.dumps([{"category": "decision", "subject": "db", "content": "Chose SQLite", "confidence": 0.8}])
        )
        entries = await _model_strategy(mock_client).distill([_turn(1, TurnKind.PROMPT, "pick a db")])
        assert [e.text for e in entries] == ["Chose SQLite"]
        kwargs = mock_client.messages.create.call_args.kwargs
        assert "[USER] pick a db" in kwargs["messages"][0]["content"]

    async def test_falls_back_on_error(self):
        mock_client = _async_client()
        mock_client.messages.create.side_effect = LLMError("unreachable")
        turns = [_turn(1, TurnKind.PROMPT, "use pytest for testing")]
        entries = await _model_strategy(mock_client).distill(turns)
        assert entries == HeuristicStrategy().extract(turns)

    async def test_falls_back_on_bad_json(self):
        mock_client = _async_client()
        mock_client.messages.create.return_value = _mock_anthropic_response("not json at all")
        turns = [_turn(1, TurnKind.PROMPT, "use pytest for testing")]
        assert await _model_strategy(mock_client).distill(turns) == HeuristicStrategy().extract(turns)

    async def test_summary_falls_back(self):
        mock_client = _async_client()
        mock_client.messages.create.return_value = _mock_anthropic_response("   ")
        turns = [_turn(1, TurnKind.PROMPT, "refactor db")]
        assert await _model_strategy(mock_client).summarize(turns) == checkpoint_narrative(turns)


class _SlowStrategy:
    name = "slow"

    async def distill(self, turns):
        await asyncio.sleep(10)
        return []

    async def summarize(self, turns):
        await asyncio.sleep(10)
        return ""


class TestDistiller:
    async def test_records_knowledge_and_closes_session(self, store, reader):
        await EventIngestor(store).ingest("prompt", {"text": "use pytest for testing"}, "s1")
        outcome = await Distiller(store, reader).distill_session("s1")
        assert outcome.closed
        assert outcome.added == 1
        [entry] = await reader.list_knowledge()
        assert entry.category == KnowledgeCategory.CONVENTION
        assert "pytest" in entry.text
        assert entry.session_id == "s1"
        [session] = await reader.recent_sessions()
        assert session.summary.startswith("User requests:\n1. use pytest for testing")

    async def test_second_close_adds_nothing(self, store, reader):
        await EventIngestor(store).ingest("prompt", {"text": "use pytest for testing"}, "s1")
        await Distiller(store, reader).distill_session("s1")
        outcome = await Distiller(store, reader).distill_session("s1")
        assert outcome.added == 0
        assert outcome.closed is False
        assert len(await reader.list_knowledge()) == 1

    async def test_timeout_falls_back_to_heuristics(self, store, reader):
        await EventIngestor(store).ingest("prompt", {"text": "use pytest for testing"}, "s1")
        outcome = await Distiller(store, reader, _SlowStrategy(), timeout=0.05).distill_session("s1")
        assert outcome.timed_out
        assert outcome.strategy == "heuristic"
        assert outcome.added == 1

    async def test_empty_session_still_closes(self, store, reader):
        await store.ensure_session("s1")
        outcome = await Distiller(store, reader).distill_session("s1")
        assert outcome.closed
        assert outcome.entries == 0

    async def test_never_raises(self, tmp_path):
        from project_memory.search import MemoryReader
        from project_memory.storage import MemoryStore

        db = tmp_path / "x.db"
        store = MemoryStore(db)
        outcome = await Distiller(store, MemoryReader(tmp_path / "missing.db")).distill_session("s1")
        assert outcome.closed is False
