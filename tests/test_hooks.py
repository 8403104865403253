import asyncio
import json
import sqlite3
import time
from unittest.mock import MagicMock

import pytest

from project_memory import hooks
from project_memory.config import DistillSettings, LLMSettings, MemoryConfig
from project_memory.distill import ExternalModelStrategy, HeuristicStrategy
from project_memory.hooks import HOOK_KINDS, HookRunner, run_hook
from project_memory.llm import LLMClient
from project_memory.search import MemoryReader


def _counts(db_path):
    conn = sqlite3.connect(db_path)
    try:
        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in ("turns", "symbols", "checkpoints", "knowledge")
        }
    finally:
        conn.close()


def _write_edit(path, content, tool_use_id=None):
    raw = {
        "session_id": "s1",
        "hook_event_name": "PostToolUse",
        "tool_name": "Write",
        "tool_input": {"file_path": str(path), "content": content},
    }
    if tool_use_id:
        raw["tool_use_id"] = tool_use_id
    return raw


def _context(output):
    data = json.loads(output)
    assert data["hookSpecificOutput"]["hookEventName"] == "SessionStart"
    return data["hookSpecificOutput"]["additionalContext"]


class TestKillSwitch:
    async def test_disabled_hooks_touch_nothing(self, tmp_path, tmp_db, hook_env, project_dir):
        await run_hook("prompt", {"session_id": "s1", "prompt": "warm up"}, project_dir, hook_env)
        before = _counts(tmp_db)
        (tmp_path / "disabled").touch()

        (project_dir / "a.py").write_text("def f():\n    pass\n")
        payloads = {
            "prompt": {"session_id": "s1", "prompt": "use pytest for testing"},
            "edit": _write_edit(project_dir / "a.py", "def f():\n    pass\n"),
            "read": {"session_id": "s1", "tool_name": "Read", "tool_input": {"file_path": "a.py"}},
            "bash": {"session_id": "s1", "tool_name": "Bash", "tool_input": {"command": "ls"}},
            "pre-compact": {"session_id": "s1"},
            "session-start": {"session_id": "s2", "source": "startup"},
            "session-end": {"session_id": "s1"},
        }
        for kind in HOOK_KINDS:
            assert await run_hook(kind, payloads[kind], project_dir, hook_env) is None
        assert _counts(tmp_db) == before

    async def test_disabled_before_first_use_creates_no_database(self, tmp_path, tmp_db, hook_env, project_dir):
        (tmp_path / "disabled").touch()
        await run_hook("prompt", {"session_id": "s1", "prompt": "hello"}, project_dir, hook_env)
        assert not (tmp_path / "test_memory.db").exists()

    async def test_reenabling_takes_effect_immediately(self, tmp_path, tmp_db, hook_env, project_dir):
        flag = tmp_path / "disabled"
        flag.touch()
        await run_hook("prompt", {"session_id": "s1", "prompt": "ignored"}, project_dir, hook_env)
        flag.unlink()
        await run_hook("prompt", {"session_id": "s1", "prompt": "recorded"}, project_dir, hook_env)
        turns = await MemoryReader(tmp_db).session_turns("s1")
        assert [t.body for t in turns] == ["recorded"]


class TestIngestHooks:
    async def test_native_payloads_are_recorded(self, tmp_db, hook_env, project_dir):
        await run_hook("prompt", {"session_id": "s1", "prompt": "add a cli"}, project_dir, hook_env)
        await run_hook("read", {
            "session_id": "s1", "tool_name": "Read", "tool_input": {"file_path": str(project_dir / "cli.py")},
        }, project_dir, hook_env)
        await run_hook("bash", {
            "session_id": "s1", "tool_name": "Bash", "tool_input": {"command": "ls"},
            "tool_response": {"stdout": "cli.py", "stderr": ""},
        }, project_dir, hook_env)
        turns = await MemoryReader(tmp_db).session_turns("s1")
        assert [t.body for t in turns] == ["add a cli", "Read file: cli.py", "$ ls\ncli.py"]

    async def test_malformed_payload_is_dropped(self, tmp_db, hook_env, project_dir):
        assert await run_hook("bash", {"session_id": "s1", "tool_input": "nonsense"}, project_dir, hook_env) is None
        assert await MemoryReader(tmp_db).session_turns("s1") == []

    async def test_unknown_kind_is_ignored(self, hook_env, project_dir):
        assert await run_hook("teleport", {}, project_dir, hook_env) is None

    async def test_second_edit_replaces_symbols(self, tmp_db, hook_env, project_dir):
        path = project_dir / "a.py"
        path.write_text("def first():\n    pass\n\nclass OldThing:\n    pass\n")
        await run_hook("edit", _write_edit(path, path.read_text(), "t1"), project_dir, hook_env)
        path.write_text("def second():\n    pass\n")
        await run_hook("edit", _write_edit(path, path.read_text(), "t2"), project_dir, hook_env)

        symbols = await MemoryReader(tmp_db).file_symbols("a.py")
        assert [s.name for s in symbols] == ["second"]

    async def test_concurrent_edits_commit_one_whole_version(self, tmp_db, hook_env, project_dir):
        versions = [f"def edit_{i}():\n    pass\n\nclass Mark{i}:\n    pass\n" for i in range(6)]
        await asyncio.gather(*[
            run_hook("edit", _write_edit(project_dir / "shared.py", v, f"t{i}"), project_dir, hook_env)
            for i, v in enumerate(versions)
        ])
        symbols = await MemoryReader(tmp_db).file_symbols("shared.py")
        names = {s.name for s in symbols}
        assert any(names == {f"edit_{i}", f"Mark{i}"} for i in range(len(versions)))
        assert len({s.content_hash for s in symbols}) == 1

    async def test_oversized_bash_output_is_stored_identically(self, tmp_db, hook_env, project_dir):
        raw = {"tool_name": "Bash", "tool_input": {"command": "cat huge.log"},
               "tool_response": {"stdout": "ΩΩ data " * 2000, "stderr": ""}}
        await run_hook("bash", {**raw, "session_id": "a"}, project_dir, hook_env)
        await run_hook("bash", {**raw, "session_id": "b"}, project_dir, hook_env)
        reader = MemoryReader(tmp_db)
        [a] = await reader.session_turns("a")
        [b] = await reader.session_turns("b")
        assert a.body.encode("utf-8") == b.body.encode("utf-8")
        assert a.payload == b.payload
        assert len(a.body.encode("utf-8")) <= 2048


class TestSessionEnd:
    async def test_pytest_prompt_becomes_convention(self, tmp_db, hook_env, project_dir):
        await run_hook("prompt", {"session_id": "s1", "prompt": "use pytest for testing"}, project_dir, hook_env)
        await run_hook("session-end", {"session_id": "s1"}, project_dir, hook_env)
        knowledge = await MemoryReader(tmp_db).list_knowledge()
        assert any(k.category.value == "convention" and "pytest" in k.text for k in knowledge)

    async def test_unreachable_model_falls_back_to_heuristics(self, tmp_db, hook_env, project_dir):
        prompts = ["use pytest for testing", "we should always use black", "store sessions in redis"]
        for text in prompts:
            await run_hook("prompt", {"session_id": "s1", "prompt": text}, project_dir, hook_env)
        config = MemoryConfig(
            llm=LLMSettings(provider="ollama", base_url="http://127.0.0.1:9/v1"),
            distill=DistillSettings(strategy="model", timeout_seconds=5),
        )

        started = time.monotonic()
        await run_hook("session-end", {"session_id": "s1"}, project_dir, hook_env, config=config)
        assert time.monotonic() - started < hooks.HOOK_TIMEOUTS["session-end"]

        reader = MemoryReader(tmp_db)
        stored = {(k.category, k.text) for k in await reader.list_knowledge()}
        expected = {(e.category, e.text) for e in HeuristicStrategy().extract(await reader.session_turns("s1"))}
        assert stored == expected
        assert stored


class TestPreCompactAndRestore:
    async def test_checkpoint_then_compact_restore(self, tmp_db, hook_env, project_dir):
        await run_hook("prompt", {"session_id": "s1", "prompt": "migrate to postgres"}, project_dir, hook_env)
        await run_hook("pre-compact", {"session_id": "s1"}, project_dir, hook_env)
        checkpoint = await MemoryReader(tmp_db).latest_checkpoint("s1")
        assert "migrate to postgres" in checkpoint.summary

        output = await run_hook("session-start", {"session_id": "s1", "source": "compact"}, project_dir, hook_env)
        context = _context(output)
        assert "## Session Checkpoint" in context
        assert "migrate to postgres" in context

    async def test_compact_budget_is_respected(self, hook_env, project_dir):
        for i in range(50):
            await run_hook("prompt", {"session_id": "s1", "prompt": f"step {i} " * 20}, project_dir, hook_env)
        config = MemoryConfig(compact_budget=500)
        output = await run_hook(
            "session-start", {"session_id": "s1", "source": "compact"}, project_dir, hook_env, config=config
        )
        assert len(_context(output).encode("utf-8")) <= 500


class TestSessionStart:
    async def test_first_start_indexes_project(self, tmp_db, hook_env, project_dir):
        (project_dir / "app.py").write_text("def main():\n    pass\n")
        output = await run_hook("session-start", {"session_id": "s1", "source": "startup"}, project_dir, hook_env)
        assert "## Project Structure (1 symbols across 1 files)" in _context(output)

    async def test_files_changed_between_sessions_are_caught_up(self, tmp_db, hook_env, project_dir):
        (project_dir / "app.py").write_text("def main():\n    pass\n")
        (project_dir / "old.py").write_text("class Legacy:\n    pass\n")
        await run_hook("session-start", {"session_id": "s1", "source": "startup"}, project_dir, hook_env)

        (project_dir / "app.py").write_text("def main():\n    pass\n\ndef serve():\n    pass\n")
        (project_dir / "old.py").unlink()
        output = await run_hook("session-start", {"session_id": "s2", "source": "startup"}, project_dir, hook_env)

        reader = MemoryReader(tmp_db)
        assert [s.name for s in await reader.file_symbols("app.py")] == ["main", "serve"]
        assert await reader.file_symbols("old.py") == []
        assert "## Project Structure (2 symbols across 1 files)" in _context(output)

    async def test_empty_project_prints_nothing(self, hook_env, project_dir):
        assert await run_hook("session-start", {"session_id": "s1"}, project_dir, hook_env) is None

    async def test_previous_session_summary_is_offered(self, hook_env, project_dir):
        await run_hook("prompt", {"session_id": "old", "prompt": "write the parser"}, project_dir, hook_env)
        await run_hook("session-end", {"session_id": "old"}, project_dir, hook_env)
        output = await run_hook("session-start", {"session_id": "new"}, project_dir, hook_env)
        assert "write the parser" in _context(output)


class TestFailOpen:
    async def test_timeout_returns_promptly(self, monkeypatch, hook_env, project_dir):
        async def slow(self, kind, raw):
            await asyncio.sleep(5)
            return "too late"

        monkeypatch.setattr(HookRunner, "handle", slow)
        monkeypatch.setitem(hooks.HOOK_TIMEOUTS, "prompt", 0.05)
        started = time.monotonic()
        assert await run_hook("prompt", {"prompt": "x"}, project_dir, hook_env) is None
        assert time.monotonic() - started < 1

    async def test_internal_error_is_swallowed(self, monkeypatch, hook_env, project_dir):
        async def broken(self, kind, raw):
            raise RuntimeError("boom")

        monkeypatch.setattr(HookRunner, "handle", broken)
        assert await run_hook("pre-compact", {}, project_dir, hook_env) is None

    async def test_non_dict_payload(self, hook_env, project_dir):
        assert await run_hook("prompt", ["not", "a", "dict"], project_dir, hook_env) is None

    def test_slow_model_does_not_outlive_precompact_budget(self, monkeypatch, tmp_db, hook_env, project_dir):
        asyncio.run(run_hook("prompt", {"session_id": "s1", "prompt": "ship the release"}, project_dir, hook_env))

        async def hang(**kwargs):
            await asyncio.sleep(8)

        slow = MagicMock()
        slow.messages.create = hang
        strategy = ExternalModelStrategy(LLMClient(LLMSettings(api_key="k"), async_client=slow))
        monkeypatch.setitem(hooks.HOOK_TIMEOUTS, "pre-compact", 1.0)

        started = time.monotonic()
        asyncio.run(run_hook("pre-compact", {"session_id": "s1"}, project_dir, hook_env, strategy=strategy))
        assert time.monotonic() - started < 3
        checkpoint = asyncio.run(MemoryReader(tmp_db).latest_checkpoint("s1"))
        assert "ship the release" in checkpoint.summary


@pytest.mark.parametrize("kind", HOOK_KINDS)
def test_every_kind_has_a_timeout(kind):
    assert 0 < hooks.HOOK_TIMEOUTS[kind] <= 30
