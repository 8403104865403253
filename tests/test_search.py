import pytest

from project_memory.models import DistilledKnowledge, KnowledgeCategory, NewTurn, Symbol, TurnKind
from project_memory.search import MemoryReader, escape_like, sanitize_fts_query
from project_memory.storage import StoreError


async def _add(store, body, kind=TurnKind.PROMPT, session="s1", file_path=None):
    return await store.append_turn(
        NewTurn(session_id=session, kind=kind, body=body, file_path=file_path, event_key=f"{session}:{body}")
    )


class TestSanitizeFtsQuery:
    def test_quotes_each_token(self):
        assert sanitize_fts_query("jwt auth") == '"jwt" "auth"'

    def test_strips_embedded_quotes(self):
        assert sanitize_fts_query('say "hi"') == '"say" "hi"'

    def test_operators_become_literals(self):
        assert sanitize_fts_query("a OR b*") == '"a" "OR" "b*"'

    def test_empty_query(self):
        assert sanitize_fts_query('   ""  ') == ""


class TestEscapeLike:
    def test_wildcards_and_escape_char(self):
        assert escape_like("a_b%c\\d") == "a\\_b\\%c\\\\d"

    def test_plain_text_unchanged(self):
        assert escape_like("login") == "login"


class TestSearchTurns:
    async def test_finds_matching_turns_with_snippet(self, store, reader):
        await _add(store, "add JWT authentication to the login endpoint")
        await _add(store, "rename the config loader")
        hits = await reader.search_turns("authentication")
        assert len(hits) == 1
        assert "[authentication]" in hits[0].snippet
        assert hits[0].relevance > 0
        assert hits[0].turn.seq == 1

    async def test_stemming_matches_word_forms(self, store, reader):
        await _add(store, "the parser crashed on empty input")
        assert len(await reader.search_turns("crash")) == 1

    async def test_all_tokens_must_match(self, store, reader):
        await _add(store, "redis cache layer")
        await _add(store, "redis cluster config")
        hits = await reader.search_turns("redis cache")
        assert [h.turn.body for h in hits] == ["redis cache layer"]

    async def test_syntax_characters_do_not_raise(self, store, reader):
        await _add(store, "fix (broken) quoting")
        assert await reader.search_turns('"unbalanced ( AND OR NEAR*') == []

    async def test_empty_query_returns_nothing(self, store, reader):
        await _add(store, "anything")
        assert await reader.search_turns("   ") == []

    async def test_filters_by_session_and_kind(self, store, reader):
        await _add(store, "deploy script", session="a")
        await _add(store, "$ ./deploy script", kind=TurnKind.BASH, session="b")
        assert [h.turn.session_id for h in await reader.search_turns("deploy", session_id="a")] == ["a"]
        assert [h.turn.kind for h in await reader.search_turns("deploy", kind=TurnKind.BASH)] == [TurnKind.BASH]


class TestSearchKnowledge:
    async def test_matches_text(self, store, reader):
        await store.add_knowledge([
            DistilledKnowledge(category=KnowledgeCategory.DECISION, subject="auth", text="Chose JWT tokens"),
            DistilledKnowledge(category=KnowledgeCategory.CONVENTION, text="Uses pytest for testing"),
        ])
        results = await reader.search_knowledge("pytest")
        assert [k.text for k in results] == ["Uses pytest for testing"]

    async def test_category_narrows_matches(self, store, reader):
        await store.add_knowledge([
            DistilledKnowledge(category=KnowledgeCategory.DECISION, text="Store sessions in redis"),
            DistilledKnowledge(category=KnowledgeCategory.BUGFIX, text="Fixed redis reconnect loop"),
        ])
        results = await reader.search_knowledge("redis", category=KnowledgeCategory.BUGFIX)
        assert [k.text for k in results] == ["Fixed redis reconnect loop"]


class TestTurnQueries:
    async def test_session_turns_after_seq_and_kinds(self, store, reader):
        await _add(store, "one")
        await _add(store, "Read file: a.py", kind=TurnKind.READ, file_path="a.py")
        await _add(store, "three")
        assert [t.seq for t in await reader.session_turns("s1", after_seq=1)] == [2, 3]
        assert [t.body for t in await reader.session_turns("s1", kinds=[TurnKind.PROMPT])] == ["one", "three"]

    async def test_active_files_most_recent_first(self, store, reader):
        await _add(store, "Read file: a.py", kind=TurnKind.READ, file_path="a.py")
        await _add(store, "Edit b.py", kind=TurnKind.EDIT, file_path="b.py")
        await _add(store, "Read file: a.py again", kind=TurnKind.READ, file_path="a.py")
        assert await reader.active_files("s1") == ["a.py", "b.py"]

    async def test_touched_files_counts(self, store, reader):
        await _add(store, "Read file: a.py", kind=TurnKind.READ, file_path="a.py", session="x")
        await _add(store, "Edit a.py", kind=TurnKind.EDIT, file_path="a.py", session="y")
        touched = await reader.touched_files()
        assert [(f.file_path, f.touches) for f in touched] == [("a.py", 2)]

    async def test_file_history_newest_first(self, store, reader):
        await _add(store, "Read file: a.py", kind=TurnKind.READ, file_path="a.py", session="x")
        await _add(store, "Edit b.py", kind=TurnKind.EDIT, file_path="b.py", session="x")
        await _add(store, "Edit a.py", kind=TurnKind.EDIT, file_path="a.py", session="y")
        history = await reader.file_history("a.py")
        assert [(t.session_id, t.body) for t in history] == [("y", "Edit a.py"), ("x", "Read file: a.py")]
        assert await reader.file_history("missing.py") == []

    async def test_last_checkpoint_seq_without_checkpoint(self, store, reader):
        await _add(store, "one")
        assert await reader.last_checkpoint_seq("s1") == 0
        assert await reader.latest_checkpoint("s1") is None

    async def test_recent_sessions_excludes_current(self, store, reader):
        await store.end_session("old", "old summary")
        await store.end_session("current", "current summary")
        sessions = await reader.recent_sessions(exclude="current")
        assert [s.id for s in sessions] == ["old"]


class TestSymbolQueries:
    async def test_list_symbols_filter_and_kind(self, store, reader):
        await store.replace_symbols("src/auth.py", "h", "python", [
            Symbol(file_path="src/auth.py", name="login", kind="function", start_line=1, end_line=3),
            Symbol(file_path="src/auth.py", name="Session", kind="class", start_line=5, end_line=9),
        ])
        await store.replace_symbols("src/db.py", "h2", "python", [
            Symbol(file_path="src/db.py", name="connect", kind="function", start_line=1, end_line=2),
        ])
        assert {s.name for s in await reader.list_symbols("auth")} == {"login", "Session"}
        assert [s.name for s in await reader.list_symbols("", kind="class")] == ["Session"]
        assert [s.name for s in await reader.list_symbols("conn")] == ["connect"]

    async def test_filter_wildcards_match_literally(self, store, reader):
        await store.replace_symbols("src/util.py", "h", "python", [
            Symbol(file_path="src/util.py", name="get_user", kind="function", start_line=1, end_line=2),
            Symbol(file_path="src/util.py", name="getuser", kind="function", start_line=3, end_line=4),
            Symbol(file_path="src/util.py", name="pct_100%", kind="const", start_line=5, end_line=5),
        ])
        assert [s.name for s in await reader.list_symbols("get_")] == ["get_user"]
        assert [s.name for s in await reader.list_symbols("%")] == ["pct_100%"]
        assert await reader.list_symbols("get%user") == []

    async def test_project_structure(self, store, reader):
        await store.replace_symbols("src/a.py", "h", "python", [
            Symbol(file_path="src/a.py", name="f", kind="function", start_line=1, end_line=1),
            Symbol(file_path="src/a.py", name="g", kind="function", start_line=2, end_line=2),
        ])
        await store.replace_symbols("main.py", "h2", "python", [
            Symbol(file_path="main.py", name="C", kind="class", start_line=1, end_line=1),
        ])
        structure = await reader.project_structure()
        assert structure.total_files == 2
        assert structure.total_symbols == 3
        assert structure.symbol_kinds == [("function", 2), ("class", 1)]
        assert set(structure.directories) == {("src", 1), (".", 1)}


class TestStatus:
    async def test_counts(self, store, reader):
        await _add(store, "hello")
        await store.replace_symbols("a.py", "h", "python", [
            Symbol(file_path="a.py", name="f", kind="function", start_line=1, end_line=1),
        ])
        report = await reader.status(enabled=False)
        assert report.enabled is False
        assert (report.sessions, report.turns, report.symbols, report.files) == (1, 1, 1, 1)
        assert report.symbols_by_kind == {"function": 1}
        assert [s.name for s in report.sample_symbols] == ["f"]

    async def test_missing_database_is_an_explicit_error(self, tmp_path):
        reader = MemoryReader(tmp_path / "missing.db")
        with pytest.raises(StoreError):
            await reader.status()
