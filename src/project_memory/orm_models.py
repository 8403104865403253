from __future__ import annotations

from peewee import (
    AutoField,
    CharField,
    FloatField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

# Bounded lock wait: a hook that cannot get the write lock within this window
# gives up with StoreBusy instead of hanging the host.
DEFAULT_BUSY_TIMEOUT_MS = 1500


def _pragmas(busy_timeout_ms: int) -> dict:
    return {
        "foreign_keys": 1,
        "journal_mode": "wal",
        "synchronous": "normal",
        "busy_timeout": busy_timeout_ms,
    }


database = SqliteDatabase(None, pragmas=_pragmas(DEFAULT_BUSY_TIMEOUT_MS))


class BaseModel(Model):
    class Meta:
        database = database


class SessionModel(BaseModel):
    id = CharField(primary_key=True)
    project_dir = TextField(default="")
    started_at = CharField()
    ended_at = CharField(null=True)
    summary = TextField(null=True)

    class Meta:
        table_name = "sessions"


class TurnModel(BaseModel):
    id = AutoField()
    session = ForeignKeyField(SessionModel, column_name="session_id", backref="turns", on_delete="CASCADE")
    seq = IntegerField()
    kind = CharField(index=True)
    timestamp = CharField()
    file_path = TextField(null=True, index=True)
    payload = TextField(default="")
    body = TextField(default="")
    event_key = CharField(default="")
    host_event_id = CharField(null=True)

    class Meta:
        table_name = "turns"
        indexes = (
            (("session", "seq"), True),
            (("session", "event_key"), False),
        )


class SymbolModel(BaseModel):
    id = AutoField()
    file_path = TextField(index=True)
    name = TextField(index=True)
    kind = CharField(index=True)
    start_line = IntegerField()
    end_line = IntegerField()
    signature = TextField(null=True)
    doc_comment = TextField(null=True)
    parent_name = TextField(null=True)
    content_hash = CharField()

    class Meta:
        table_name = "symbols"


class IndexedFileModel(BaseModel):
    file_path = TextField(primary_key=True)
    content_hash = CharField()
    language = CharField(default="")
    symbol_count = IntegerField(default=0)
    indexed_at = CharField()

    class Meta:
        table_name = "indexed_files"


class KnowledgeModel(BaseModel):
    id = AutoField()
    category = CharField(index=True)
    subject = TextField(default="")
    text = TextField()
    session = ForeignKeyField(SessionModel, column_name="session_id", null=True, on_delete="SET NULL")
    confidence = FloatField(default=1.0)
    source = CharField(default="heuristic")
    created_at = CharField()

    class Meta:
        table_name = "knowledge"
        indexes = ((("category", "text"), True),)


class CheckpointModel(BaseModel):
    id = AutoField()
    session = ForeignKeyField(SessionModel, column_name="session_id", backref="checkpoints", on_delete="CASCADE")
    created_at = CharField()
    summary = TextField(default="")
    active_files = TextField(default="[]")

    class Meta:
        table_name = "checkpoints"


class SchemaVersionModel(BaseModel):
    version = IntegerField(primary_key=True)
    applied_at = CharField()
    description = TextField()

    class Meta:
        table_name = "schema_versions"


ALL_MODELS: list[type[Model]] = [
    SessionModel,
    TurnModel,
    SymbolModel,
    IndexedFileModel,
    KnowledgeModel,
    CheckpointModel,
    SchemaVersionModel,
]

# Full-text projections, kept in sync by triggers so no index entry can
# outlive its row.
FTS_SCHEMA = """\
CREATE UNIQUE INDEX IF NOT EXISTS idx_turns_host_event
    ON turns(session_id, host_event_id) WHERE host_event_id IS NOT NULL;

CREATE VIRTUAL TABLE IF NOT EXISTS turns_fts USING fts5(
    body, tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS turns_ai AFTER INSERT ON turns BEGIN
    INSERT INTO turns_fts(rowid, body) VALUES (new.id, new.body);
END;

CREATE TRIGGER IF NOT EXISTS turns_au AFTER UPDATE OF body ON turns BEGIN
    UPDATE turns_fts SET body = new.body WHERE rowid = new.id;
END;

CREATE TRIGGER IF NOT EXISTS turns_ad AFTER DELETE ON turns BEGIN
    DELETE FROM turns_fts WHERE rowid = old.id;
END;

CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_fts USING fts5(
    subject, text, tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS knowledge_ai AFTER INSERT ON knowledge BEGIN
    INSERT INTO knowledge_fts(rowid, subject, text) VALUES (new.id, new.subject, new.text);
END;

CREATE TRIGGER IF NOT EXISTS knowledge_ad AFTER DELETE ON knowledge BEGIN
    DELETE FROM knowledge_fts WHERE rowid = old.id;
END;
"""


_bound_target: tuple[str, int] | None = None


def init_memory_database(db_path: str, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
    global _bound_target
    # Re-initialising drops this thread's open connection, so only do it when
    # the target actually changes.
    if _bound_target == (db_path, busy_timeout_ms):
        return
    database.init(db_path, pragmas=_pragmas(busy_timeout_ms), timeout=busy_timeout_ms / 1000)
    database.bind(ALL_MODELS)
    _bound_target = (db_path, busy_timeout_ms)
