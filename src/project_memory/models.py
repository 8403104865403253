from enum import Enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TurnKind(str, Enum):
    """Kinds of events recorded as turns."""

    PROMPT = "prompt"
    EDIT = "edit"
    READ = "read"
    BASH = "bash"
    CHECKPOINT = "checkpoint"


class KnowledgeCategory(str, Enum):
    """Categories of distilled, cross-session knowledge."""

    DECISION = "decision"
    CONVENTION = "convention"
    PREFERENCE = "preference"
    BUGFIX = "bugfix"


class KnowledgeSource(str, Enum):
    HEURISTIC = "heuristic"
    MODEL = "model"


class Turn(BaseModel):
    """One ingested event belonging to a session."""

    id: Optional[int] = None
    session_id: str
    seq: int = 0
    kind: TurnKind
    timestamp: datetime
    file_path: Optional[str] = None
    payload: str = ""
    body: str = ""


class NewTurn(BaseModel):
    """A turn as produced by the ingestor, before the store assigns id and seq."""

    session_id: str
    kind: TurnKind
    file_path: Optional[str] = None
    payload: str = ""
    body: str = ""
    event_key: str = ""
    host_event_id: Optional[str] = None
    timestamp: Optional[datetime] = None


class Symbol(BaseModel):
    """A named code element extracted from a file."""

    id: Optional[int] = None
    file_path: str
    name: str
    kind: str
    start_line: int
    end_line: int
    signature: Optional[str] = None
    doc_comment: Optional[str] = None
    parent_name: Optional[str] = None
    content_hash: str = ""


class KnowledgeEntry(BaseModel):
    """A distilled unit of durable knowledge."""

    id: Optional[int] = None
    category: KnowledgeCategory
    subject: str = ""
    text: str
    session_id: Optional[str] = None
    confidence: float = 1.0
    source: KnowledgeSource = KnowledgeSource.HEURISTIC
    created_at: Optional[datetime] = None


class DistilledKnowledge(BaseModel):
    """Output contract shared by all distillation strategies."""

    category: KnowledgeCategory
    subject: str = ""
    text: str
    confidence: float = 0.7
    source: KnowledgeSource = KnowledgeSource.HEURISTIC


class Checkpoint(BaseModel):
    """Point-in-time compact summary of a session's activity."""

    id: Optional[int] = None
    session_id: str
    created_at: datetime
    summary: str = ""
    active_files: list[str] = Field(default_factory=list)


class SearchHit(BaseModel):
    """A full-text match over turn bodies."""

    turn: Turn
    snippet: str = ""
    relevance: float = 0.0
    score: float = 0.0


class FileTouch(BaseModel):
    file_path: str
    last_touched: datetime
    touches: int = 1


class SessionSummary(BaseModel):
    id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    summary: Optional[str] = None


class ProjectStructure(BaseModel):
    total_files: int = 0
    total_symbols: int = 0
    symbol_kinds: list[tuple[str, int]] = Field(default_factory=list)
    directories: list[tuple[str, int]] = Field(default_factory=list)


class StatusReport(BaseModel):
    """Counts reported by the status interface."""

    enabled: bool = True
    db_path: str = ""
    sessions: int = 0
    turns: int = 0
    knowledge: int = 0
    symbols: int = 0
    files: int = 0
    symbols_by_kind: dict[str, int] = Field(default_factory=dict)
    sample_symbols: list[Symbol] = Field(default_factory=list)
