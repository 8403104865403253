"""Scoring and budgeted selection of turns for context injection.

A turn's score combines a fixed weight for its kind, an exponential recency
decay measured from a recency anchor, and a boost for touching files that are
active in the session. Ordering is fully deterministic: ties fall back to the
turn sequence (newest first) and then to the row id.
"""

import math
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from .ingest import truncate_utf8
from .models import SearchHit, Turn, TurnKind

TYPE_WEIGHTS: dict[TurnKind, float] = {
    TurnKind.CHECKPOINT: 1.4,
    TurnKind.PROMPT: 1.3,
    TurnKind.EDIT: 1.2,
    TurnKind.READ: 0.5,
    TurnKind.BASH: 0.3,
}
DEFAULT_TYPE_WEIGHT = 0.5

RECENCY_SCALE_HOURS = 24.0
RECENCY_FLOOR = 0.1
AFFINITY_STEP = 0.5
MAX_ENTRY_CHARS = 800
MIN_PARTIAL_BYTES = 50

LABELS = {
    TurnKind.PROMPT: "User",
    TurnKind.EDIT: "Edit",
    TurnKind.READ: "Read",
    TurnKind.BASH: "Cmd",
    TurnKind.CHECKPOINT: "Checkpoint",
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class RankingWeights(BaseModel):
    """How the three factors combine.

    In ``product`` mode each weight is an exponent on its factor, so the
    defaults give the plain product. In ``sum`` mode the factors are added
    with the weights as coefficients.
    """

    mode: Literal["product", "sum"] = "product"
    type: float = 1.0
    recency: float = 1.0
    affinity: float = 1.0


class RankingRequest(BaseModel):
    budget: int
    session_id: str | None = None
    anchor: datetime | None = None
    active_files: list[str] = Field(default_factory=list)
    weights: RankingWeights = Field(default_factory=RankingWeights)


class ScoredTurn(BaseModel):
    turn: Turn
    score: float


def type_weight(kind: TurnKind | str) -> float:
    try:
        return TYPE_WEIGHTS.get(TurnKind(kind), DEFAULT_TYPE_WEIGHT)
    except ValueError:
        return DEFAULT_TYPE_WEIGHT


def recency_boost(age_hours: float) -> float:
    """Exponential decay with a 24h scale, floored at 0.1."""
    return max(math.exp(-max(age_hours, 0.0) / RECENCY_SCALE_HOURS), RECENCY_FLOOR)


def file_affinity(file_path: str | None, active_files: list[str]) -> float:
    if not file_path or not active_files:
        return 1.0
    matches = sum(1 for f in active_files if f == file_path)
    return 1.0 + AFFINITY_STEP * matches


def length_bonus(body: str) -> float:
    bonus = 1.0
    if len(body) > 100:
        bonus *= 1.1
    if len(body) > 500:
        bonus *= 1.1
    return bonus


def _utc(ts: datetime) -> datetime:
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (_utc(later) - _utc(earlier)).total_seconds() / 3600.0


def resolve_anchor(turns: list[Turn], anchor: datetime | None = None) -> datetime:
    """The recency anchor: explicit, else the newest candidate, never the wall clock."""
    if anchor is not None:
        return _utc(anchor)
    if not turns:
        return _EPOCH
    return max(_utc(t.timestamp) for t in turns)


def composite_score(
    turn: Turn,
    anchor: datetime,
    active_files: list[str],
    weights: RankingWeights | None = None,
) -> float:
    weights = weights or RankingWeights()
    t = type_weight(turn.kind)
    r = recency_boost(hours_between(turn.timestamp, anchor))
    a = file_affinity(turn.file_path, active_files)
    if weights.mode == "sum":
        base = weights.type * t + weights.recency * r + weights.affinity * a
    else:
        base = (t ** weights.type) * (r ** weights.recency) * (a ** weights.affinity)
    return base * length_bonus(turn.body)


def _order_key(score: float, turn: Turn) -> tuple:
    return (-score, -turn.seq, -(turn.id or 0), turn.session_id)


def rank_turns(turns: list[Turn], request: RankingRequest) -> list[ScoredTurn]:
    anchor = resolve_anchor(turns, request.anchor)
    scored = [
        ScoredTurn(turn=t, score=composite_score(t, anchor, request.active_files, request.weights))
        for t in turns
    ]
    scored.sort(key=lambda s: _order_key(s.score, s.turn))
    return scored


def rank_search_hits(hits: list[SearchHit], request: RankingRequest) -> list[SearchHit]:
    """Order full-text hits by term relevance times the composite score."""
    anchor = resolve_anchor([h.turn for h in hits], request.anchor)
    ranked = []
    for hit in hits:
        composite = composite_score(hit.turn, anchor, request.active_files, request.weights)
        ranked.append(hit.model_copy(update={"score": max(hit.relevance, 1e-6) * composite}))
    ranked.sort(key=lambda h: _order_key(h.score, h.turn))
    return ranked


def format_turn(turn: Turn) -> str:
    label = LABELS.get(turn.kind, turn.kind.value)
    files = f" [{turn.file_path}]" if turn.file_path else ""
    content = turn.body
    if len(content) > MAX_ENTRY_CHARS:
        content = content[:MAX_ENTRY_CHARS] + "..."
    return f"- **{label}**{files}: {content}\n"


def select_within_budget(scored: list[ScoredTurn], budget: int) -> str:
    """Greedily take the best turns until ``budget`` UTF-8 bytes are used.

    The first entry that does not fit is truncated into the remaining space
    (when enough is left to be useful) and selection stops there.
    """
    parts: list[str] = []
    used = 0
    for item in scored:
        entry = format_turn(item.turn)
        size = len(entry.encode("utf-8"))
        if used + size <= budget:
            parts.append(entry)
            used += size
            continue
        remaining = budget - used
        if remaining > MIN_PARTIAL_BYTES:
            parts.append(truncate_utf8(entry, remaining, marker="...\n"))
        break
    return "".join(parts)
