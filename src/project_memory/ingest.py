from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from .indexer import StagedIndex, SymbolIndexer
from .models import NewTurn, Turn, TurnKind
from .storage import MemoryStore

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 2048
PREVIEW_CHARS = 500
TRUNCATION_MARKER = "\n...[truncated]"
DEFAULT_SESSION = "default"


class MalformedPayload(ValueError):
    """A hook payload is missing required fields or is not an object."""


def truncate_utf8(text: str, limit: int = MAX_PAYLOAD_BYTES, marker: str = TRUNCATION_MARKER) -> str:
    """Cut ``text`` to at most ``limit`` UTF-8 bytes on a character boundary.

    Text that already fits is returned unchanged, so truncating twice is the
    same as truncating once.
    """
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    marker_bytes = len(marker.encode("utf-8"))
    if marker_bytes >= limit:
        return data[:limit].decode("utf-8", errors="ignore")
    head = data[: limit - marker_bytes].decode("utf-8", errors="ignore")
    return head + marker


def _preview(text: str, max_chars: int = PREVIEW_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "...[truncated]"


class PromptPayload(BaseModel):
    text: str


class EditPayload(BaseModel):
    path: str
    old_content: str = ""
    new_content: str = ""
    description: str = ""


class ReadPayload(BaseModel):
    path: str


class BashPayload(BaseModel):
    command: str
    output: str = ""


class HookEnvelope(BaseModel):
    """Fields common to every hook invocation; everything else is kept as extra."""

    model_config = ConfigDict(extra="allow")

    session_id: str | None = None
    cwd: str | None = None
    source: str | None = None
    transcript_path: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_response: Any = None
    tool_use_id: str | None = None
    timestamp: str | int | float | None = None


def _response_text(response: Any) -> str:
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        parts = [response.get("stdout") or "", response.get("stderr") or ""]
        text = "\n".join(p for p in parts if p)
        if text or "stdout" in response or "stderr" in response:
            return text
        if "output" in response:
            return str(response["output"])
    return json.dumps(response, sort_keys=True, ensure_ascii=False)


def normalize_payload(kind: TurnKind, raw: dict[str, Any]) -> BaseModel:
    """Accept either the normalized shape or the host's native hook JSON."""
    if not isinstance(raw, dict):
        raise MalformedPayload(f"{kind.value} payload must be a JSON object")
    tool_input = raw.get("tool_input") if isinstance(raw.get("tool_input"), dict) else {}
    try:
        if kind == TurnKind.PROMPT:
            text = raw.get("text") if raw.get("text") is not None else raw.get("prompt")
            payload = PromptPayload(text=text)
            if not payload.text.strip():
                raise MalformedPayload("prompt text is empty")
            return payload
        if kind == TurnKind.EDIT:
            if "path" in raw:
                return EditPayload.model_validate(raw)
            tool = raw.get("tool_name") or "Edit"
            path = tool_input.get("file_path") or tool_input.get("notebook_path")
            if tool == "MultiEdit":
                edits = tool_input.get("edits") or []
                old = "\n".join(e.get("old_string", "") for e in edits)
                new = "\n".join(e.get("new_string", "") for e in edits)
            elif tool == "Write":
                old, new = "", tool_input.get("content", "")
            else:
                old = tool_input.get("old_string", "")
                new = tool_input.get("new_string", tool_input.get("new_source", ""))
            return EditPayload(
                path=path,
                old_content=old,
                new_content=new,
                description=tool_input.get("description") or tool,
            )
        if kind == TurnKind.READ:
            return ReadPayload(path=raw.get("path") or tool_input.get("file_path") or tool_input.get("notebook_path"))
        if kind == TurnKind.BASH:
            if "command" in raw:
                return BashPayload(command=raw["command"], output=_response_text(raw.get("output")))
            return BashPayload(
                command=tool_input.get("command"),
                output=_response_text(raw.get("tool_response")),
            )
    except ValidationError as exc:
        raise MalformedPayload(f"invalid {kind.value} payload: {exc.errors()[0]['msg']}") from exc
    raise MalformedPayload(f"turn kind {kind.value} is not ingested from hooks")


def render_body(kind: TurnKind, payload: BaseModel, file_path: str | None) -> str:
    if kind == TurnKind.PROMPT:
        body = payload.text
    elif kind == TurnKind.EDIT:
        header = f"Edit {file_path}"
        if payload.description:
            header += f": {payload.description}"
        body = f"{header}\n- {_preview(payload.old_content)}\n+ {_preview(payload.new_content)}"
    elif kind == TurnKind.READ:
        body = f"Read file: {file_path}"
    else:
        body = f"$ {payload.command}\n{payload.output}"
    return truncate_utf8(body)


def event_key(session_id: str, kind: TurnKind, file_path: str | None, body: str, host_event_id: str | None) -> str:
    parts = [session_id, kind.value, file_path or "", body, host_event_id or ""]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def timestamp_event_id(timestamp: str | int | float, kind: TurnKind, file_path: str | None, body: str) -> str:
    """Host id for events that carry only a timestamp.

    Timestamps repeat within a session, so the id is qualified by kind, path
    and body; only a redelivery of the same event reproduces it.
    """
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()[:16]
    return f"ts:{timestamp}:{kind.value}:{file_path or ''}:{digest}"


class EventIngestor:
    """Turns hook payloads into Turn writes, re-indexing edited files.

    Delivery is treated as at-least-once: each event gets a deterministic key
    and the store drops redeliveries.
    """

    def __init__(
        self,
        store: MemoryStore,
        indexer: SymbolIndexer | None = None,
        project_dir: str | Path | None = None,
    ):
        self.store = store
        self.indexer = indexer
        self.project_dir = str(project_dir) if project_dir else ""

    def build_turn(self, kind: TurnKind | str, raw: dict[str, Any], session_id: str | None = None) -> NewTurn:
        kind = TurnKind(kind)
        payload = normalize_payload(kind, raw)
        try:
            envelope = HookEnvelope.model_validate(raw)
        except ValidationError as exc:
            raise MalformedPayload(f"invalid hook envelope: {exc.errors()[0]['msg']}") from exc

        file_path = None
        if isinstance(payload, (EditPayload, ReadPayload)):
            file_path = self.indexer.relative_path(payload.path) if self.indexer else payload.path
        if isinstance(payload, BashPayload):
            payload = BashPayload(command=payload.command, output=truncate_utf8(payload.output))
        if isinstance(payload, EditPayload):
            payload = EditPayload(
                path=payload.path,
                old_content=_preview(payload.old_content),
                new_content=_preview(payload.new_content),
                description=payload.description,
            )

        body = render_body(kind, payload, file_path)
        sid = envelope.session_id or session_id or DEFAULT_SESSION
        host_id = envelope.tool_use_id
        if host_id is None and envelope.timestamp is not None:
            host_id = timestamp_event_id(envelope.timestamp, kind, file_path, body)
        return NewTurn(
            session_id=sid,
            kind=kind,
            file_path=file_path,
            payload=truncate_utf8(json.dumps(payload.model_dump(), sort_keys=True, ensure_ascii=False)),
            body=body,
            event_key=event_key(sid, kind, file_path, body, host_id),
            host_event_id=host_id,
        )

    async def _stage_edit(self, raw_path: str, new_content: str) -> StagedIndex | None:
        if self.indexer is None:
            return None
        path = Path(raw_path)
        if not path.is_absolute() and self.indexer.root is not None:
            path = self.indexer.root / path
        # The edited file on disk is authoritative; the payload only carries
        # the whole file when it was written from scratch.
        content = None if path.exists() else new_content
        return await asyncio.to_thread(self.indexer.stage, path, content)

    async def ingest(self, kind: TurnKind | str, raw: dict[str, Any], session_id: str | None = None) -> Turn | None:
        """Record one event. Returns the stored Turn, or None for a redelivery."""
        new = self.build_turn(kind, raw, session_id)

        staged = None
        if new.kind == TurnKind.EDIT:
            edit = normalize_payload(TurnKind.EDIT, raw)
            staged = await self._stage_edit(edit.path, edit.new_content)

        turn = await self.store.append_turn(new, self.project_dir or (raw.get("cwd") or ""))
        if staged is not None:
            current = await self.store.indexed_hash(staged.file_path)
            if staged.deleted or current != staged.content_hash:
                count = await self.indexer.apply(staged)
                logger.debug("Re-indexed %s: %d symbols", staged.file_path, count)
        return turn

    async def ingest_safe(self, kind: TurnKind | str, raw: dict[str, Any], session_id: str | None = None) -> Turn | None:
        """Like ``ingest`` but never raises; failures are logged and dropped."""
        try:
            return await self.ingest(kind, raw, session_id)
        except MalformedPayload as e:
            logger.warning("Dropped malformed %s payload: %s", kind, e)
        except Exception as e:
            logger.warning("Failed to ingest %s event: %s", kind, e)
        return None
