import asyncio
import hashlib
import logging
import os
import time
from pathlib import Path

from pydantic import BaseModel, Field
from tree_sitter import QueryCursor

from .languages import UNSUPPORTED, LanguageSpec, get_parser, get_query, language_for_path
from .models import Symbol
from .storage import MemoryStore

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset({
    ".git",
    ".hg",
    ".svn",
    ".claude",
    "node_modules",
    "target",
    "dist",
    "build",
    "__pycache__",
    "vendor",
    ".venv",
    "venv",
    ".mypy_cache",
    ".pytest_cache",
    ".tox",
})

MAX_FILE_BYTES = 1_000_000
MAX_SIGNATURE_CHARS = 200
MAX_DOC_CHARS = 500

CLASS_CONTAINERS = frozenset({
    "class_definition",
    "class_declaration",
    "abstract_class_declaration",
    "class_specifier",
    "struct_specifier",
    "impl_item",
    "trait_item",
    "interface_declaration",
    "class",
})
SCOPE_CONTAINERS = CLASS_CONTAINERS | {"mod_item", "namespace_definition", "module"}
COMMENT_NODES = frozenset({"comment", "line_comment", "block_comment"})


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def should_skip_dir(name: str) -> bool:
    return name in SKIP_DIRS or (name.startswith(".") and name not in (".", ".."))


def parse_symbols(path: str, content: bytes | str) -> list[Symbol]:
    """Extract symbols from ``content``. Never raises; failures yield ``[]``."""
    spec = language_for_path(path)
    if not spec.supported:
        return []
    source = content.encode("utf-8") if isinstance(content, str) else content
    try:
        return _extract(spec, path, source)
    except Exception:
        logger.debug("Symbol extraction failed for %s", path, exc_info=True)
        return []


def _extract(spec: LanguageSpec, path: str, source: bytes) -> list[Symbol]:
    tree = get_parser(spec).parse(source)

    digest = content_hash(source)
    seen: set[tuple[str, str, int]] = set()
    symbols: list[Symbol] = []
    for _pattern, captures in QueryCursor(get_query(spec)).matches(tree.root_node):
        name_nodes = captures.get("name") or []
        kind, def_nodes = next(((k, v) for k, v in captures.items() if k != "name"), (None, []))
        if not name_nodes or kind is None or not def_nodes:
            continue
        name = _text(name_nodes[0]).strip()
        node = def_nodes[0]
        if not name:
            continue
        parent = _parent_name(node)
        if kind == "function" and parent and _inside_class(node):
            kind = "method"
        key = (name, kind, node.start_point[0])
        if key in seen:
            continue
        seen.add(key)
        symbols.append(
            Symbol(
                file_path=path,
                name=name,
                kind=kind,
                start_line=node.start_point[0] + 1,
                end_line=node.end_point[0] + 1,
                signature=_signature(node),
                doc_comment=_doc_comment(node),
                parent_name=parent,
                content_hash=digest,
            )
        )
    symbols.sort(key=lambda s: (s.start_line, s.name, s.kind))
    return symbols


def _text(node) -> str:
    return (node.text or b"").decode("utf-8", errors="replace")


def _signature(node) -> str | None:
    text = _text(node)
    cut = [i for i in (text.find("{"), text.find("\n")) if i >= 0]
    sig = (text[: min(cut)] if cut else text).strip()
    if not sig:
        return None
    return sig if len(sig) <= MAX_SIGNATURE_CHARS else sig[:MAX_SIGNATURE_CHARS] + "..."


def _doc_comment(node) -> str | None:
    doc = _python_docstring(node)
    if doc is None:
        lines = []
        prev = node.prev_sibling
        while prev is not None and prev.type in COMMENT_NODES:
            lines.append(_text(prev).strip())
            prev = prev.prev_sibling
        doc = "\n".join(reversed(lines)) if lines else None
    if not doc:
        return None
    return doc if len(doc) <= MAX_DOC_CHARS else doc[:MAX_DOC_CHARS] + "..."


def _python_docstring(node) -> str | None:
    if node.type not in ("function_definition", "class_definition"):
        return None
    body = node.child_by_field_name("body")
    if body is None or body.named_child_count == 0:
        return None
    first = body.named_children[0]
    if first.type != "expression_statement" or first.named_child_count == 0:
        return None
    literal = first.named_children[0]
    if literal.type != "string":
        return None
    return _text(literal).strip("\"' \n")


def _parent_name(node) -> str | None:
    parent = node.parent
    while parent is not None:
        if parent.type in SCOPE_CONTAINERS:
            name_node = parent.child_by_field_name("name") or parent.child_by_field_name("type")
            if name_node is not None:
                return _text(name_node)
        parent = parent.parent
    return None


def _inside_class(node) -> bool:
    parent = node.parent
    while parent is not None:
        if parent.type in CLASS_CONTAINERS:
            return True
        if parent.type in ("function_definition", "function_declaration", "function_item"):
            return False
        parent = parent.parent
    return False


class StagedIndex(BaseModel):
    """Parsed result for one file, ready to be written in a single transaction."""

    file_path: str
    content_hash: str = ""
    language: str = ""
    symbols: list[Symbol] = Field(default_factory=list)
    deleted: bool = False


class IndexStats(BaseModel):
    files_seen: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    symbols: int = 0
    deadline_reached: bool = False


class SymbolIndexer:
    """Per-file incremental symbol indexing against a MemoryStore.

    Paths under ``root`` are stored relative to it (POSIX separators) so edit
    hooks and the watcher agree on a file's identity.
    """

    def __init__(self, store: MemoryStore, root: str | Path | None = None):
        self.store = store
        self.root = Path(root).resolve() if root else None

    def relative_path(self, path: str | Path) -> str:
        p = Path(path)
        if self.root is not None:
            if not p.is_absolute():
                p = self.root / p
            try:
                return p.resolve().relative_to(self.root).as_posix()
            except ValueError:
                pass
        return p.as_posix()

    def _absolute(self, rel: str) -> Path:
        p = Path(rel)
        if not p.is_absolute() and self.root is not None:
            p = self.root / p
        return p

    def stage(self, path: str | Path, content: bytes | str | None = None) -> StagedIndex | None:
        """Read and parse a file outside any transaction.

        Returns None for unsupported languages. A missing file with no
        supplied content stages a deletion.
        """
        rel = self.relative_path(path)
        spec = language_for_path(rel)
        if spec is UNSUPPORTED or not spec.supported:
            return None
        if content is None:
            abs_path = self._absolute(rel)
            try:
                if abs_path.stat().st_size > MAX_FILE_BYTES:
                    logger.debug("Skipping oversized file %s", rel)
                    return None
                content = abs_path.read_bytes()
            except FileNotFoundError:
                return StagedIndex(file_path=rel, deleted=True)
            except OSError as exc:
                logger.warning("Could not read %s: %s", rel, exc)
                return None
        source = content.encode("utf-8") if isinstance(content, str) else content
        return StagedIndex(
            file_path=rel,
            content_hash=content_hash(source),
            language=spec.name,
            symbols=parse_symbols(rel, source),
        )

    async def apply(self, staged: StagedIndex) -> int:
        if staged.deleted:
            await self.store.remove_file_symbols(staged.file_path)
            return 0
        return await self.store.replace_symbols(
            staged.file_path, staged.content_hash, staged.language, staged.symbols
        )

    async def reindex_file(self, path: str | Path, content: bytes | str | None = None) -> int | None:
        """Re-index one file. Returns the symbol count, or None if skipped or unchanged."""
        staged = await asyncio.to_thread(self.stage, path, content)
        if staged is None:
            return None
        if not staged.deleted and await self.store.indexed_hash(staged.file_path) == staged.content_hash:
            return None
        return await self.apply(staged)

    async def remove_file(self, path: str | Path) -> int:
        return await self.store.remove_file_symbols(self.relative_path(path))

    async def index_project(self, root: str | Path | None = None, deadline: float | None = None) -> IndexStats:
        """Walk the tree and index every supported file whose hash changed.

        Also serves as the startup catch-up: files edited while no hook or
        watcher was running are re-parsed, and deleted files are dropped.

        ``deadline`` is a ``time.monotonic()`` value; the walk stops cleanly
        between files once it passes.
        """
        base = Path(root).resolve() if root else self.root
        if base is None:
            raise ValueError("index_project needs a root directory")
        stats = IndexStats()
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if not should_skip_dir(d))
            for filename in sorted(filenames):
                if deadline is not None and time.monotonic() >= deadline:
                    stats.deadline_reached = True
                    logger.info("Project index stopped at deadline after %d files", stats.files_seen)
                    return stats
                path = Path(dirpath) / filename
                if not language_for_path(filename).supported:
                    continue
                stats.files_seen += 1
                count = await self.reindex_file(path)
                if count is None:
                    stats.files_unchanged += 1
                else:
                    stats.files_indexed += 1
                    stats.symbols += count
        # Only a completed walk may prune files deleted since they were indexed.
        if deadline is not None and time.monotonic() >= deadline:
            stats.deadline_reached = True
            return stats
        for rel in await self.store.indexed_paths():
            if not self._absolute(rel).exists():
                await self.store.remove_file_symbols(rel)
                stats.files_removed += 1
        return stats
