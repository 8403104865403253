from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sqlite3
import sys
from pathlib import Path

from .config import disable_flag_path, is_disabled, load_config, resolve_db_path
from .hooks import HOOK_KINDS, run_hook

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "PROJECT_MEMORY_LOG_LEVEL"


def configure_logging(env=None) -> None:
    env = os.environ if env is None else env
    level = getattr(logging, env.get(LOG_LEVEL_ENV, "WARNING").upper(), logging.WARNING)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="project-memory")
    parser.add_argument("--project-dir", dest="project_dir", default=None, help="Project root (default: cwd)")
    # Also accepted after the subcommand; SUPPRESS keeps an absent flag from
    # overwriting one given before it.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--project-dir", dest="project_dir", default=argparse.SUPPRESS, help="Project root (default: cwd)")
    sub = parser.add_subparsers(dest="command", required=True)

    # hook
    hook_p = sub.add_parser("hook", parents=[common], help="Handle one host hook event (JSON on stdin)")
    hook_p.add_argument("kind", help=f"One of: {', '.join(HOOK_KINDS)}")

    # status
    status_p = sub.add_parser("status", parents=[common], help="Show what has been recorded for this project")
    status_p.add_argument("--json", action="store_true", help="Print the raw status report")

    # serve
    sub.add_parser("serve", parents=[common], help="Run the MCP query server on stdio")

    # watch
    sub.add_parser("watch", parents=[common], help="Re-index source files as they change")

    # index
    sub.add_parser("index", parents=[common], help="Index every supported source file in the project")

    # disable / enable
    sub.add_parser("disable", parents=[common], help="Turn off all hooks")
    sub.add_parser("enable", parents=[common], help="Turn hooks back on")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for project-memory CLI."""
    configure_logging()
    args = build_parser().parse_args(argv)
    project_dir = str(Path(args.project_dir or os.getcwd()).resolve())

    if args.command == "hook":
        return _cmd_hook(args.kind, project_dir, sys.stdin.read())
    if args.command == "serve":
        from .server import create_mcp_server
        create_mcp_server(project_dir).run()
        return 0
    if args.command == "watch":
        return _cmd_watch(project_dir)
    if args.command == "disable":
        return _cmd_disable()
    if args.command == "enable":
        return _cmd_enable()
    if args.command == "status":
        return asyncio.run(_cmd_status(project_dir, as_json=args.json))
    if args.command == "index":
        return asyncio.run(_cmd_index(project_dir))
    return 2


def _cmd_hook(kind: str, project_dir: str, stdin_text: str) -> int:
    """Always returns 0: a hook must never fail the host."""
    try:
        raw = json.loads(stdin_text) if stdin_text.strip() else {}
    except json.JSONDecodeError as e:
        logger.warning("Ignoring %s hook with malformed JSON: %s", kind, e)
        return 0
    if not isinstance(raw, dict):
        logger.warning("Ignoring %s hook: payload is not a JSON object", kind)
        return 0
    cwd = raw.get("cwd") if isinstance(raw.get("cwd"), str) else None
    output = asyncio.run(run_hook(kind, raw, project_dir=cwd or project_dir))
    if output:
        sys.stdout.write(output)
        sys.stdout.flush()
    return 0


async def _cmd_status(project_dir: str, as_json: bool = False) -> int:
    from .search import MemoryReader
    from .storage import StoreError

    db_path = resolve_db_path(project_dir, load_config(project_dir))
    try:
        report = await MemoryReader(db_path).status(enabled=not is_disabled())
    except (StoreError, OSError) as e:
        print(f"Cannot read memory store: {e}", file=sys.stderr)
        return 1
    except sqlite3.Error as e:
        print(f"Cannot read memory store at {db_path}: {e}", file=sys.stderr)
        return 1
    if as_json:
        print(report.model_dump_json(indent=2))
        return 0
    print(f"project-memory: {'enabled' if report.enabled else 'DISABLED'}")
    print(f"  database:  {report.db_path}")
    print(f"  sessions:  {report.sessions}")
    print(f"  turns:     {report.turns}")
    print(f"  knowledge: {report.knowledge}")
    print(f"  symbols:   {report.symbols} in {report.files} files")
    for kind, count in report.symbols_by_kind.items():
        print(f"    {kind}: {count}")
    if report.sample_symbols:
        print("  sample:")
        for s in report.sample_symbols:
            print(f"    {s.kind} {s.name} ({s.file_path}:{s.start_line})")
    return 0


async def _cmd_index(project_dir: str) -> int:
    from .server import create_app
    from .indexer import SymbolIndexer

    app = await create_app(project_dir=project_dir)
    stats = await SymbolIndexer(app.store, project_dir).index_project()
    print(
        f"Indexed {stats.files_indexed} files ({stats.symbols} symbols), "
        f"{stats.files_unchanged} unchanged.",
        file=sys.stderr,
    )
    return 0


def _cmd_watch(project_dir: str) -> int:
    import time

    from .indexer import SymbolIndexer
    from .server import create_app
    from .watcher import FileWatcher

    app = asyncio.run(create_app(project_dir=project_dir))
    watcher = FileWatcher(project_dir, SymbolIndexer(app.store, project_dir))
    watcher.start()
    print(f"Watching {project_dir} (Ctrl-C to stop)", file=sys.stderr)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
    print(f"Re-indexed {watcher.processed} files.", file=sys.stderr)
    return 0


def _cmd_disable() -> int:
    flag = disable_flag_path()
    flag.parent.mkdir(parents=True, exist_ok=True)
    flag.touch()
    print(f"project-memory disabled ({flag}).", file=sys.stderr)
    return 0


def _cmd_enable() -> int:
    flag = disable_flag_path()
    if flag.exists():
        flag.unlink()
        print("project-memory enabled.", file=sys.stderr)
    else:
        print("project-memory is already enabled.", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
