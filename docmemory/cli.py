"""
docmemory CLI — Operator Commands for a Memory Directory

Commands:
    docmemory init    [PATH] [--force]             — scaffold directory + config.json
    docmemory remember TYPE [--data JSON]          — append a record (stdin if no --data)
    docmemory show    <id>                         — display a single record
    docmemory search  [QUERY] [--type T] [--tag T] — search records
    docmemory forget  <id>                         — tombstone a record
    docmemory stats                                — store, graph and maintenance metrics
    docmemory build-graph [--no-save]              — derive the knowledge graph from records
    docmemory verify                               — record store + graph integrity checks
    docmemory prune   [--dry-run]                  — run the maintenance pipeline once
    docmemory export  [-o FILE]                    — graph export (JSON) → stdout or file
    docmemory restore {entities|relationships}     — restore a graph table from backup
    docmemory schedule "CRON" [--foreground]       — validate / run automatic pruning

Environment variables:
    DOCMEMORY_DIR     Storage directory (default: .docmemory)
    DOCMEMORY_CONFIG  Path to config.json (default: <dir>/config.json if present)

Precedence (invariant):
    CLI --flag  >  DOCMEMORY_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, invalid input, integrity failure, busy engine)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import warnings
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

from docmemory.errors import (
    DocMemoryError,
    IntegrityWarning,
    MaintenanceBusyError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_DEFAULT_DIR = ".docmemory"
_CONFIG_NAME = "config.json"


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_dir(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve storage directory: CLI --dir > DOCMEMORY_DIR > .docmemory."""
    if args and getattr(args, "dir", None):
        return args.dir
    return _env_str("DOCMEMORY_DIR", _DEFAULT_DIR)


def _resolve_config(args: Optional[argparse.Namespace], storage_dir: str) -> Optional[str]:
    """Resolve config path: CLI --config > DOCMEMORY_CONFIG > <dir>/config.json."""
    if args and getattr(args, "config", None):
        return args.config
    env = os.environ.get("DOCMEMORY_CONFIG")
    if env:
        return env
    candidate = Path(storage_dir) / _CONFIG_NAME
    return str(candidate) if candidate.exists() else None


def _open_system(args: argparse.Namespace):
    """Open the MemorySystem for the resolved directory and config."""
    from docmemory.config import load_config
    from docmemory.system import MemorySystem

    storage_dir = _resolve_dir(args)
    config = load_config(_resolve_config(args, storage_dir), strict=True)
    return MemorySystem.open(storage_dir, config)


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _split_tags(value: Optional[str]):
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Initialize a memory directory with a default config.json."""
    from docmemory.config import MemoryConfig
    from docmemory.system import MemorySystem

    target = Path(args.path).resolve()
    config_path = target / _CONFIG_NAME

    if config_path.exists() and not args.force:
        _info(f"Memory directory exists: {target}")
        print(f'export DOCMEMORY_DIR="{target}"')
        return

    target.mkdir(parents=True, exist_ok=True)
    config = MemoryConfig()
    config_path.write_text(
        json.dumps(asdict(config), indent=2) + "\n", encoding="utf-8",
    )
    system = MemorySystem.open(target, config, load_graph=False)
    system.close()

    gitignore_path = target / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text("backups/\n*.tmp\n", encoding="utf-8")

    _info(f"Memory directory initialized: {target}")
    _info(f"  Config:    {config_path}")
    _info(f"  Graph:     {target / config.graph.directory}")
    print(f'export DOCMEMORY_DIR="{target}"')


# ===========================================================================
# Command: remember
# ===========================================================================


def cmd_remember(args: argparse.Namespace) -> None:
    """Append a record; payload from --data or stdin (JSON object)."""
    raw = args.data if args.data is not None else sys.stdin.read()
    if not raw.strip():
        _warn("Empty payload: pass --data or pipe a JSON object on stdin")
        sys.exit(1)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        _warn(f"Invalid JSON payload: {e}")
        sys.exit(1)
    if not isinstance(data, dict):
        _warn("Payload must be a JSON object")
        sys.exit(1)

    metadata: Dict[str, Any] = {}
    tags = _split_tags(args.tags)
    if tags:
        metadata["tags"] = tags
    for key, attr in (("projectId", "project"), ("repository", "repository"), ("ssg", "ssg")):
        value = getattr(args, attr, None)
        if value:
            metadata[key] = value

    system = _open_system(args)
    try:
        rec = system.manager.remember(args.type, data, metadata)
    finally:
        system.close()

    if getattr(args, "json", False):
        _print_json(rec.to_dict())
    else:
        print(rec.id)
    _info(f"Stored {rec.type} record {rec.id}")


# ===========================================================================
# Command: show
# ===========================================================================


def cmd_show(args: argparse.Namespace) -> None:
    """Show a record by ID."""
    system = _open_system(args)
    try:
        rec = system.manager.recall(args.id)
    finally:
        system.close()

    if rec is None:
        _warn(f"Record not found: {args.id}")
        sys.exit(1)

    if getattr(args, "json", False):
        _print_json(rec.to_dict())
        return
    md = rec.metadata
    print(f"ID:         {rec.id}")
    print(f"Type:       {rec.type}")
    print(f"Timestamp:  {rec.timestamp}")
    print(f"Project:    {md.get('projectId') or '(none)'}")
    print(f"Repository: {md.get('repository') or '(none)'}")
    print(f"Tags:       {', '.join(rec.tags) if rec.tags else '(none)'}")
    print(f"Checksum:   {rec.checksum}")
    if rec.is_compressed:
        print(f"Compressed: {md.get('compressionType')} ({md.get('originalSize')} bytes original)")
    print(f"\n--- Data ---\n{json.dumps(rec.data, indent=2, ensure_ascii=False)}")


# ===========================================================================
# Command: search
# ===========================================================================


def cmd_search(args: argparse.Namespace) -> None:
    """Search by free text (project id or tag) or by metadata filters."""
    filters: Dict[str, Any] = {}
    if args.type:
        filters["type"] = args.type
    if args.project:
        filters["projectId"] = args.project
    tags = _split_tags(args.tag)
    if tags:
        filters["tags"] = tags
    if args.since:
        filters["start"] = args.since

    system = _open_system(args)
    try:
        if args.query and not filters:
            results = system.manager.search(args.query, sort_by=args.sort)
        else:
            if args.query:
                filters.setdefault("tags", [args.query])
            results = system.manager.search(filters, sort_by=args.sort)
    finally:
        system.close()

    results = results[: args.k]
    if getattr(args, "json", False):
        _print_json([r.to_dict() for r in results])
        return
    if not results:
        _info("No matching records.")
        return
    for rec in results:
        tags_s = f" [{', '.join(rec.tags)}]" if rec.tags else ""
        project = rec.project_id or "-"
        print(f"{rec.id}  {rec.timestamp}  {rec.type:<14s} {project}{tags_s}")
    _info(f"{len(results)} record(s)")


# ===========================================================================
# Command: forget
# ===========================================================================


def cmd_forget(args: argparse.Namespace) -> None:
    """Tombstone a record."""
    system = _open_system(args)
    try:
        removed = system.manager.forget(args.id)
        if removed:
            system.graph.detach_record(args.id)
            system.graph.save_to_memory()
    finally:
        system.close()

    if not removed:
        _warn(f"Record not found: {args.id}")
        sys.exit(1)
    _info(f"Forgot record {args.id}")


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show store, graph and maintenance statistics."""
    system = _open_system(args)
    try:
        status = system.status()
    finally:
        system.close()

    if getattr(args, "json", False):
        status["status"] = "ok"
        _print_json(status)
        return

    store = status["store"]
    graph = status["graph"]
    metrics = status["maintenance"]
    print("Memory Statistics")
    print("=" * 40)
    print(f"  Directory:  {status['directory']}")
    print(f"  Records:    {store['total_entries']} ({store['tombstones']} tombstones)")
    print(f"  Partitions: {store['partitions']}")
    print(f"  Live bytes: {store['live_bytes']}")
    print(f"  By type:")
    for typ, count in sorted(store.get("by_type", {}).items()):
        print(f"    {typ:14s}: {count}")
    print(f"  Graph:      {graph['node_count']} nodes, {graph['edge_count']} edges")
    print(f"  Compressed: {metrics['compression_ratio']:.1%}")
    print(f"  Last optimization: {metrics['last_optimization'] or 'never'}")


# ===========================================================================
# Command: build-graph
# ===========================================================================


def cmd_build_graph(args: argparse.Namespace) -> None:
    """Derive the knowledge graph from all records."""
    system = _open_system(args)
    try:
        counts = system.rebuild_graph(persist=not args.no_save)
        stats = system.graph.get_statistics()
    finally:
        system.close()

    if getattr(args, "json", False):
        _print_json({**counts, "statistics": stats})
        return
    print(f"Records scanned: {counts['records']}")
    print(f"Graph: {stats['node_count']} nodes, {stats['edge_count']} edges")
    for node in stats.get("most_connected_nodes", [])[:5]:
        print(f"  {node['id']:<40s} {node['connections']} connection(s)")
    if args.no_save:
        _info("Graph not persisted (--no-save)")


# ===========================================================================
# Command: verify
# ===========================================================================


def cmd_verify(args: argparse.Namespace) -> None:
    """Run record store and graph integrity checks. Exit 1 on errors."""
    system = _open_system(args)
    try:
        store_report = system.store.verify()
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", IntegrityWarning)
            graph_report = system.graph_store.verify_integrity()
    finally:
        system.close()

    ok = store_report.valid and graph_report.valid
    if getattr(args, "json", False):
        _print_json({
            "valid": ok,
            "records": store_report.to_dict(),
            "graph": graph_report.to_dict(),
        })
    else:
        for label, report in (("records", store_report), ("graph", graph_report)):
            print(f"{label}: {'OK' if report.valid else 'FAILED'}")
            for msg in report.errors:
                print(f"  error: {msg}")
            for msg in report.warnings:
                print(f"  warning: {msg}")
    if not ok:
        sys.exit(1)


# ===========================================================================
# Command: prune
# ===========================================================================


def cmd_prune(args: argparse.Namespace) -> None:
    """Run the maintenance pipeline once."""
    system = _open_system(args)
    try:
        try:
            result = system.maintenance.execute_pruning(dry_run=args.dry_run)
        except MaintenanceBusyError as e:
            _warn(str(e))
            sys.exit(1)
        if not args.dry_run:
            system.graph.save_to_memory()
    finally:
        system.close()

    if getattr(args, "json", False):
        _print_json(result.to_dict())
    else:
        mode = "Dry run" if result.dry_run else "Pruning"
        print(f"{mode}: {result.duration_ms:.1f}ms")
        c = result.candidates
        print(f"  Candidates: age={c.get('by_age', 0)} size={c.get('by_size', 0)} "
              f"redundancy={c.get('by_redundancy', 0)} compression={c.get('compression', 0)}")
        print(f"  Preserved:  {result.patterns_preserved}")
        if not result.dry_run:
            print(f"  Removed:    {result.entries_removed}")
            print(f"  Compressed: {result.entries_compressed}")
            print(f"  Merged:     {result.entries_merged}")
            print(f"  Saved:      {result.space_saved} bytes")
            if result.backup_path:
                print(f"  Backup:     {result.backup_path}")
            print(f"  Validation: {'passed' if result.validation_passed else 'FAILED'}")
        for issue in result.errors:
            _warn(f"  {issue.operation} {issue.record_id}: {issue.reason}")
    if not result.validation_passed:
        sys.exit(1)


# ===========================================================================
# Command: export
# ===========================================================================


def cmd_export(args: argparse.Namespace) -> None:
    """Export the persisted graph as JSON."""
    system = _open_system(args)
    try:
        payload = system.graph_store.export_as_json()
    finally:
        system.close()

    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        _info(f"Exported {payload['metadata']['entityCount']} entities, "
              f"{payload['metadata']['relationshipCount']} relationships to {args.output}")
    else:
        print(text)


# ===========================================================================
# Command: restore
# ===========================================================================


def cmd_restore(args: argparse.Namespace) -> None:
    """Restore a graph table from its newest (or a named) backup."""
    system = _open_system(args)
    try:
        if args.list:
            for path in system.graph_store.list_backups(args.kind):
                print(path.name)
            return
        try:
            source = system.graph_store.restore_from_backup(args.kind, args.timestamp)
        except StorageError as e:
            _warn(str(e))
            sys.exit(1)
    finally:
        system.close()
    _info(f"Restored {args.kind} from {source.name}")


# ===========================================================================
# Command: schedule
# ===========================================================================


def cmd_schedule(args: argparse.Namespace) -> None:
    """Validate a cron expression; with --foreground, prune on schedule."""
    from docmemory.scheduler import PruningScheduler, validate_cron

    try:
        cron = validate_cron(args.cron)
    except ValidationError as e:
        _warn(str(e))
        sys.exit(1)

    if not args.foreground:
        preview = PruningScheduler(cron, lambda: None)
        after = None
        for _ in range(max(1, args.count)):
            after = preview.next_run(after)
            print(after.isoformat())
        return

    system = _open_system(args)
    stop = threading.Event()
    try:
        system.maintenance.schedule_automatic_pruning(cron)
        _info(f"Automatic pruning running ({cron}); Ctrl-C to stop")
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        _info("Stopping automatic pruning")
    finally:
        system.close()


# ===========================================================================
# Entry point
# ===========================================================================


def main() -> None:
    """CLI entry point: docmemory <command> [args]."""
    global _quiet

    # Shared parent with flags that work on all subcommands.
    # SUPPRESS defaults prevent subparser defaults from overriding
    # values parsed at the main-parser level (argparse parents quirk).
    _dir_default = _env_str("DOCMEMORY_DIR", _DEFAULT_DIR)
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--dir", default=argparse.SUPPRESS,
        help=f"Storage directory (default: {_dir_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to config.json (default: DOCMEMORY_CONFIG or <dir>/config.json)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="docmemory",
        description="docmemory — persistent records, knowledge graph and maintenance",
        parents=[_common],
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Initialize a memory directory")
    p_init.add_argument(
        "path", nargs="?", default=_dir_default,
        help=f"Directory (default: {_dir_default})",
    )
    p_init.add_argument("--force", action="store_true", help="Rewrite config.json with defaults")
    p_init.set_defaults(func=cmd_init)

    # -- remember ----------------------------------------------------------
    p_rem = sub.add_parser("remember", parents=[_common], help="Append a record")
    p_rem.add_argument(
        "type",
        choices=["analysis", "recommendation", "deployment", "configuration", "interaction"],
        help="Record type",
    )
    p_rem.add_argument("--data", default=None, help="JSON payload (default: read stdin)")
    p_rem.add_argument("--tags", default=None, help="Comma-separated tags")
    p_rem.add_argument("--project", default=None, help="Project id")
    p_rem.add_argument("--repository", default=None, help="Repository")
    p_rem.add_argument("--ssg", default=None, help="Static site generator")
    p_rem.set_defaults(func=cmd_remember)

    # -- show --------------------------------------------------------------
    p_show = sub.add_parser("show", parents=[_common], help="Show record details")
    p_show.add_argument("id", help="Record ID")
    p_show.set_defaults(func=cmd_show)

    # -- search ------------------------------------------------------------
    p_search = sub.add_parser("search", parents=[_common], help="Search records")
    p_search.add_argument("query", nargs="?", default=None, help="Project id or tag")
    p_search.add_argument("--type", default=None, help="Filter by record type")
    p_search.add_argument("--project", default=None, help="Filter by project id")
    p_search.add_argument("--tag", default=None, help="Comma-separated tags (any match)")
    p_search.add_argument("--since", default=None, help="ISO timestamp lower bound")
    p_search.add_argument(
        "--sort", default=None, choices=["relevance", "timestamp", "type"],
        help="Result ordering",
    )
    p_search.add_argument("-k", type=int, default=20, help="Max results (default: 20)")
    p_search.set_defaults(func=cmd_search)

    # -- forget ------------------------------------------------------------
    p_forget = sub.add_parser("forget", parents=[_common], help="Tombstone a record")
    p_forget.add_argument("id", help="Record ID")
    p_forget.set_defaults(func=cmd_forget)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Statistics")
    p_stats.set_defaults(func=cmd_stats)

    # -- build-graph -------------------------------------------------------
    p_bg = sub.add_parser("build-graph", parents=[_common], help="Derive the knowledge graph")
    p_bg.add_argument("--no-save", action="store_true", help="Do not persist the graph")
    p_bg.set_defaults(func=cmd_build_graph)

    # -- verify ------------------------------------------------------------
    p_verify = sub.add_parser("verify", parents=[_common], help="Integrity checks")
    p_verify.set_defaults(func=cmd_verify)

    # -- prune -------------------------------------------------------------
    p_prune = sub.add_parser("prune", parents=[_common], help="Run maintenance once")
    p_prune.add_argument("--dry-run", action="store_true", help="Identify candidates only")
    p_prune.set_defaults(func=cmd_prune)

    # -- export ------------------------------------------------------------
    p_export = sub.add_parser("export", parents=[_common], help="Export the graph as JSON")
    p_export.add_argument("-o", "--output", default=None, help="Output file (default: stdout)")
    p_export.set_defaults(func=cmd_export)

    # -- restore -----------------------------------------------------------
    p_restore = sub.add_parser("restore", parents=[_common], help="Restore a graph table")
    p_restore.add_argument("kind", choices=["entities", "relationships"], help="Table")
    p_restore.add_argument("--timestamp", default=None, help="Backup timestamp (substring)")
    p_restore.add_argument("--list", action="store_true", help="List backups only")
    p_restore.set_defaults(func=cmd_restore)

    # -- schedule ----------------------------------------------------------
    p_sched = sub.add_parser("schedule", parents=[_common], help="Cron-driven pruning")
    p_sched.add_argument("cron", help='Cron expression, e.g. "0 3 * * 0"')
    p_sched.add_argument("--foreground", action="store_true",
                         help="Run the scheduler until interrupted")
    p_sched.add_argument("--count", type=int, default=3,
                         help="Fire times to preview (default: 3)")
    p_sched.set_defaults(func=cmd_schedule)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except StorageError as e:
        _warn(f"Storage error: {e}")
        sys.exit(2)
    except DocMemoryError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
