"""
`devmem` command-line interface.

Plain-text front end over :class:`~devmemory.api.DevMemory`.

Commands
--------
devmem store "<problem>" --solution "<text>" [--scope repo] [--tags a,b]
devmem recall "<query>" [--limit 5] [--scope all|global|stack|repo]
devmem reward <id> success|partial|failure [--notes "..."]
devmem fail <ErrorType> "<message>" [--root-cause ...] [--fix ...]
devmem index [--full] [--watch]
devmem def <name> [--kind function] [--file path]
devmem callers <name> [--file path]
devmem exports [path]
devmem symbols "<query>" [--kind ...] [--exported] [--limit 20]
devmem imports <file>
devmem merge [--threshold 0.8] [--dry-run] [--yes]
devmem warn add|remove|list|check ...
devmem status
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional

from tqdm import tqdm

from .api import DevMemory
from .config import Config
from .errors import DevMemoryError
from .memory.db import CATEGORIES, OUTCOMES, SCOPES, SEVERITIES, WARNING_TYPES
from .memory.solutions import RECALL_SCOPES, preview

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _split(value: Optional[str]) -> list[str]:
    """Split a comma-separated option into a list of non-empty items."""
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _open(args: argparse.Namespace) -> DevMemory:
    config = Config.load(args.config)
    if args.db:
        config.DB_PATH = os.path.abspath(os.path.expanduser(args.db))
    return DevMemory(config=config, repo_root=args.repo)


def _print_symbols(rows, title: str) -> None:
    if not rows:
        print(f"  (no results for: {title})")
        return
    print(f"\n{title}  [{len(rows)} result(s)]")
    print("-" * 60)
    for s in rows:
        flags = "export" if s.exported else ""
        if s.is_default:
            flags = "default"
        label = f"{s.kind:<10}  {s.qualified_name}"
        print(f"  {label:<50}  {s.file}:{s.line}  {flags}".rstrip())
        if s.signature:
            print(f"      {s.signature}")


# ---------------------------------------------------------------------------
# Memory commands
# ---------------------------------------------------------------------------

def _cmd_store(mem: DevMemory, args: argparse.Namespace) -> int:
    result = mem.store(
        args.problem,
        args.solution,
        scope=args.scope,
        tags=_split(args.tags),
        category=args.category,
        complexity=args.complexity,
        code_blocks=args.code or None,
        files_affected=_split(args.files),
        supersedes=args.supersedes,
    )
    if result.is_duplicate:
        print(f"Duplicate of {result.id} (similarity {result.similarity:.3f}); not stored.")
        if result.existing_problem:
            print(f"  Existing: {result.existing_problem}")
        return 0
    print(f"{result.status.capitalize()} {result.id} (complexity {result.complexity})")
    return 0


def _cmd_recall(mem: DevMemory, args: argparse.Namespace) -> int:
    matches = mem.recall(
        args.query, limit=args.limit, min_score=args.min_score, scope_filter=args.scope
    )
    if not matches:
        print(f"  (no results for: {args.query})")
        return 0
    for m in matches:
        sol = m.solution
        boost = f"  [{m.context_boost}]" if m.context_boost else ""
        print(
            f"{sol.id}  rank {m.rank:.3f}  sim {m.similarity:.3f}  "
            f"score {sol.score:.2f}  uses {sol.uses}  {sol.scope}{boost}"
        )
        print(f"  Problem:  {preview(sol.problem)}")
        print(f"  Solution: {preview(sol.solution)}")
        if sol.tags:
            print(f"  Tags:     {', '.join(sorted(sol.tags))}")
        print()
    return 0


def _cmd_reward(mem: DevMemory, args: argparse.Namespace) -> int:
    sol = mem.get_solution(args.id)
    result = mem.reward(sol.id, args.outcome, args.notes)
    print(
        f"{result.id}: {result.outcome}  score {result.previous_score:.3f} -> "
        f"{result.score:.3f}  ({result.uses} uses)"
    )
    return 0


def _cmd_fail(mem: DevMemory, args: argparse.Namespace) -> int:
    result = mem.record_failure(
        args.error_type,
        args.message,
        root_cause=args.root_cause,
        fix_applied=args.fix,
        prevention=args.prevention,
        files_involved=_split(args.files),
    )
    state = "Recorded" if result.is_new else "Updated"
    print(f"{state} {result.id} [{result.signature}] ({result.occurrences} occurrence(s))")
    if not result.is_new:
        for match in mem.search_failures(args.message, limit=3):
            if match.failure.id != result.id:
                print(f"  Similar: {match.failure.id}  {preview(match.failure.error_message)}")
    return 0


def _cmd_status(mem: DevMemory, args: argparse.Namespace) -> int:
    stats = mem.status()
    print("\nDevMemory Status")
    print("=" * 40)
    for key in ("db_path", "solutions", "failures", "repos", "total_uses", "average_score"):
        value = stats.get(key)
        if isinstance(value, float):
            value = f"{value:.3f}"
        print(f"  {key:<20} {value}")
    for key in ("by_scope", "by_category"):
        if stats.get(key):
            joined = ", ".join(f"{k}={v}" for k, v in sorted(stats[key].items()))
            print(f"  {key:<20} {joined}")
    if stats.get("top_tags"):
        print(f"  {'top_tags':<20} {', '.join(f'{t} ({n})' for t, n in stats['top_tags'])}")

    index = mem.index_status()
    print(f"  {'index':<20} {index['state']}  {index['files']} files, {index['symbols']} symbols")
    print()
    return 0


# ---------------------------------------------------------------------------
# Index commands
# ---------------------------------------------------------------------------

def _cmd_index(mem: DevMemory, args: argparse.Namespace) -> int:
    print(f"Indexing project: {mem.repo_root}")
    pbar = tqdm(total=None, unit="file", desc="Parsing")

    def _progress(done: int, total: int, path: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(path), refresh=False)
        pbar.update(1)

    try:
        result = mem.reindex(full=args.full, progress=_progress)
    finally:
        pbar.close()

    print(
        f"\nIndex complete:\n"
        f"  Scanned:  {result.files_scanned}\n"
        f"  Indexed:  {result.files_indexed} "
        f"(+{result.files_added} ~{result.files_modified} -{result.files_deleted})\n"
        f"  Symbols:  {result.symbols_found}\n"
        f"  Imports:  {result.imports_found}\n"
        f"  Partial:  {result.partial_files}\n"
        f"  Errors:   {len(result.errors)}\n"
        f"  Time:     {result.duration_ms / 1000:.1f}s"
    )
    for err in result.errors[:10]:
        print(f"    {err}")

    if args.watch:
        print("\nStarting file watcher... (Ctrl+C to stop)")

        def _report(res) -> None:
            print(f"  Reindexed {res.files_indexed} file(s), removed {res.files_deleted}")

        mem.watch(on_reindex=_report).run_forever()
        print("\nFile watcher stopped.")
    return 0


def _cmd_def(mem: DevMemory, args: argparse.Namespace) -> int:
    _print_symbols(mem.find_definition(args.name, kind=args.kind, file=args.file),
                   f"Definitions of '{args.name}'")
    return 0


def _cmd_callers(mem: DevMemory, args: argparse.Namespace) -> int:
    rows = mem.find_callers(args.name, file=args.file)
    if not rows:
        print(f"  (no results for: {args.name})")
        return 0
    print(f"\nFiles importing '{args.name}'  [{len(rows)} result(s)]")
    print("-" * 60)
    for c in rows:
        alias = f" as {c.local_name}" if c.local_name and c.local_name != c.imported_name else ""
        print(f"  {c.file}:{c.line:<6}  {c.imported_name}{alias}  from {c.resolved_path}")
    return 0


def _cmd_exports(mem: DevMemory, args: argparse.Namespace) -> int:
    _print_symbols(mem.list_exports(args.path), f"Exports of '{args.path or '.'}'")
    return 0


def _cmd_symbols(mem: DevMemory, args: argparse.Namespace) -> int:
    rows = mem.search_symbols(
        args.query, kind=args.kind, exported_only=args.exported, limit=args.limit
    )
    _print_symbols(rows, f"Symbols matching '{args.query}'")
    return 0


def _cmd_imports(mem: DevMemory, args: argparse.Namespace) -> int:
    rows = mem.get_imports(args.file)
    if not rows:
        print(f"  (no imports in: {args.file})")
        return 0
    print(f"\nImports of '{args.file}'  [{len(rows)} result(s)]")
    print("-" * 60)
    for imp in rows:
        kind = "namespace" if imp.is_namespace else "default" if imp.is_default else "named"
        if imp.is_type:
            kind += ", type"
        alias = f" as {imp.local_name}" if imp.local_name and imp.local_name != imp.imported_name else ""
        print(f"  {imp.line:>5}  {imp.imported_name}{alias}  from {imp.source_path}  ({kind})")
    return 0


# ---------------------------------------------------------------------------
# Merge / warnings
# ---------------------------------------------------------------------------

def _ask(candidate) -> str:
    keep, remove = candidate.keep, candidate.remove
    print(f"\nSimilarity {candidate.similarity:.3f}")
    print(f"  keep   {keep.id}  score {keep.score:.2f}  {preview(keep.problem)}")
    print(f"  remove {remove.id}  score {remove.score:.2f}  {preview(remove.problem)}")
    while True:
        answer = input("Merge? [y]es / [n]o / [q]uit: ").strip().lower()
        if answer in ("y", "yes"):
            return "merge"
        if answer in ("n", "no"):
            return "skip"
        if answer in ("q", "quit"):
            return "quit"


def _cmd_merge(mem: DevMemory, args: argparse.Namespace) -> int:
    candidates = mem.merge_candidates(args.threshold)
    if not candidates:
        print("No merge candidates found.")
        return 0
    print(f"{len(candidates)} merge candidate(s)")
    if args.dry_run:
        for c in candidates:
            print(f"  {c.similarity:.3f}  keep {c.keep.id}  remove {c.remove.id}")
        return 0
    results = mem.merge_all(candidates, None if args.yes else _ask)
    for r in results:
        print(f"Merged {r.removed_id} into {r.keep_id}  ({r.uses} uses, score {r.score:.3f})")
    print(f"{len(results)} merge(s) applied.")
    return 0


def _cmd_warn(mem: DevMemory, args: argparse.Namespace) -> int:
    action = args.warn_cmd
    if action == "add":
        rule = mem.add_warning(
            args.type, args.target, args.reason, severity=args.severity, global_=args.global_
        )
        print(f"Added {rule.id}  [{rule.severity}] {rule.type} {rule.target}")
    elif action == "remove":
        mem.remove_warning(args.id)
        print(f"Removed {args.id}")
    elif action == "list":
        rules = mem.list_warnings(args.type)
        if not rules:
            print("  (no warnings)")
        for rule in rules:
            where = "global" if rule.repo_id is None else "repo"
            print(f"  {rule.id}  [{rule.severity:<5}] {rule.type:<7} {rule.target:<30} {where}  {rule.reason}")
    else:
        hits = mem.check_warnings(args.type, args.value)
        if not hits:
            print(f"  (no warnings for: {args.value})")
            return 0
        for rule in hits:
            print(f"  [{rule.severity}] {rule.target}: {rule.reason}")
        if any(rule.severity == "block" for rule in hits):
            return 2
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devmem",
        description="Local developer memory and code index",
    )
    parser.add_argument("--config", default=None, help="Path to a .devmemory.yaml file")
    parser.add_argument("--db", default=None, help="Database path (overrides config)")
    parser.add_argument("--repo", default=None, help="Repository root (default: cwd)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # --- store ---
    store_p = subparsers.add_parser("store", help="Store a problem and its solution")
    store_p.add_argument("problem", help="Problem description")
    store_p.add_argument("--solution", "-s", required=True, help="Solution text")
    store_p.add_argument("--scope", choices=SCOPES, default="global")
    store_p.add_argument("--tags", default=None, help="Comma-separated tags")
    store_p.add_argument("--category", choices=CATEGORIES, default=None)
    store_p.add_argument("--complexity", type=int, default=None, help="1-10 (default: computed)")
    store_p.add_argument("--code", action="append", default=[], help="Code block (repeatable)")
    store_p.add_argument("--files", default=None, help="Comma-separated affected files")
    store_p.add_argument("--supersedes", default=None, help="Id of the solution this replaces")
    store_p.set_defaults(func=_cmd_store)

    # --- recall ---
    recall_p = subparsers.add_parser("recall", help="Find stored solutions for a problem")
    recall_p.add_argument("query", help="Natural-language problem description")
    recall_p.add_argument("--limit", type=int, default=None)
    recall_p.add_argument("--min-score", dest="min_score", type=float, default=None)
    recall_p.add_argument("--scope", choices=RECALL_SCOPES, default="all")
    recall_p.set_defaults(func=_cmd_recall)

    # --- reward ---
    reward_p = subparsers.add_parser("reward", help="Report how a recalled solution worked")
    reward_p.add_argument("id", help="Solution id or unambiguous prefix")
    reward_p.add_argument("outcome", choices=OUTCOMES)
    reward_p.add_argument("--notes", default=None)
    reward_p.set_defaults(func=_cmd_reward)

    # --- fail ---
    fail_p = subparsers.add_parser("fail", help="Record an error and what fixed it")
    fail_p.add_argument("error_type", help="Error class, e.g. TypeError")
    fail_p.add_argument("message", help="Error message")
    fail_p.add_argument("--root-cause", dest="root_cause", default=None)
    fail_p.add_argument("--fix", default=None, help="Fix that was applied")
    fail_p.add_argument("--prevention", default=None)
    fail_p.add_argument("--files", default=None, help="Comma-separated files involved")
    fail_p.set_defaults(func=_cmd_fail)

    # --- index ---
    index_p = subparsers.add_parser("index", help="Index the repository's source files")
    index_p.add_argument("--full", action="store_true", help="Reparse every file")
    index_p.add_argument("--watch", action="store_true", help="Keep watching for changes")
    index_p.set_defaults(func=_cmd_index)

    # --- code queries ---
    def_p = subparsers.add_parser("def", help="Find where a symbol is defined")
    def_p.add_argument("name")
    def_p.add_argument("--kind", default=None)
    def_p.add_argument("--file", default=None)
    def_p.set_defaults(func=_cmd_def)

    callers_p = subparsers.add_parser("callers", help="Find files importing a symbol")
    callers_p.add_argument("name")
    callers_p.add_argument("--file", default=None, help="Defining file")
    callers_p.set_defaults(func=_cmd_callers)

    exports_p = subparsers.add_parser("exports", help="List exported symbols")
    exports_p.add_argument("path", nargs="?", default=None, help="File or directory")
    exports_p.set_defaults(func=_cmd_exports)

    symbols_p = subparsers.add_parser("symbols", help="Fuzzy symbol search")
    symbols_p.add_argument("query")
    symbols_p.add_argument("--kind", default=None)
    symbols_p.add_argument("--exported", action="store_true")
    symbols_p.add_argument("--limit", type=int, default=20)
    symbols_p.set_defaults(func=_cmd_symbols)

    imports_p = subparsers.add_parser("imports", help="List a file's imports")
    imports_p.add_argument("file")
    imports_p.set_defaults(func=_cmd_imports)

    # --- merge ---
    merge_p = subparsers.add_parser("merge", help="Consolidate near-duplicate solutions")
    merge_p.add_argument("--threshold", type=float, default=None)
    merge_p.add_argument("--dry-run", dest="dry_run", action="store_true")
    merge_p.add_argument("--yes", "-y", action="store_true", help="Merge without asking")
    merge_p.set_defaults(func=_cmd_merge)

    # --- warn ---
    warn_p = subparsers.add_parser("warn", help="Manage file and package warnings")
    warn_sub = warn_p.add_subparsers(dest="warn_cmd", metavar="ACTION")
    warn_sub.required = True
    warn_p.set_defaults(func=_cmd_warn)

    wadd = warn_sub.add_parser("add", help="Add or update a warning")
    wadd.add_argument("type", choices=WARNING_TYPES)
    wadd.add_argument("target", help="File glob or package name")
    wadd.add_argument("reason")
    wadd.add_argument("--severity", choices=SEVERITIES, default="warn")
    wadd.add_argument("--global", dest="global_", action="store_true",
                      help="Apply to every repository")

    wremove = warn_sub.add_parser("remove", help="Remove a warning")
    wremove.add_argument("id")

    wlist = warn_sub.add_parser("list", help="List warnings for this repository")
    wlist.add_argument("--type", choices=WARNING_TYPES, default=None)

    wcheck = warn_sub.add_parser("check", help="Check a file or package against warnings")
    wcheck.add_argument("type", choices=WARNING_TYPES)
    wcheck.add_argument("value")

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show memory and index statistics")
    status_p.set_defaults(func=_cmd_status)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    """
    Entry point for the ``devmem`` console script.

    Returns the process exit code: 0 on success, 1 on a devmemory error,
    2 when ``warn check`` hits a blocking warning.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    level = "DEBUG" if args.verbose else Config.load(args.config).LOG_LEVEL
    if not logging.root.handlers:
        logging.basicConfig(
            level=getattr(logging, level, logging.WARNING),
            format="%(levelname)s  %(name)s  %(message)s",
        )

    try:
        mem = _open(args)
    except DevMemoryError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    try:
        return args.func(mem, args)
    except DevMemoryError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        mem.close()


if __name__ == "__main__":
    sys.exit(main())
