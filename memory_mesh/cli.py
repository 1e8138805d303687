"""
memory-mesh command line.

Thin wrapper over TeamSync's file operations plus store statistics:

    memory-mesh export --team engineering --out team.json
    memory-mesh import team.json --strategy merge_all
    memory-mesh merge a.json b.json --out merged.json
    memory-mesh validate team.json
    memory-mesh stats

Exit code is 0 on success and 1 when the operation reports failure.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from . import config
from .core.persistence import read_json, write_json
from .core.store import MemoryStore
from .errors import MemoryMeshError, error_result
from .teams.sync import DEFAULT_MIN_CONFIDENCE, ConflictStrategy, TeamSync

logger = logging.getLogger(__name__)


def _open_store(args) -> MemoryStore:
    data_dir = config.get_scope_dir(args.scope, args.home) / config.GLOBAL_SUBDIR
    return MemoryStore(data_dir=str(data_dir), scope=config.get_scope(args.scope))


def _print(result: Dict[str, Any]) -> None:
    print(json.dumps(result, indent=2, default=str))


def cmd_export(sync: TeamSync, args) -> Dict[str, Any]:
    return sync.export_to_file(
        args.out,
        args.team,
        min_confidence=args.min_confidence,
        include_projects=args.include_projects,
    )


def cmd_import(sync: TeamSync, args) -> Dict[str, Any]:
    return sync.import_from_file(args.file, args.strategy)


def cmd_merge(sync: TeamSync, args) -> Dict[str, Any]:
    exports = []
    for path in args.files:
        try:
            exports.append(read_json(path))
        except MemoryMeshError as e:
            return error_result(e)

    merged = sync.merge_team_exports(exports)
    if merged.get("success") is False:
        return merged
    write_json(args.out, merged)
    return {
        "success": True,
        "path": args.out,
        "pattern_count": merged["patternCount"],
        "source_teams": merged["sourceTeams"],
    }


def cmd_validate(sync: TeamSync, args) -> Dict[str, Any]:
    try:
        data = read_json(args.file)
    except MemoryMeshError as e:
        return error_result(e)
    result = sync.validate_export(data)
    result["success"] = result["valid"]
    return result


def cmd_stats(sync: TeamSync, args) -> Dict[str, Any]:
    return {
        "success": True,
        "scope": sync.store.scope,
        "data_dir": str(sync.store.data_dir),
        "store": sync.store.get_stats(),
        "sync": sync.get_stats(),
    }


COMMANDS = {
    "export": cmd_export,
    "import": cmd_import,
    "merge": cmd_merge,
    "validate": cmd_validate,
    "stats": cmd_stats,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--home", help=f"Data root (default ${config.HOME_ENV} or {config.DEFAULT_HOME})")
    common.add_argument("--scope", help=f"Scope name (default ${config.SCOPE_ENV} or {config.DEFAULT_SCOPE})")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    parser = argparse.ArgumentParser(prog="memory-mesh", description="Share learned patterns between installations")
    sub = parser.add_subparsers(dest="command", required=True)

    export = sub.add_parser("export", parents=[common], help="Export patterns for a team")
    export.add_argument("--team", required=True, help="Team name recorded in the export")
    export.add_argument("--out", required=True, help="Output file")
    export.add_argument("--min-confidence", type=float, default=DEFAULT_MIN_CONFIDENCE)
    export.add_argument("--include-projects", action="store_true")

    imp = sub.add_parser("import", parents=[common], help="Import a team export")
    imp.add_argument("file")
    imp.add_argument(
        "--strategy",
        default=ConflictStrategy.MAJORITY.value,
        choices=[s.value for s in ConflictStrategy],
    )

    merge = sub.add_parser("merge", parents=[common], help="Merge several team exports")
    merge.add_argument("files", nargs="+")
    merge.add_argument("--out", required=True, help="Output file")

    validate = sub.add_parser("validate", parents=[common], help="Check an export's structure")
    validate.add_argument("file")

    sub.add_parser("stats", parents=[common], help="Show local memory statistics")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    store = _open_store(args)
    sync = TeamSync(store)
    try:
        result = COMMANDS[args.command](sync, args)
    finally:
        store.close()

    _print(result)
    return 0 if result.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
