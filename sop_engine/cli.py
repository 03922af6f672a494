"""
SOP Engine — CLI

Template checking and draft cache inspection.

Usage:
    # Check a template before publishing it
    python -m sop_engine.cli check templates/line_clearance.yaml [--strict]

    # List drafts waiting to be resumed
    python -m sop_engine.cli drafts list

    # Show one draft
    python -m sop_engine.cli drafts show <task_id>

    # Discard a draft
    python -m sop_engine.cli drafts clear <task_id>

Global options:
    --config   engine config YAML (default: sop_engine.yaml)
    --db       draft cache path (default: draft_cache.path from config)
"""

from __future__ import annotations

import argparse
import json
import sys
import time

from sop_engine.config import EngineSettings, load_config
from sop_engine.draft_cache import DRAFT_KEY_PREFIX, SQLiteDraftCache
from sop_engine.logging import configure_logging
from sop_engine.template_check import check_template, load_template_data


def cmd_check(args) -> int:
    """Check a template file."""
    try:
        data = load_template_data(args.template)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    result = check_template(data)

    if args.strict:
        # Promote warnings to errors
        for issue in result.issues:
            if issue.level == "warning":
                issue.level = "error"

    print(f"{args.template}: {data.get('name', '—')}")
    print(result.summary())
    return 0 if result.valid else 1


def cmd_drafts_list(args, cache: SQLiteDraftCache) -> int:
    keys = cache.list_keys()
    if not keys:
        print("No drafts.")
        return 0

    print(f"\nDrafts ({len(keys)})")
    print(f"{'─' * 70}")
    for key in keys:
        task_id = key[len(DRAFT_KEY_PREFIX):]
        raw = cache.load_raw(task_id) or {}
        payload = raw.get("payload")
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(raw.get("updated_at", 0)))
        if isinstance(payload, dict):
            evidence = len(payload.get("evidence") or [])
            step = payload.get("currentStepIndex", "?")
            print(f"  {task_id}")
            print(f"    step:     {step}")
            print(f"    evidence: {evidence}")
        else:
            print(f"  {task_id}  (unreadable)")
        print(f"    updated:  {ts}")
    return 0


def cmd_drafts_show(args, cache: SQLiteDraftCache) -> int:
    raw = cache.load_raw(args.task_id)
    if raw is None:
        print(f"No draft for task {args.task_id}", file=sys.stderr)
        return 1
    print(json.dumps(raw, indent=2, default=str))
    return 0


def cmd_drafts_clear(args, cache: SQLiteDraftCache) -> int:
    if cache.load_raw(args.task_id) is None:
        print(f"No draft for task {args.task_id}", file=sys.stderr)
        return 1
    cache.clear(args.task_id)
    print(f"Cleared draft for task {args.task_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sop-engine",
        description="SOP Engine — template checks and draft cache tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default="sop_engine.yaml",
        help="Engine config YAML (default: sop_engine.yaml)",
    )
    parser.add_argument(
        "--db", default=None,
        help="Draft cache database (default: draft_cache.path from config)",
    )

    subs = parser.add_subparsers(dest="command", help="Command")

    # check
    check_p = subs.add_parser("check", help="Check a template file (YAML or JSON)")
    check_p.add_argument("template")
    check_p.add_argument("--strict", action="store_true", help="Treat warnings as errors")

    # drafts
    drafts_p = subs.add_parser("drafts", help="Inspect the draft cache")
    drafts_subs = drafts_p.add_subparsers(dest="drafts_command", help="Drafts command")
    drafts_subs.add_parser("list", help="List drafts")
    show_p = drafts_subs.add_parser("show", help="Show one draft")
    show_p.add_argument("task_id")
    clear_p = drafts_subs.add_parser("clear", help="Discard one draft")
    clear_p.add_argument("task_id")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = EngineSettings.from_config(load_config(base_path=args.config))
    configure_logging(level=settings.log_level)

    if args.command == "check":
        return cmd_check(args)

    if args.command == "drafts":
        if not args.drafts_command:
            print("Usage: drafts {list,show,clear}", file=sys.stderr)
            return 1
        cache = SQLiteDraftCache(args.db or settings.draft_cache_path)
        try:
            if args.drafts_command == "list":
                return cmd_drafts_list(args, cache)
            if args.drafts_command == "show":
                return cmd_drafts_show(args, cache)
            if args.drafts_command == "clear":
                return cmd_drafts_clear(args, cache)
        finally:
            cache.close()

    return 1


if __name__ == "__main__":
    sys.exit(main())
