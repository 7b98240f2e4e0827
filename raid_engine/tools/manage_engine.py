"""Management utilities for queue migration, turn advance and war log inspection."""
from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List

from ..config import get_settings
from ..service import EngineService


def _load_service(state_db: Path) -> EngineService:
    return EngineService(state_db, settings=get_settings(), migrate=False)


def cmd_migrate(args: argparse.Namespace) -> None:
    service = _load_service(args.state_db)
    if args.action == "preview":
        summary: Dict[str, Any] = service.preview_migration()
        summary["migrated"] = False
    else:
        summary = service.run_migration(dry_run=args.dry_run)

    if args.json or args.dry_run:
        print(json.dumps(summary, indent=2))
        return

    if args.action == "preview":
        legacy = {**summary["factions"], **summary["locations"]}
        print(f"Legacy queue shapes found on {len(legacy)} entities.")
        for entity_id, keys in sorted(legacy.items()):
            print(f"  - {entity_id}: {', '.join(keys)}")
        return

    lines: List[str] = []
    for kind in ("factions", "locations"):
        report = summary[kind]
        lines.append(f"{kind.title()}: scanned {report['scanned']}, migrated {len(report['changed'])}.")
        for entity_id, error in sorted(report["failed"].items()):
            lines.append(f"  ! {entity_id}: {error}")
    print("\n".join(lines))


def cmd_advance(args: argparse.Namespace) -> None:
    service = _load_service(args.state_db)
    if args.all:
        results = service.advance_all_turns()
    else:
        results = [service.advance_turn(args.faction)]
    payload = [asdict(result) for result in results]
    if args.json:
        print(json.dumps(payload, default=str, indent=2))
        return
    print("\n".join(f"{result.faction_id}: {result.note}" for result in results))


def cmd_war_log(args: argparse.Namespace) -> None:
    service = _load_service(args.state_db)
    entries = service.war_log(args.faction, limit=args.limit)
    if args.json:
        print(json.dumps([asdict(entry) for entry in entries], default=str, indent=2))
        return
    lines = [
        f"[{entry.timestamp.isoformat()}] {entry.faction_id} {entry.type}/{entry.activity}: {entry.summary}"
        for entry in entries
    ]
    print("\n".join(lines) if lines else "War log is empty.")


def cmd_activities(args: argparse.Namespace) -> None:
    service = _load_service(args.state_db)
    activities = [
        {"key": entry.key, "label": entry.label, "cost": entry.cost, "summary": entry.summary}
        for entry in service.list_activities()
    ]
    if args.json:
        print(json.dumps(activities, indent=2))
        return
    for activity in activities:
        cost = ", ".join(f"{k}:{v}" for k, v in activity["cost"].items())
        print(f"{activity['label']} ({activity['key']}) [{cost}] {activity['summary']}")


def cmd_plan(args: argparse.Namespace) -> None:
    service = _load_service(args.state_db)
    order_id = service.plan_activity(args.faction, args.activity, location_id=args.location, notes=args.notes)
    print(json.dumps({"order_id": order_id, "faction": args.faction, "activity": args.activity}))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Administer the raid engine state database.")
    parser.add_argument(
        "--state-db",
        type=Path,
        default=Path("raid_engine.db"),
        help="Path to the engine state SQLite database (default: raid_engine.db).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate = subparsers.add_parser("migrate", help="Preview or migrate legacy queue shapes.")
    migrate.add_argument("action", choices=["preview", "run"], help="Preview or execute the migration.")
    migrate.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the migration logic without writing changes (implies JSON output).",
    )
    migrate.add_argument("--json", action="store_true", help="Emit JSON output.")
    migrate.set_defaults(func=cmd_migrate)

    advance = subparsers.add_parser("advance", help="Apply queued effects for one or all factions.")
    target = advance.add_mutually_exclusive_group(required=True)
    target.add_argument("--faction", type=str, help="Faction id to advance.")
    target.add_argument("--all", action="store_true", help="Advance every faction.")
    advance.add_argument("--json", action="store_true", help="Emit JSON output.")
    advance.set_defaults(func=cmd_advance)

    war_log = subparsers.add_parser("war-log", help="Show war log entries.")
    war_log.add_argument("--faction", type=str, help="Filter by faction id.")
    war_log.add_argument("--limit", type=int, help="Show only the most recent entries.")
    war_log.add_argument("--json", action="store_true", help="Emit JSON output.")
    war_log.set_defaults(func=cmd_war_log)

    activities = subparsers.add_parser("activities", help="List strategic activities.")
    activities.add_argument("--json", action="store_true", help="Emit JSON output.")
    activities.set_defaults(func=cmd_activities)

    plan = subparsers.add_parser("plan", help="Plan a strategic activity for a faction.")
    plan.add_argument("faction", type=str, help="Faction id.")
    plan.add_argument("activity", type=str, help="Strategic activity key.")
    plan.add_argument("--location", type=str, help="Target location id.")
    plan.add_argument("--notes", type=str, default="", help="Free-form planning notes.")
    plan.set_defaults(func=cmd_plan)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
