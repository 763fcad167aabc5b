#!/usr/bin/env python
"""
Periodic jobs for the progress features; run from cron or a scheduler.

Usage:
    python scripts/cycle_tasks.py gifts [--dry-run] [--now 2024-01-08T00:00:01Z]
    python scripts/cycle_tasks.py rebuild 2024-01-07
    python scripts/cycle_tasks.py penalties

Uses the same environment as app.py (DATABASE_URL, CYCLE_* settings).
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from flask import Flask

import cycle_keys
from app import create_app
from errors import CoreServiceError
from gifts import service as gift_service
from leaderboard import service as leaderboard_service
from skill_countdown import service as countdown_service

CLI_ACTOR = "cycle_tasks"


def command_gifts(dry_run: bool, now_text: Optional[str]) -> int:
    now = None
    if now_text:
        now = cycle_keys.parse_instant(now_text)
        if now is None:
            print(f"❌ Could not parse --now {now_text!r}")
            return 2

    result = gift_service.run_due(now, dry_run=dry_run, granted_by=CLI_ACTOR)
    label = "Would fire" if dry_run else "Fired"
    print(f"🎁 Checked {result['checked']} rule(s) at {result['now']}")
    for fired in result["fired"]:
        print(f"  • {label} {fired['rule_id']} @ {fired['occurrence_id']} → {len(fired['grants'])} student(s)")
    for skipped in result["skipped_occurrences"]:
        print(f"  • Skipped {skipped['rule_id']} @ {skipped['occurrence_id']} ({skipped['reason']})")
    for already in result["already_fired"]:
        print(f"  • Already fired {already['rule_id']} @ {already['occurrence_id']}")
    for error in result["errors"]:
        print(f"  ⚠️ {error['rule_id']}: {error['error']}")
    return 0


def command_rebuild(cycle_key: str) -> int:
    result = leaderboard_service.rebuild(cycle_key)
    print(f"📊 Rebuilt snapshot for {result['cycle_key']}")
    for board_key, rows in result["boards"].items():
        print(f"    {board_key:<20} {len(rows)} row(s)")
    return 0


def command_penalties() -> int:
    result = countdown_service.process_all(CLI_ACTOR)
    applied = result["penalties_applied"]
    print(f"⏳ Checked {result['students_checked']} student(s); {len(applied)} countdown(s) penalised")
    for item in applied:
        print(f"  • {item['label']}: {item['lapses_charged']} lapse(s), {item['points']} points")
    return 0


def main(argv: Optional[List[str]] = None, app: Optional[Flask] = None) -> int:
    parser = argparse.ArgumentParser(description="Run periodic cycle jobs.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    gifts_parser = subparsers.add_parser("gifts", help="Fire due auto-gift occurrences")
    gifts_parser.add_argument("--dry-run", action="store_true", help="Report grants without writing")
    gifts_parser.add_argument("--now", help="Override the current instant (ISO-8601)")

    rebuild_parser = subparsers.add_parser("rebuild", help="Rebuild a cycle's leaderboard snapshot")
    rebuild_parser.add_argument("cycle_key", help="Cycle key (YYYY-MM-DD)")

    subparsers.add_parser("penalties", help="Charge lapsed skill countdowns for every student")

    args = parser.parse_args(argv)
    app = app or create_app()

    with app.app_context():
        try:
            if args.command == "gifts":
                return command_gifts(args.dry_run, args.now)
            if args.command == "rebuild":
                return command_rebuild(args.cycle_key)
            if args.command == "penalties":
                return command_penalties()
        except CoreServiceError as exc:
            print(f"❌ {exc.message}")
            return 1
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit("\n⚠️ Cycle task cancelled by user.")
