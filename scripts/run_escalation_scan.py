#!/usr/bin/env python3
"""
run_escalation_scan.py
======================

Entry point for an external scheduler (cron, systemd timer, k8s CronJob):

1. Scans every member profile in Redis and classifies inactivity tiers.
2. Sends the red-tier alerts and the cohort summary that are due under the
   configured repeat policy.
3. Prints a one-line summary, or the full report with --json.

Usage:
    python scripts/run_escalation_scan.py
    python scripts/run_escalation_scan.py --dry-run --json
    python scripts/run_escalation_scan.py --now 2026-02-15T12:00:00Z --log-only
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Ensure the repo root is importable when run from a checkout
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import redis  # noqa: E402

from guardian_core.config.settings import ESCALATION_REPEAT_POLICY, REDIS_URL  # noqa: E402
from guardian_core.engine.escalation_classifier import run_escalation_scan  # noqa: E402
from guardian_core.engine.profile_store import RedisProfileStore  # noqa: E402
from guardian_core.models.profile import parse_timestamp, utc_now  # noqa: E402
from guardian_core.services.container import build_services  # noqa: E402
from guardian_core.services.notification_dispatcher import LoggingDispatcher  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-7s  %(name)-40s  %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run_escalation_scan")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Classify member inactivity and send due escalation notifications."
    )
    parser.add_argument(
        "--redis-url",
        default=REDIS_URL,
        help="Redis connection URL (default: REDIS_URL from the environment).",
    )
    parser.add_argument(
        "--now",
        default=None,
        help="Evaluate as of this ISO 8601 instant instead of the current time.",
    )
    parser.add_argument(
        "--policy",
        choices=("tier_entry", "every_run"),
        default=ESCALATION_REPEAT_POLICY,
        help="Repeat-notification policy (default: ESCALATION_REPEAT_POLICY).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Classify only; send nothing and leave the notification log untouched.",
    )
    parser.add_argument(
        "--log-only",
        action="store_true",
        help="Write notifications to the log instead of publishing them to Redis.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full result as JSON.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    now = parse_timestamp(args.now, "--now") if args.now else utc_now()
    r = redis.Redis.from_url(args.redis_url, decode_responses=True)

    if args.dry_run:
        result = run_escalation_scan(now, RedisProfileStore(r))
        output = result.to_dict()
        print(f"Dry run: {result.total} member(s) at risk, counts={result.counts}")
    else:
        dispatcher = LoggingDispatcher() if args.log_only else None
        services = build_services(r, dispatcher=dispatcher, policy=args.policy)
        report = services.escalation.run(now)
        output = report.to_dict()
        print(
            f"{report.scan.total} member(s) at risk; "
            f"red alerts sent: {len(report.red_alerts_sent)}, "
            f"summary: {'sent' if report.summary_sent else report.summary_suppressed_reason}, "
            f"errors: {report.error_count}"
        )

    if args.json:
        print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
