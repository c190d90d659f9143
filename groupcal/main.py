from __future__ import annotations

import argparse
import logging
import os
import sys

import yaml
from dotenv import load_dotenv

from groupcal.config_manager import ConfigManager
from groupcal.errors import GroupCalError
from groupcal.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create all-day events in every mailbox of a group")
    parser.add_argument(
        "--config",
        default=os.getenv("GROUPCAL_CONFIG", "config.yaml"),
        help="Path to YAML config (created with defaults if missing)",
    )
    parser.add_argument("--events", default=None, help="CSV file with StartDate,EndDate,Subject,... columns")
    parser.add_argument("--group", default=None, help="Group id whose members receive the events")
    parser.add_argument("--workers", type=int, default=None, help="Mailboxes processed in parallel")
    parser.add_argument("--dry-run", action="store_true", help="Check for existing events without creating any")
    parser.add_argument("--show-config", action="store_true", help="Print the effective config and exit")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        config_manager = ConfigManager(args.config)
        if args.show_config:
            yaml.safe_dump(config_manager.masked(), sys.stdout, sort_keys=False, default_flow_style=False)
            return EXIT_OK
        report = SyncEngine(config_manager).run_once(
            events_path=args.events,
            group_id=args.group,
            max_workers=args.workers,
            dry_run=args.dry_run,
        )
    except GroupCalError as exc:
        logger.error("Sync aborted: %s", exc)
        return EXIT_FATAL

    return EXIT_OK if report.status == "success" else EXIT_PARTIAL


if __name__ == "__main__":
    raise SystemExit(main())
