#!/usr/bin/env python3
"""
Run the periodic sweeps: drain retry, overdue action plans, stale cross validations.
"""

import argparse
import sys
from pathlib import Path

# Allow running from a checkout without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from nocheck.core import heartbeat
from nocheck.core.config import get_heartbeat_interval, is_heartbeat_enabled
from nocheck.core.service import ChecklistCore
from nocheck.util.logging import logger


def main(argv=None):
    """Main entry point for heartbeat script."""
    parser = argparse.ArgumentParser(description="Run NoCheck periodic sweeps")
    parser.add_argument("--db", help="Authoritative database path (default: DB_PATH)")
    parser.add_argument("--offline-db", help="Offline queue database path (default: OFFLINE_DB_PATH)")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between runs of each task")
    parser.add_argument("--once", action="store_true", help="Run every task once and exit")
    args = parser.parse_args(argv)

    core = ChecklistCore.from_config(db_path=args.db, offline_db_path=args.offline_db)
    interval = args.interval or get_heartbeat_interval()

    if args.once:
        drained = core.drain_queue()
        overdue = core.sweep_overdue_action_plans()
        expired = core.expire_stale_cross_validations()
        logger.info(f"Sweep done: committed={drained.committed} failed={drained.failed} "
                    f"overdue={overdue} expired={expired}")
        return 0

    if not is_heartbeat_enabled():
        logger.error("Heartbeat requires HEARTBEAT_ENABLED=true (or use --once)")
        return 1

    try:
        heartbeat.register_core_tasks(core, interval)
        heartbeat.start()
    except ValueError as e:
        logger.error(f"Heartbeat configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        heartbeat.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
