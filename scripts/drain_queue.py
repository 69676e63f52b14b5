#!/usr/bin/env python3
"""
Drain the offline queue once, or list what is still queued.
"""

import argparse
import sys
from pathlib import Path

# Allow running from a checkout without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from nocheck.core.schema import SECTION_DONE
from nocheck.core.service import ChecklistCore


def list_entries(core: ChecklistCore):
    entries = core.list_pending()
    if not entries:
        print("Queue is empty")
        return

    for entry in entries:
        sections = entry.sections or []
        progress = ""
        if sections:
            done = sum(1 for s in sections if s.status == SECTION_DONE)
            progress = f" sections {done}/{len(sections)}"
        error = f" error={entry.error_message}" if entry.error_message else ""
        print(f"{entry.local_id}  {entry.sync_status:<8} store={entry.store_id} "
              f"template={entry.template_id}{progress}{error}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Drain queued checklists into the authoritative store")
    parser.add_argument("--db", help="Authoritative database path (default: DB_PATH)")
    parser.add_argument("--offline-db", help="Offline queue database path (default: OFFLINE_DB_PATH)")
    parser.add_argument("--list", action="store_true", help="Only list queued entries")
    args = parser.parse_args(argv)

    core = ChecklistCore.from_config(db_path=args.db, offline_db_path=args.offline_db)

    if args.list:
        list_entries(core)
        return 0

    result = core.drain_queue()
    if result.skipped_reason:
        print(f"Drain skipped: {result.skipped_reason}")
        return 1

    print(f"Committed: {result.committed}  Failed: {result.failed}")
    return 1 if result.failed else 0


if __name__ == "__main__":
    sys.exit(main())
