#!/usr/bin/env python3
"""
Run one deadline scan and exit. Meant for cron when the in-process
scheduler is disabled (DEADLINE_SCHEDULER_ENABLED=false).
Run from project root: python scripts/run_deadline_scan.py [--lookahead-hours N]
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jobsync.db import SessionLocal
from jobsync.logging import setup_logging
from jobsync.services.deadlines import DeadlineScanner


def run(lookahead_hours=None):
    setup_logging()
    report = DeadlineScanner(SessionLocal, lookahead_hours=lookahead_hours).run_once()
    print(
        f"Scanned {report.scanned}: emitted {report.emitted}, "
        f"suppressed {report.suppressed}, skipped {report.skipped}"
    )
    return report


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--lookahead-hours", type=int, default=None)
    args = parser.parse_args()
    run(args.lookahead_hours)
