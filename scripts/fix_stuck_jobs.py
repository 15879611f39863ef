#!/usr/bin/env python3
"""
Operator script for jobs that stopped making progress.

Usage:
    python scripts/fix_stuck_jobs.py --cancel-all
    python scripts/fix_stuck_jobs.py --reset-stuck
    python scripts/fix_stuck_jobs.py --complete <job_id>
    python scripts/fix_stuck_jobs.py --batch-error <batch_job_id>
"""
import argparse
import asyncio
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import SessionLocal, DATABASE_AVAILABLE
from services.batch_engine import batch_engine
from services.job_controller import JobNotFoundError, job_controller


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recover stuck enrichment jobs and cells")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--cancel-all", action="store_true",
                       help="Cancel every active enrichment job and reset its cells")
    group.add_argument("--reset-stuck", action="store_true",
                       help="Reset pending/processing cells left by cancelled jobs")
    group.add_argument("--complete", metavar="JOB_ID",
                       help="Force-complete one enrichment job")
    group.add_argument("--batch-error", metavar="BATCH_JOB_ID",
                       help="Fail a batch job that never reached the provider")
    group.add_argument("--batch-sync", metavar="BATCH_JOB_ID",
                       help="Reconcile one batch job against its remote status now")
    return parser


def run(args, db) -> int:
    if args.cancel_all:
        cancelled = job_controller.cancel_all_jobs(db)
        reset = job_controller.reset_stuck_cells(db)
        print(f"  [OK] Cancelled {cancelled} jobs, reset {reset} cells")
    elif args.reset_stuck:
        reset = job_controller.reset_stuck_cells(db)
        print(f"  [OK] Reset {reset} cells")
    elif args.complete:
        if job_controller.force_complete_job(db, args.complete):
            print(f"  [OK] Job {args.complete} completed")
        else:
            print(f"  [SKIP] Job {args.complete} was already finished")
    elif args.batch_error:
        result = batch_engine.mark_batch_job_error(db, args.batch_error)
        print(f"  [OK] {result}")
    elif args.batch_sync:
        result = asyncio.run(batch_engine.force_sync_batch_job(db, args.batch_sync))
        print(f"  [OK] {result}")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if not DATABASE_AVAILABLE:
        print("[ERROR] Database not available")
        return 1

    db = SessionLocal()
    try:
        return run(args, db)
    except JobNotFoundError as e:
        print(f"[ERROR] {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
