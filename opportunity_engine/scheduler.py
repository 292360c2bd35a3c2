"""
Scheduler module for the opportunity engine.

Uses APScheduler to run the batch jobs:
- Every 30 minutes: Rebuild due hunts
- Hourly: Verify a batch of candidates
- Daily at 2am: Refresh winner fingerprints for every hunting account

A StoreError fails only the current tick; the next tick retries.
"""

import logging
from typing import Callable

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .errors import StoreError
from .pipeline import get_pipeline

logger = logging.getLogger(__name__)


def _run_job(name: str, job: Callable[[], object]) -> dict:
    """Run one job, turning a store failure into an error summary."""
    logger.info(f"Starting job {name}...")
    try:
        result = job()
    except StoreError as e:
        logger.error(f"Job {name} failed, will retry next tick: {e}")
        return {"job": name, "status": "error", "error": str(e)}
    logger.info(f"Job {name} complete: {result}")
    return {"job": name, "status": "success", "result": result}


def rebuild_due_hunts_job() -> dict:
    return _run_job("rebuild_due_hunts", lambda: get_pipeline().run_due_hunts())


def verification_job() -> dict:
    return _run_job("verify_candidates", lambda: get_pipeline().run_verification())


def refresh_fingerprints_job() -> dict:
    def refresh_all():
        pipeline = get_pipeline()
        return [pipeline.refresh_fingerprints(account_id) for account_id in pipeline.db.get_hunt_accounts()]

    return _run_job("refresh_fingerprints", refresh_all)


def create_scheduler() -> BlockingScheduler:
    """
    Create and configure the APScheduler.

    Jobs:
    1. rebuild_due_hunts: Every 30 minutes
    2. verify_candidates: Every hour
    3. refresh_fingerprints: Daily at 2am

    Returns:
        Configured BlockingScheduler
    """
    scheduler = BlockingScheduler()

    scheduler.add_job(
        rebuild_due_hunts_job,
        trigger=IntervalTrigger(minutes=30),
        id="rebuild_due_hunts",
        name="Rebuild candidate sets for due hunts",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        verification_job,
        trigger=IntervalTrigger(hours=1),
        id="verify_candidates",
        name="Verify candidate lifecycle status",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        refresh_fingerprints_job,
        trigger=CronTrigger(hour=2, minute=0),
        id="refresh_fingerprints",
        name="Refresh winner fingerprints",
        replace_existing=True,
        max_instances=1,
    )

    logger.info("Scheduler configured with 3 jobs")
    return scheduler


def start_scheduler() -> None:
    """Start the scheduler (blocking)."""
    scheduler = create_scheduler()

    logger.info("Starting opportunity engine scheduler...")
    logger.info("Press Ctrl+C to stop")

    # Run due hunts immediately
    rebuild_due_hunts_job()

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point for the scheduler."""
    import argparse

    parser = argparse.ArgumentParser(description="Opportunity Engine Scheduler")
    parser.add_argument(
        "--mode",
        choices=["schedule", "hunts", "verify", "fingerprints"],
        default="schedule",
        help="Mode to run: schedule (continuous), hunts (rebuild due hunts once), verify (one batch), fingerprints (refresh once)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.mode == "schedule":
        start_scheduler()
    elif args.mode == "hunts":
        rebuild_due_hunts_job()
    elif args.mode == "verify":
        verification_job()
    elif args.mode == "fingerprints":
        refresh_fingerprints_job()


if __name__ == "__main__":
    main()
