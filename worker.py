import argparse
import time
import schedule
import logging
import sys

from config.app_config import (
    DISPUTE_SWEEP_INTERVAL_SECONDS,
    LOG_LEVEL,
    OUTBOX_DISPATCH_INTERVAL_SECONDS,
    PAYOUT_WORKER_INTERVAL_SECONDS,
)
from database.config import SessionLocal
from services.dispute_service import sweep_overdue_disputes
from services.event_bus import get_event_bus
from services.payout_worker import run_payouts

# Configure Logging
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger("worker")


def run_payout_cycle():
    summary = run_payouts(SessionLocal)
    logger.info(f"Payout cycle complete: {summary}")


def run_outbox_cycle():
    delivered = get_event_bus().dispatch_pending()
    if delivered:
        logger.info(f"Outbox cycle complete: {delivered} events delivered")


def run_dispute_cycle():
    escalated = sweep_overdue_disputes(SessionLocal, get_event_bus())
    logger.info(f"Dispute sweep complete: {escalated} disputes escalated")


JOBS = {
    "payouts": (run_payout_cycle, PAYOUT_WORKER_INTERVAL_SECONDS),
    "outbox": (run_outbox_cycle, OUTBOX_DISPATCH_INTERVAL_SECONDS),
    "disputes": (run_dispute_cycle, DISPUTE_SWEEP_INTERVAL_SECONDS),
}


def run_guarded(name):
    """Run one job; a failing cycle is logged and retried on the next tick."""
    job, _ = JOBS[name]
    try:
        job()
    except Exception:
        logger.exception(f"Error in {name} cycle")


def start_scheduler(names):
    for name in names:
        _, interval = JOBS[name]
        logger.info(f"Scheduling {name} every {interval} seconds")
        # Run once immediately
        run_guarded(name)
        schedule.every(interval).seconds.do(run_guarded, name)

    while True:
        schedule.run_pending()
        time.sleep(1)


def main():
    parser = argparse.ArgumentParser(description="TrustWork background worker")
    parser.add_argument("--mode", choices=["once", "schedule"], default="schedule", help="Run once or schedule")
    parser.add_argument("--job", choices=[*JOBS, "all"], default="all", help="Which job to run")
    args = parser.parse_args()

    names = list(JOBS) if args.job == "all" else [args.job]

    if args.mode == "schedule":
        start_scheduler(names)
    else:
        for name in names:
            JOBS[name][0]()


if __name__ == "__main__":
    main()
