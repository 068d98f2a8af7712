"""
Lawnly Background Scheduler

Runs periodic tasks:
- Fire due booking deadlines: 48h auto-release, 7-day price-change expiry
- Retry contractor transfers and refunds that failed after commit
- Promote contractors whose job record earns a higher tier (daily)

Only starts when ENABLE_SCHEDULER=true to prevent running on multiple instances.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


def _run_due_deadlines(app):
    with app.app_context():
        from deadlines import run_due_tasks

        try:
            run_due_tasks()
        except Exception:
            logger.exception("Deadline sweep failed")


def _retry_ledger(app):
    with app.app_context():
        from deadlines import retry_failed_movements

        try:
            retry_failed_movements()
        except Exception:
            logger.exception("Ledger retry sweep failed")


def _promote_contractors(app):
    with app.app_context():
        from deadlines import promote_contractors

        try:
            promote_contractors()
        except Exception:
            logger.exception("Tier promotion sweep failed")


def init_scheduler(app):
    """Initialize and start the background scheduler.

    Only runs if ENABLE_SCHEDULER is set in the app config.
    """
    if not app.config.get("ENABLE_SCHEDULER"):
        logger.info("Scheduler disabled (set ENABLE_SCHEDULER=true to enable)")
        return None

    interval = max(int(app.config.get("SCHEDULER_INTERVAL_MINUTES", 5)), 1)
    try:
        scheduler = BackgroundScheduler(daemon=True)

        scheduler.add_job(
            _run_due_deadlines,
            "interval",
            minutes=interval,
            args=[app],
            id="run_due_deadlines",
            name="Fire due booking deadlines",
            max_instances=1,
            coalesce=True,
        )

        scheduler.add_job(
            _retry_ledger,
            "interval",
            minutes=interval * 3,
            args=[app],
            id="retry_ledger_movements",
            name="Retry failed payouts and refunds",
            max_instances=1,
            coalesce=True,
        )

        scheduler.add_job(
            _promote_contractors,
            "interval",
            hours=24,
            args=[app],
            id="promote_contractors",
            name="Promote contractors up a tier",
            max_instances=1,
            coalesce=True,
        )

        scheduler.start()
        logger.info("Background scheduler started with 3 jobs (every %d min)", interval)
        return scheduler
    except Exception:
        logger.exception("Failed to start scheduler")
        return None
