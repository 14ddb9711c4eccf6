"""
Scheduled Jobs Service
Runs the grace-period sweep that suspends subscriptions behind unpaid invoices
"""
import logging
from typing import Optional
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import config
from ..metrics import increment_counter

logger = logging.getLogger(__name__)

GRACE_SWEEP_JOB_ID = "grace_period_sweep"

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> BackgroundScheduler:
    """
    Get or create the background scheduler instance

    Returns:
        BackgroundScheduler instance
    """
    global _scheduler

    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 600,
            }
        )

    return _scheduler


def start_scheduler():
    """
    Start the background scheduler and register the sweep job
    """
    scheduler = get_scheduler()

    if not scheduler.running:
        scheduler.add_job(
            func=run_grace_period_sweep_job,
            trigger=IntervalTrigger(minutes=config.GRACE_SWEEP_INTERVAL_MINUTES),
            id=GRACE_SWEEP_JOB_ID,
            name='Expire payment grace periods',
            replace_existing=True
        )
        logger.info(f"Registered grace-period sweep job (every {config.GRACE_SWEEP_INTERVAL_MINUTES} minutes)")

        scheduler.start()
        logger.info("Background scheduler started")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """
    Stop the background scheduler
    """
    scheduler = get_scheduler()

    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")


def run_grace_period_sweep_job():
    """
    Grace-period sweep - suspends subscriptions whose grace period elapsed
    and retries processor pauses that failed earlier
    """
    from ..db.engine import SessionLocal
    from .dunning_service import get_retry_manager
    from .notification_gateway import get_notification_gateway

    logger.info("Starting scheduled grace-period sweep")

    db = SessionLocal()

    try:
        manager = get_retry_manager(db, get_notification_gateway(db))
        stats = manager.expire_grace_periods()

        logger.info(
            f"Grace-period sweep complete: processed={stats['processed']} "
            f"suspended={stats['suspended']} pause_retried={stats['pause_retried']} failed={stats['failed']}"
        )

        increment_counter("grace_sweep_runs_total")
        increment_counter("subscriptions_suspended_total", stats['suspended'])
        increment_counter("grace_sweep_errors_total", stats['failed'])
        return stats

    except Exception as e:
        logger.error(f"Grace-period sweep job failed: {e}", exc_info=True)
        increment_counter("grace_sweep_errors_total")
        return None
    finally:
        db.close()


__all__ = [
    'get_scheduler',
    'start_scheduler',
    'stop_scheduler',
    'run_grace_period_sweep_job',
]
