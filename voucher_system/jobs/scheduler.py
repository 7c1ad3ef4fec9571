from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

from voucher_system.config import settings

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone="UTC")

def start_scheduler():
    """Start all scheduled jobs"""
    from voucher_system.jobs.expiration_sweeper import sweep_expired_vouchers

    try:
        scheduler.add_job(
            sweep_expired_vouchers,
            trigger=IntervalTrigger(hours=settings.VOUCHER_SWEEP_INTERVAL_HOURS),
            id='voucher_expiration_sweep',
            name='Expire lapsed vouchers',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        scheduler.start()
        logger.info("Scheduler started")
        logger.info(f"Active jobs: {len(scheduler.get_jobs())}")
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")

def stop_scheduler():
    """Stop scheduler gracefully"""
    if not scheduler.running:
        return
    try:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")
