"""
Scheduled Tasks Module
Worker loop: template expansion, broadcast planning, job queue polling and the expiry sweep
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

from models import db

logger = logging.getLogger(__name__)
scheduler = None


def run_scheduler_cycle(app, now=None):
    """
    One planning tick: expand templates, then plan imminent broadcasts
    Each step fails independently; the next tick retries
    """
    with app.app_context():
        from utils.schedule_utils import ensure_daily_occurrences
        from utils.broadcast_planner import plan_upcoming

        try:
            ensure_daily_occurrences(now)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Schedule template expansion failed: {e}")

        try:
            created = plan_upcoming(now)
            if created:
                logger.info(f"Broadcast planner created {created} broadcasts")
        except Exception as e:
            db.session.rollback()
            logger.error(f"Broadcast planning failed: {e}")


def run_expiry_sweep(app, now=None):
    """Complete live broadcasts that outlived BROADCAST_MAX_MINUTES"""
    with app.app_context():
        from utils.broadcast_lifecycle import sweep_expired

        try:
            sweep_expired(now)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Expiry sweep failed: {e}")


def run_job_poll(app):
    """Run delayed jobs that are due"""
    with app.app_context():
        from utils.job_queue import job_queue

        try:
            job_queue.run_due()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Job queue poll failed: {e}")


def init_scheduler(app):
    """
    Initialize and start the background scheduler

    Args:
        app: Flask application instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return

    try:
        scheduler = BackgroundScheduler(
            timezone='UTC',
            job_defaults={'coalesce': True, 'max_instances': 1}
        )

        scheduler.add_job(
            func=run_job_poll,
            trigger=IntervalTrigger(seconds=app.config.get('JOB_POLL_SECONDS', 5)),
            args=[app],
            id='job_poll',
            name='Delayed job queue consumer',
            replace_existing=True
        )
        logger.info(f"Job consumer started - polling every {app.config.get('JOB_POLL_SECONDS', 5)}s")

        if app.config.get('SCHEDULER_ENABLED'):
            interval = max(10, app.config.get('SCHEDULER_INTERVAL_SECONDS', 60))
            scheduler.add_job(
                func=run_scheduler_cycle,
                trigger=IntervalTrigger(seconds=interval),
                args=[app],
                id='broadcast_planner',
                name='Template expansion and broadcast planning',
                replace_existing=True
            )
            logger.info(f"Broadcast scheduler started - ticks every {interval}s")

        scheduler.add_job(
            func=run_expiry_sweep,
            trigger=IntervalTrigger(minutes=app.config.get('BROADCAST_SWEEP_MINUTES', 5)),
            args=[app],
            id='expiry_sweep',
            name='Expired broadcast sweep',
            replace_existing=True
        )
        logger.info(f"Expiry sweep started - every {app.config.get('BROADCAST_SWEEP_MINUTES', 5)} minutes")

        scheduler.start()
        logger.info("Scheduler started successfully")

    except Exception as e:
        logger.error(f"Failed to initialize scheduler: {e}")
        scheduler = None
        raise


def shutdown_scheduler():
    """Shutdown the scheduler gracefully"""
    global scheduler

    if scheduler is not None:
        try:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")
        scheduler = None
