"""
Scheduler Service for Handback
Runs the lifecycle sweeps in the background using APScheduler.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime, timezone
import logging
import atexit

from .claim_service import expire_stale_claims
from .report_service import expire_inactive_reports

logger = logging.getLogger(__name__)

CLAIM_EXPIRY_JOB_ID = 'expire_stale_claims'
REPORT_EXPIRY_JOB_ID = 'expire_inactive_reports'


class HandbackScheduler:
    """
    Background scheduler for Handback maintenance tasks.
    Expires stale pending claims and inactive reports.
    """

    def __init__(self):
        """Initialize the scheduler with background execution."""
        self.scheduler = BackgroundScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': False,  # Don't combine multiple missed executions
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period for missed jobs
            }
        )
        self.is_running = False

        atexit.register(self.shutdown)

    def start(self):
        """Start the scheduler and add all jobs."""
        if self.is_running:
            return
        try:
            self.add_claim_expiry_job()
            self.add_report_expiry_job()
            self.scheduler.start()
            self.is_running = True

            logger.info("✅ Handback scheduler started")
            for job in self.scheduler.get_jobs():
                logger.info("   - %s: %s", job.name, job.trigger)
        except Exception as e:
            logger.error("❌ Failed to start scheduler: %s", e)
            raise

    def add_claim_expiry_job(self):
        """Expire pending claims every hour."""
        self.scheduler.add_job(
            func=self._expire_claims_job,
            trigger=IntervalTrigger(hours=1, timezone=timezone.utc),
            id=CLAIM_EXPIRY_JOB_ID,
            name='Expire stale pending claims',
            replace_existing=True,
            coalesce=True,
        )

    def add_report_expiry_job(self):
        """Expire inactive reports daily at 2:00 AM UTC, outside peak hours."""
        self.scheduler.add_job(
            func=self._expire_reports_job,
            trigger=CronTrigger(hour=2, minute=0, timezone=timezone.utc),
            id=REPORT_EXPIRY_JOB_ID,
            name='Expire inactive reports',
            replace_existing=True,
        )

    def _expire_claims_job(self):
        start_time = datetime.now(timezone.utc)
        try:
            result = expire_stale_claims()
        except Exception:
            # Keep the scheduler alive; the next run retries
            logger.exception("❌ Claim expiry sweep failed")
            return
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info("📊 Expired %d claims in %.2f seconds", result['expired'], duration)

    def _expire_reports_job(self):
        try:
            result = expire_inactive_reports()
        except Exception:
            logger.exception("❌ Report expiry sweep failed")
            return
        logger.info("📊 Expired %d lost and %d found reports",
                    result['expired_lost_reports'], result['expired_found_reports'])

    def get_jobs(self):
        """Get list of all scheduled jobs."""
        return self.scheduler.get_jobs()

    def get_job_status(self, job_id):
        """Get status of a specific job."""
        job = self.scheduler.get_job(job_id)
        if not job:
            return None
        return {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger),
        }

    def shutdown(self):
        """Shutdown the scheduler gracefully."""
        if self.is_running:
            try:
                self.scheduler.shutdown(wait=True)
                self.is_running = False
                logger.info("🛑 Handback scheduler shut down")
            except Exception as e:
                logger.error("❌ Error during scheduler shutdown: %s", e)


_scheduler = None


def get_scheduler():
    """Get the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = HandbackScheduler()
    return _scheduler


def start_scheduler():
    """Start the global scheduler instance."""
    get_scheduler().start()


def stop_scheduler():
    """Stop the global scheduler instance."""
    if _scheduler is not None:
        _scheduler.shutdown()


def get_scheduler_status():
    """Report the global scheduler's state without creating one."""
    if _scheduler is None:
        return {'running': False, 'jobs': []}
    jobs = [_scheduler.get_job_status(job_id) for job_id in (CLAIM_EXPIRY_JOB_ID, REPORT_EXPIRY_JOB_ID)]
    return {'running': _scheduler.is_running, 'jobs': [job for job in jobs if job]}
