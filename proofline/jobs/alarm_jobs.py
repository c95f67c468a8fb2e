"""
APScheduler-backed alarm delivery and background sweeps.

Every derived alarm becomes a one-shot ``DateTrigger`` job whose id starts
with the bake id, so a bake's alarms can be cancelled as a unit. A periodic
interval job sweeps active bakes for missed alarms, and another keeps
adaptive readiness checks scheduled ahead of the clock.
"""
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from proofline.config import settings
from proofline.features.flags import Feature, feature_flags
from proofline.models.schemas import Alarm

if TYPE_CHECKING:
    from proofline.services.bake_service import BakeService

logger = logging.getLogger(__name__)

MISSED_SWEEP_JOB_ID = "missed_alarm_sweep"
ADAPTIVE_REFRESH_JOB_ID = "adaptive_check_refresh"

# Global scheduler instance shared by the alarm backend and the sweep job
_scheduler: Optional[BackgroundScheduler] = None


def deliver_alarm(alarm_data: Dict[str, Any]) -> None:
    """
    Fire an alarm.

    Push delivery to devices is outside this service; firing logs the alarm
    so an external notifier can pick it up.
    """
    logger.info(
        f"Alarm due: bake={alarm_data['bake_id']} step={alarm_data['step_id']} "
        f"kind={alarm_data['kind']} at={alarm_data['scheduled_time']}"
    )


def get_alarm_scheduler() -> BackgroundScheduler:
    """Get or create the global alarm scheduler (not started)."""
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(timezone="UTC")
    return _scheduler


class APSchedulerNotificationBackend:
    """
    Notification backend that stores alarms as APScheduler jobs.

    Jobs added before the scheduler starts are held as pending jobs and can
    still be listed and removed.
    """

    def __init__(
        self,
        scheduler: Optional[BackgroundScheduler] = None,
        on_fire: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        """
        Initialize the backend.

        Args:
            scheduler: Scheduler owning the jobs (defaults to the global one)
            on_fire: Called with the alarm's JSON payload when it fires
        """
        self.scheduler = scheduler or get_alarm_scheduler()
        self.on_fire = on_fire or deliver_alarm

    def schedule_alarm(self, alarm: Alarm) -> None:
        self.scheduler.add_job(
            self.on_fire,
            trigger=DateTrigger(run_date=alarm.scheduled_time),
            args=[alarm.model_dump(mode="json")],
            id=alarm.job_id,
            name=f"{alarm.kind.value} alarm for step {alarm.step_id}",
            replace_existing=True,
        )

    def cancel_alarms(self, bake_id: str) -> None:
        prefix = f"{bake_id}:"
        cancelled = 0
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(prefix):
                continue
            try:
                self.scheduler.remove_job(job.id)
            except JobLookupError:
                # Fired after get_jobs() listed it
                continue
            cancelled += 1
        logger.debug(f"Removed {cancelled} alarm jobs for bake {bake_id}")

    def list_alarms(self, bake_id: str) -> List[Alarm]:
        prefix = f"{bake_id}:"
        alarms = [
            Alarm.model_validate(job.args[0])
            for job in self.scheduler.get_jobs()
            if job.id.startswith(prefix)
        ]
        return sorted(alarms, key=lambda a: a.scheduled_time)


def sweep_missed_alarms(service: "BakeService") -> int:
    """
    Detect missed alarms across all active bakes and deliver them.

    Args:
        service: Bake service owning the in-memory sessions

    Returns:
        Number of missed alarms delivered
    """
    if not feature_flags.get_flag(Feature.MISSED_ALARM_DETECTION):
        logger.debug("Missed alarm detection disabled - skipping sweep")
        return 0

    try:
        missed = service.sweep_missed(settings.missed_inactivity_threshold_minutes)
    except Exception as e:
        logger.error(f"Error in missed alarm sweep: {str(e)}")
        raise

    for alarm in missed:
        deliver_alarm(alarm.model_dump(mode="json"))

    if missed:
        logger.info(f"Missed alarm sweep delivered {len(missed)} alarms")
    return len(missed)


def refresh_adaptive_checks(service: "BakeService") -> int:
    """
    Keep readiness checks scheduled for adaptive steps that are still running.

    Returns:
        Number of bakes whose alarms were re-derived
    """
    if not feature_flags.get_flag(Feature.ADAPTIVE_CHECK_ALARMS):
        return 0

    refreshed = service.refresh_adaptive_checks()
    if refreshed:
        logger.info(f"Refreshed adaptive checks for {refreshed} bakes")
    return refreshed


def setup_scheduler(
    service: "BakeService",
    scheduler: Optional[BackgroundScheduler] = None
) -> BackgroundScheduler:
    """
    Register the periodic missed-alarm sweep and adaptive check refresh.

    Returns:
        Configured scheduler instance
    """
    scheduler = scheduler or get_alarm_scheduler()

    scheduler.add_job(
        sweep_missed_alarms,
        trigger=IntervalTrigger(minutes=settings.missed_check_interval_minutes),
        args=[service],
        id=MISSED_SWEEP_JOB_ID,
        name="Missed alarm sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        refresh_adaptive_checks,
        trigger=IntervalTrigger(minutes=settings.missed_check_interval_minutes),
        args=[service],
        id=ADAPTIVE_REFRESH_JOB_ID,
        name="Adaptive check refresh",
        replace_existing=True,
    )

    logger.info(
        f"Scheduled missed alarm sweep every {settings.missed_check_interval_minutes} minutes"
    )
    return scheduler


def start_scheduler(service: "BakeService") -> Optional[BackgroundScheduler]:
    """
    Start the alarm scheduler.

    Only starts if ENABLE_BACKGROUND_JOBS is True in settings.
    """
    if not settings.enable_background_jobs:
        logger.info("Background jobs are disabled in settings")
        return None

    scheduler = setup_scheduler(service)
    scheduler.start()

    logger.info("Alarm scheduler started successfully")

    return scheduler


def stop_scheduler(scheduler: Optional[BackgroundScheduler]):
    """
    Stop the alarm scheduler gracefully.

    Args:
        scheduler: The scheduler instance to stop
    """
    if scheduler:
        scheduler.shutdown(wait=True)
        logger.info("Alarm scheduler stopped")
