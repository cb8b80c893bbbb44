# ============================================================================
# CEIBA - Daily Report Scheduler (APScheduler-based)
# ============================================================================
# One interval job ("tick") polls the schedule configuration. When the day's
# generation time has passed and no run is recorded for today, the run for
# [yesterday 00:00, today 00:00) is handed to the scheduler's thread pool as
# a one-off job so the tick itself never waits on AI or email calls.
#
# The last-run marker is persisted together with the day's report row, so a
# restart later the same day does not produce a second report.
# ============================================================================

import logging
import threading
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Set

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import ConfigurationStore, get_config, get_local_now, get_timezone, parse_time_of_day
from .models import (
    AuditCodes, AuditSink, ReportRepository, SchedulerStateRepository,
    SqliteAuditSink, to_db_ts,
)

logger = logging.getLogger("reporting.scheduler")

TICK_JOB_ID = "report_tick"
SCHEDULER_ACTOR = "system"


def period_for(run_day: date):
    """The period a scheduled run on `run_day` reports on."""
    end = datetime.combine(run_day, time())
    return end - timedelta(days=1), end


class ReportScheduler:
    """
    Daily trigger for the report pipeline.

    tick() can be called directly (tests, one-shot cron usage); while the
    APScheduler instance is running it is also called every
    `scheduler_poll_seconds`.
    """

    def __init__(self, engine=None, config_store: Optional[ConfigurationStore] = None,
                 audit: Optional[AuditSink] = None):
        self._engine = engine
        self.config_store = config_store or ConfigurationStore()
        self.audit = audit or SqliteAuditSink(category="scheduler")
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._reported_issues: Set[str] = set()
        self._running = False
        self._init_scheduler()

    def _init_scheduler(self):
        self._scheduler = BackgroundScheduler(
            timezone=get_timezone(),
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
        )
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    @property
    def engine(self):
        if self._engine is None:
            from .engine import get_engine
            self._engine = get_engine()
        return self._engine

    def _audit(self, code: str, detail: str = None, actor: str = None, related_id: Any = None):
        try:
            self.audit.log_event(code, related_id=related_id,
                                 related_table="generated_reports" if related_id else None,
                                 detail=detail, actor=actor)
        except Exception as e:
            logger.warning("Audit event %s not recorded: %s", code, e)

    def _on_job_executed(self, event):
        if event.job_id != TICK_JOB_ID:
            logger.info(f"Job {event.job_id} executed successfully")

    def _on_job_error(self, event):
        logger.error(f"Job {event.job_id} failed: {event.exception}")
        self._audit(AuditCodes.SCHEDULER_JOB_ERROR, f"Job {event.job_id} failed: {event.exception}")

    # ------------------------------------------------------------------
    # Lifecycle: start / stop
    # ------------------------------------------------------------------

    def start(self, user: str = SCHEDULER_ACTOR) -> bool:
        if self._running:
            logger.info("Scheduler already running")
            return True

        poll_seconds = max(int(get_config("scheduler_poll_seconds", 60)), 1)
        try:
            self._scheduler.add_job(
                self.tick,
                trigger=IntervalTrigger(seconds=poll_seconds),
                id=TICK_JOB_ID,
                replace_existing=True,
            )
            if self._scheduler.running:
                self._scheduler.resume()
            else:
                self._scheduler.start()
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}", exc_info=True)
            return False

        self._running = True
        logger.info(f"Scheduler started, polling every {poll_seconds}s")
        self._audit(AuditCodes.SCHEDULER_STARTED, f"Polling every {poll_seconds}s", actor=user)
        self.reconcile()
        return True

    def stop(self, user: str = SCHEDULER_ACTOR) -> bool:
        if not self._running:
            logger.info("Scheduler already stopped")
            return True
        try:
            if self._scheduler.running:
                self._scheduler.remove_job(TICK_JOB_ID)
                self._scheduler.pause()
        except Exception as e:
            logger.error(f"Failed to stop scheduler: {e}")
            return False

        self._running = False
        logger.info("Scheduler stopped")
        self._audit(AuditCodes.SCHEDULER_STOPPED, actor=user)
        return True

    def shutdown(self):
        """Process exit. Does not wait for an in-flight run."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._running = False

    def is_running(self) -> bool:
        return self._running and self._scheduler.running

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> bool:
        """
        Start today's run if it is due. Returns True when a run was
        dispatched by this call.
        """
        schedule = self.config_store.get_schedule()
        if not schedule.enabled:
            return False

        generation_time = parse_time_of_day(schedule.generation_time)
        if generation_time is None:
            logger.warning("Invalid generation time in schedule: %r", schedule.generation_time)
            return False

        now = now or get_local_now()
        if now.time() < generation_time:
            return False

        run_date = now.date().isoformat()
        if SchedulerStateRepository.get().get("last_run_date") == run_date:
            self.reconcile(now.date())
            return False

        with self._lock:
            if run_date in self._in_flight:
                return False
            # A run may have finished since the first read.
            if SchedulerStateRepository.get().get("last_run_date") == run_date:
                return False
            self._in_flight.add(run_date)

        logger.info("Scheduled report for %s is due (generation time %s)", run_date, generation_time)
        if self.is_running():
            try:
                self._scheduler.add_job(
                    self._run,
                    args=[run_date],
                    id=f"report_run_{run_date}",
                    misfire_grace_time=None,
                )
            except ConflictingIdError:
                logger.info("Run for %s already queued", run_date)
            except Exception:
                self._finish(run_date)
                raise
        else:
            self._run(run_date)
        return True

    def _finish(self, run_date: str):
        with self._lock:
            self._in_flight.discard(run_date)

    def _run(self, run_date: str):
        try:
            if SchedulerStateRepository.get().get("last_run_date") == run_date:
                logger.info("Run for %s already recorded, skipping", run_date)
                return
            start, end = period_for(date.fromisoformat(run_date))
            result = self.engine.generate(
                start, end,
                template_id=None,
                send_immediately=True,
                actor=SCHEDULER_ACTOR,
                run_date=run_date,
            )
            if result.ok:
                report = result.value
                logger.info("Scheduled report %s for %s finished%s", report.id, run_date,
                            f" with warnings: {report.last_error}" if report.last_error else "")
            else:
                # No marker was written; the next tick tries again.
                logger.error("Scheduled run for %s failed: %s", run_date, result.error)
                self._audit(AuditCodes.SCHEDULER_JOB_ERROR,
                            f"Run for {run_date} failed: {result.error}", actor=SCHEDULER_ACTOR)
        finally:
            self._finish(run_date)

    # ------------------------------------------------------------------
    # Marker consistency
    # ------------------------------------------------------------------

    def reconcile(self, today: Optional[date] = None) -> List[str]:
        """
        Compare the last-run marker with the stored reports. Mismatches are
        logged and audited once per process; nothing is repaired.
        """
        today = today or get_local_now().date()
        state = SchedulerStateRepository.get()
        start, end = period_for(today)
        issues = []

        if state.get("last_run_date") == today.isoformat():
            report_id = state.get("last_report_id")
            if report_id is None or ReportRepository.get_by_id(report_id) is None:
                issues.append(f"Marker set for {today} but report {report_id} does not exist")
        else:
            scheduled = [r for r in ReportRepository.find_for_period(to_db_ts(start), to_db_ts(end))
                         if r.created_by == SCHEDULER_ACTOR]
            for report in scheduled:
                issues.append(f"Report {report.id} covers {today - timedelta(days=1)} "
                              f"but no run is recorded for {today}")

        for issue in issues:
            if issue in self._reported_issues:
                continue
            self._reported_issues.add(issue)
            logger.warning("Scheduler state mismatch: %s", issue)
            self._audit(AuditCodes.SCHEDULER_MISMATCH, issue, actor=SCHEDULER_ACTOR)
        return issues

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        schedule = self.config_store.get_schedule()
        state = SchedulerStateRepository.get()
        next_tick = None
        if self.is_running():
            job = self._scheduler.get_job(TICK_JOB_ID)
            if job and job.next_run_time:
                next_tick = job.next_run_time.isoformat()
        with self._lock:
            in_flight = sorted(self._in_flight)
        return {
            "enabled": schedule.enabled,
            "running": self.is_running(),
            "generation_time": schedule.generation_time,
            "poll_seconds": int(get_config("scheduler_poll_seconds", 60)),
            "last_run_date": state.get("last_run_date"),
            "last_report_id": state.get("last_report_id"),
            "next_tick": next_tick,
            "in_flight": in_flight,
        }


# ============================================================================
# Singleton access + initialization
# ============================================================================

_scheduler_instance: Optional[ReportScheduler] = None


def get_scheduler() -> ReportScheduler:
    """Get the global scheduler instance."""
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = ReportScheduler()
    return _scheduler_instance


def init_scheduler() -> ReportScheduler:
    """Initialize the scheduler on application startup."""
    scheduler = get_scheduler()
    if get_config("scheduler_autostart", True):
        logger.info("Auto-starting report scheduler")
        scheduler.start(user=SCHEDULER_ACTOR)
    else:
        logger.info("Scheduler autostart disabled - not starting")
        scheduler.reconcile()
    return scheduler
