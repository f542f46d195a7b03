import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from database import session_scope
from periods import local_today, period_key
from services import BudgetAlertService

if TYPE_CHECKING:  # pragma: no cover
    from context import AppContext


logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


@dataclass
class JobRecord:
    job_id: str
    name: str
    status: JobStatus = JobStatus.pending
    result: Any = None
    error: Optional[str] = None
    submitted_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


class JobQueue:
    """One-off background jobs whose outcome can be inspected afterwards."""

    def __init__(self, scheduler: BackgroundScheduler, executor: str = "default") -> None:
        self.scheduler = scheduler
        self.executor = executor
        self._records: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def submit(self, name: str, func: Callable[..., Any], *args: Any) -> JobRecord:
        record = JobRecord(job_id=f"{name}-{uuid.uuid4().hex[:8]}", name=name)
        with self._lock:
            self._records[record.job_id] = record
        self.scheduler.add_job(
            self._run,
            args=[record, func, args],
            id=record.job_id,
            name=name,
            executor=self.executor,
            misfire_grace_time=None,
        )
        logger.info(f"job_submitted: id={record.job_id}")
        return record

    def _run(self, record: JobRecord, func: Callable[..., Any], args: tuple) -> None:
        record.status = JobStatus.running
        try:
            record.result = func(*args)
            record.status = JobStatus.succeeded
            logger.info(f"job_finished: id={record.job_id} status=succeeded")
        except Exception as exc:
            record.error = f"{type(exc).__name__}: {exc}"
            record.status = JobStatus.failed
            logger.exception(f"job_finished: id={record.job_id} status=failed")
        finally:
            record.finished_at = datetime.utcnow()
            record._done.set()

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            record = self._records.get(job_id)
        if record is None:
            raise ValueError("Job not found")
        return record

    def list_all(self) -> list[JobRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.submitted_at)


class SchedulerManager:
    def __init__(self, context: "AppContext") -> None:
        self.context = context
        self.scheduler = context.scheduler

    def _run_job(self, source: str = "manual") -> int:
        settings = self.context.settings
        key = period_key(local_today(settings.timezone))
        logger.info(f"scheduler_run: source={source} period={key}")
        try:
            with session_scope(self.context.session_factory) as session:
                service = BudgetAlertService(
                    session,
                    self.context.notifier,
                    self.context.fx,
                    settings.base_currency,
                )
                alerts = service.check_alerts(key)
        except Exception:
            logger.exception(f"scheduler_run: source={source} failed")
            return 0
        logger.info(f"scheduler_run: source={source} alerts={len(alerts)}")
        return len(alerts)

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="budget_alerts_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="budget_alerts_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
