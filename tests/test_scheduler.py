import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from config import Settings
from context import build_context
from models import TransactionType
from periods import local_today, period_key
from scheduler import JobQueue, JobStatus
from schemas import AccountIn, BudgetIn, TransactionIn
from services import AccountService, BudgetService, TransactionService


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls = []
        self.labels = []

    def notify(
        self, budget_id, period_key, spent_cents, budget_cents, *, scope_label="Global"
    ) -> None:
        self.calls.append((budget_id, period_key, spent_cents, budget_cents))
        self.labels.append(scope_label)


class NoRates:
    name = "none"

    def fetch_rates(self, base):
        raise RuntimeError("offline")


def _settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        timezone="UTC",
        base_currency="EUR",
        fx_provider="exchangerate-api",
        fx_timeout_secs=1,
        fx_cache_hours=24,
    )


@pytest.fixture
def scheduler():
    sched = BackgroundScheduler(timezone="UTC")
    sched.start()
    yield sched
    sched.shutdown(wait=False)


def test_job_queue_records_success(scheduler):
    jobs = JobQueue(scheduler)
    record = jobs.submit("answer", lambda x: x * 2, 21)
    assert record.wait(5)
    assert record.status == JobStatus.succeeded
    assert record.result == 42
    assert record.finished_at is not None
    assert jobs.get(record.job_id) is record


def test_job_queue_records_failure(scheduler):
    def boom():
        raise ValueError("boom")

    jobs = JobQueue(scheduler)
    record = jobs.submit("boom", boom)
    assert record.wait(5)
    assert record.status == JobStatus.failed
    assert record.error == "ValueError: boom"
    assert [r.job_id for r in jobs.list_all()] == [record.job_id]


def test_job_queue_unknown_job(scheduler):
    with pytest.raises(ValueError, match="Job not found"):
        JobQueue(scheduler).get("missing")


def test_pending_until_scheduler_runs():
    jobs = JobQueue(BackgroundScheduler(timezone="UTC"))
    record = jobs.submit("later", lambda: None)
    assert record.status == JobStatus.pending
    assert not record.done


def test_scheduled_alert_run_dedups():
    notifier = RecordingNotifier()
    ctx = build_context(_settings(), notifier=notifier, rate_provider=NoRates())
    ctx.init_schema()
    today = local_today("UTC")
    key = period_key(today)

    with ctx.session() as session:
        account = AccountService(session).create(AccountIn(name="Checking"))
        BudgetService(session).set_budget(BudgetIn(year_month=key, amount_cents=1_000))
        TransactionService(session).create(
            TransactionIn(
                name="Dinner",
                amount_cents=900,
                type=TransactionType.expense,
                account_id=account.id,
                date=today,
            )
        )

    manager = ctx.scheduler_manager()
    assert manager._run_job("test") == 1
    assert manager._run_job("test") == 0
    assert len(notifier.calls) == 1
    assert notifier.calls[0][1] == key


def test_seed_defaults_runs_once():
    ctx = build_context(_settings(), notifier=RecordingNotifier(), rate_provider=NoRates())
    ctx.init_schema()
    first = ctx.seed_defaults()
    second = ctx.seed_defaults()
    assert first["accounts"] == 1
    assert first["categories"] == 8
    assert second == {"accounts": 0, "categories": 0}
    with ctx.session() as session:
        [account] = AccountService(session).list_all()
        assert account.is_default
        assert account.currency_code == "EUR"


def test_start_registers_recurring_jobs():
    ctx = build_context(_settings(), notifier=RecordingNotifier(), rate_provider=NoRates())
    ctx.init_schema()
    manager = ctx.scheduler_manager()
    manager.start()
    try:
        assert ctx.scheduler.running
        assert ctx.scheduler.get_job("budget_alerts_daily") is not None
        assert ctx.scheduler.get_job("budget_alerts_hourly_safety") is not None
    finally:
        manager.stop()
    assert not ctx.scheduler.running
