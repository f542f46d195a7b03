import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database import Base, create_db_engine, make_session_factory, session_scope
from fx_rates import FxRateService, RateProvider, provider_from_settings
from notifications import LogNotifier, Notifier
from scheduler import JobQueue, SchedulerManager
from services import RecurringTransactionService, seed_default_data


logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a request or background job needs, built once per process."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    notifier: Notifier
    fx: FxRateService
    scheduler: BackgroundScheduler
    jobs: JobQueue

    def session(self):
        return session_scope(self.session_factory)

    def init_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def seed_defaults(self) -> dict[str, int]:
        with self.session() as session:
            created = seed_default_data(session, self.settings.base_currency)
        logger.info(
            f"seed_defaults: accounts={created['accounts']} "
            f"categories={created['categories']}"
        )
        return created

    def convert_legacy_recurrence(self) -> int:
        with self.session() as session:
            return RecurringTransactionService(session).convert_legacy_series()

    def scheduler_manager(self) -> SchedulerManager:
        return SchedulerManager(self)


def build_context(
    settings: Optional[Settings] = None,
    *,
    notifier: Optional[Notifier] = None,
    rate_provider: Optional[RateProvider] = None,
) -> AppContext:
    settings = settings or get_settings()
    engine = create_db_engine(settings.database_url)
    provider = rate_provider or provider_from_settings(settings)
    scheduler = BackgroundScheduler(timezone=settings.timezone)
    # one-off jobs run one at a time, in submission order
    scheduler.add_executor(ThreadPoolExecutor(1), "jobs")
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=make_session_factory(engine),
        notifier=notifier or LogNotifier(),
        fx=FxRateService(provider, cache_hours=settings.fx_cache_hours),
        scheduler=scheduler,
        jobs=JobQueue(scheduler, executor="jobs"),
    )
