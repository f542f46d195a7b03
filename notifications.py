import logging
from typing import Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models import BudgetAlertRecord


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(
        self,
        budget_id: int,
        period_key: str,
        spent_cents: int,
        budget_cents: int,
        *,
        scope_label: str = "Global",
    ) -> None: ...


def format_amount(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def format_budget_alert(
    spent_cents: int, budget_cents: int, scope_label: str = "Global"
) -> tuple[str, str]:
    percent = spent_cents * 100 // budget_cents if budget_cents > 0 else 0
    title = f"{scope_label} budget {percent}% used"
    body = f"{format_amount(spent_cents)} spent of {format_amount(budget_cents)}"
    return title, body


class LogNotifier:
    """Dispatches budget alerts to the application log."""

    def notify(
        self,
        budget_id: int,
        period_key: str,
        spent_cents: int,
        budget_cents: int,
        *,
        scope_label: str = "Global",
    ) -> None:
        title, body = format_budget_alert(spent_cents, budget_cents, scope_label)
        logger.info(
            f"budget_alert: budget={budget_id} period={period_key} "
            f"title={title!r} body={body!r}"
        )


class AlertStore:
    """Remembers which budgets were already alerted in a period."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def has_alerted(self, budget_id: int, period_key: str) -> bool:
        stmt = select(BudgetAlertRecord.id).where(
            BudgetAlertRecord.budget_id == budget_id,
            BudgetAlertRecord.year_month == period_key,
        )
        return self.session.execute(stmt.limit(1)).scalar_one_or_none() is not None

    def mark_alerted(self, budget_id: int, period_key: str) -> None:
        if self.has_alerted(budget_id, period_key):
            return
        self.session.add(BudgetAlertRecord(budget_id=budget_id, year_month=period_key))
        self.session.flush()

    def alerted_for_period(self, period_key: str) -> set[tuple[int, str]]:
        stmt = select(BudgetAlertRecord.budget_id).where(
            BudgetAlertRecord.year_month == period_key
        )
        return {(budget_id, period_key) for budget_id in self.session.scalars(stmt)}

    def clear(self, budget_id: int, period_key: Optional[str] = None) -> None:
        stmt = delete(BudgetAlertRecord).where(BudgetAlertRecord.budget_id == budget_id)
        if period_key is not None:
            stmt = stmt.where(BudgetAlertRecord.year_month == period_key)
        self.session.execute(stmt)
