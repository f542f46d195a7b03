from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from models import Budget


# Single fixed alert point per budget and period.
ALERT_THRESHOLD = Decimal("0.8")


@dataclass(frozen=True)
class BudgetLine:
    id: int
    amount_cents: int
    year_month: str
    is_global: bool
    category_id: Optional[int] = None

    @classmethod
    def from_model(cls, budget: Budget) -> "BudgetLine":
        return cls(
            id=budget.id,
            amount_cents=budget.amount_cents,
            year_month=budget.year_month,
            is_global=budget.is_global,
            category_id=budget.category_id,
        )


@dataclass(frozen=True)
class BudgetAlert:
    budget_id: int
    period_key: str
    spent_cents: int
    budget_cents: int
    ratio: Decimal
    is_global: bool
    category_id: Optional[int] = None

    @property
    def percent(self) -> int:
        return int(self.ratio * 100)


def spend_ratio(spent_cents: int, budget_cents: int) -> Optional[Decimal]:
    if budget_cents <= 0:
        return None
    return Decimal(spent_cents) / Decimal(budget_cents)


def evaluate(
    period_key: str,
    budgets: Iterable[BudgetLine],
    spend_by_category: Mapping[Optional[int], int],
    total_spend: int,
    already_alerted: Iterable[tuple[int, str]],
) -> set[BudgetAlert]:
    """Return the budgets that crossed the alert threshold in ``period_key``.

    A budget is reported at most once per period: pairs of
    ``(budget_id, period_key)`` in ``already_alerted`` are excluded. Budgets
    with a non-positive amount are ignored, and a category with no recorded
    spend counts as zero.
    """
    alerted = set(already_alerted)
    alerts: set[BudgetAlert] = set()
    for budget in budgets:
        if budget.year_month != period_key:
            continue
        if budget.is_global:
            spent = total_spend
        else:
            spent = spend_by_category.get(budget.category_id, 0)
        ratio = spend_ratio(spent, budget.amount_cents)
        if ratio is None or ratio < ALERT_THRESHOLD:
            continue
        if (budget.id, period_key) in alerted:
            continue
        alerts.add(
            BudgetAlert(
                budget_id=budget.id,
                period_key=period_key,
                spent_cents=spent,
                budget_cents=budget.amount_cents,
                ratio=ratio,
                is_global=budget.is_global,
                category_id=budget.category_id,
            )
        )
    return alerts
