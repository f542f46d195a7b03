from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from fx_rates import FxRateService
from models import Frequency, TransactionType
from notifications import AlertStore
from schemas import AccountIn, BudgetIn, CategoryIn, RecurringTransactionIn, TransactionIn
from services import (
    AccountService,
    BudgetAlertService,
    BudgetService,
    CategoryService,
    RecurringTransactionService,
    TransactionService,
)


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[int, str, int, int]] = []
        self.labels: list[str] = []

    def notify(
        self, budget_id, period_key, spent_cents, budget_cents, *, scope_label="Global"
    ) -> None:
        self.calls.append((budget_id, period_key, spent_cents, budget_cents))
        self.labels.append(scope_label)


class StaticRates:
    name = "static"

    def __init__(self, rates: dict[str, dict[str, Decimal]]) -> None:
        self.rates = rates

    def fetch_rates(self, base: str) -> dict[str, Decimal]:
        return self.rates[base]


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _setup(session: Session):
    account = AccountService(session).create(AccountIn(name="Checking"))
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    housing = categories.create(CategoryIn(name="Housing", type=TransactionType.expense))
    salary = categories.create(CategoryIn(name="Salary", type=TransactionType.income))
    return account, food, housing, salary


def _spend(session: Session, account_id: int, category_id, amount: int, day: date):
    return TransactionService(session).create(
        TransactionIn(
            name="Spend",
            amount_cents=amount,
            type=TransactionType.expense,
            account_id=account_id,
            category_id=category_id,
            date=day,
        )
    )


def test_aggregate_spend_includes_recurring_occurrences():
    with _session() as session:
        account, food, housing, salary = _setup(session)
        _spend(session, account.id, food.id, 30_000, date(2024, 6, 3))
        _spend(session, account.id, food.id, 5_000, date(2024, 5, 31))
        TransactionService(session).create(
            TransactionIn(
                name="Pay",
                amount_cents=250_000,
                type=TransactionType.income,
                account_id=account.id,
                category_id=salary.id,
                date=date(2024, 6, 1),
            )
        )
        RecurringTransactionService(session).create(
            RecurringTransactionIn(
                name="Rent",
                amount_cents=10_000,
                type=TransactionType.expense,
                account_id=account.id,
                category_id=housing.id,
                start_date=date(2024, 1, 1),
                frequency=Frequency.monthly,
            )
        )

        total, by_category = BudgetService(session).aggregate_spend("2024-06")
        assert total == 40_000
        assert by_category == {food.id: 30_000, housing.id: 10_000}


def test_check_alerts_notifies_once_per_period():
    with _session() as session:
        account, food, _, _ = _setup(session)
        budget = BudgetService(session).set_budget(
            BudgetIn(year_month="2024-06", amount_cents=100_000)
        )
        _spend(session, account.id, food.id, 85_000, date(2024, 6, 10))

        notifier = RecordingNotifier()
        alerts = BudgetAlertService(session, notifier).check_alerts("2024-06")
        assert [a.budget_id for a in alerts] == [budget.id]
        assert notifier.calls == [(budget.id, "2024-06", 85_000, 100_000)]
        assert notifier.labels == ["Global"]
        assert AlertStore(session).has_alerted(budget.id, "2024-06")

        _spend(session, account.id, food.id, 10_000, date(2024, 6, 11))
        assert BudgetAlertService(session, notifier).check_alerts("2024-06") == []
        assert len(notifier.calls) == 1


def test_category_budget_alerts_when_reaching_limit():
    with _session() as session:
        account, food, _, _ = _setup(session)
        budget = BudgetService(session).set_budget(
            BudgetIn(year_month="2024-06", amount_cents=20_000, category_id=food.id)
        )
        _spend(session, account.id, food.id, 15_000, date(2024, 6, 2))
        notifier = RecordingNotifier()
        service = BudgetAlertService(session, notifier)
        assert service.check_alerts("2024-06") == []

        _spend(session, account.id, food.id, 5_000, date(2024, 6, 3))
        alerts = service.check_alerts("2024-06")
        assert [(a.budget_id, a.percent) for a in alerts] == [(budget.id, 100)]
        assert notifier.labels == ["Food"]


def test_changing_budget_amount_rearms_alert():
    with _session() as session:
        account, food, _, _ = _setup(session)
        budgets = BudgetService(session)
        budget = budgets.set_budget(BudgetIn(year_month="2024-06", amount_cents=10_000))
        _spend(session, account.id, food.id, 9_000, date(2024, 6, 2))
        notifier = RecordingNotifier()
        service = BudgetAlertService(session, notifier)
        assert len(service.check_alerts("2024-06")) == 1

        same = budgets.set_budget(BudgetIn(year_month="2024-06", amount_cents=11_000))
        assert same.id == budget.id
        assert len(service.check_alerts("2024-06")) == 1
        assert len(notifier.calls) == 2


def test_budget_scope_rules():
    with _session() as session:
        _, food, _, salary = _setup(session)
        budgets = BudgetService(session)
        with pytest.raises(ValueError, match="expense"):
            budgets.set_budget(
                BudgetIn(year_month="2024-06", amount_cents=1_000, category_id=salary.id)
            )
        with pytest.raises(ValueError, match="not found"):
            budgets.set_budget(
                BudgetIn(year_month="2024-06", amount_cents=1_000, category_id=999)
            )
        budgets.set_budget(BudgetIn(year_month="2024-06", amount_cents=1_000))
        budgets.set_budget(BudgetIn(year_month="2024-06", amount_cents=2_000))
        budgets.set_budget(
            BudgetIn(year_month="2024-06", amount_cents=500, category_id=food.id)
        )
        listed = budgets.list_for_period("2024-06")
        assert [(b.is_global, b.amount_cents) for b in listed] == [
            (True, 2_000),
            (False, 500),
        ]


def test_progress_for_period():
    with _session() as session:
        account, food, _, _ = _setup(session)
        budgets = BudgetService(session)
        budgets.set_budget(
            BudgetIn(year_month="2024-06", amount_cents=20_000, category_id=food.id)
        )
        _spend(session, account.id, food.id, 5_000, date(2024, 6, 2))
        [row] = budgets.progress_for_period("2024-06")
        assert row["spent_cents"] == 5_000
        assert row["remaining_cents"] == 15_000
        assert row["percent"] == 25


def test_spend_is_converted_to_base_currency():
    with _session() as session:
        checking, food, _, _ = _setup(session)
        travel = AccountService(session).create(
            AccountIn(name="Travel", currency_code="usd")
        )
        assert travel.currency_code == "USD"
        _spend(session, checking.id, food.id, 1_000, date(2024, 6, 2))
        _spend(session, travel.id, food.id, 1_001, date(2024, 6, 3))

        fx = FxRateService(StaticRates({"USD": {"EUR": Decimal("0.5")}}))
        total, by_category = BudgetService(session, fx, "EUR").aggregate_spend("2024-06")
        assert total == 1_501
        assert by_category[food.id] == 1_501

        travel_only, _ = BudgetService(session, fx, "EUR").aggregate_spend(
            "2024-06", account_id=travel.id
        )
        assert travel_only == 1_001
