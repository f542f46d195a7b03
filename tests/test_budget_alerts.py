from decimal import Decimal

from budget_alerts import ALERT_THRESHOLD, BudgetLine, evaluate, spend_ratio
from notifications import LogNotifier, format_budget_alert


def _global(budget_id: int = 1, amount: int = 100_000, key: str = "2024-06") -> BudgetLine:
    return BudgetLine(id=budget_id, amount_cents=amount, year_month=key, is_global=True)


def _category(
    budget_id: int, category_id: int, amount: int, key: str = "2024-06"
) -> BudgetLine:
    return BudgetLine(
        id=budget_id,
        amount_cents=amount,
        year_month=key,
        is_global=False,
        category_id=category_id,
    )


def test_threshold_is_eighty_percent():
    assert ALERT_THRESHOLD == Decimal("0.8")
    assert spend_ratio(80, 100) == Decimal("0.8")
    assert spend_ratio(10, 0) is None


def test_global_budget_over_threshold_alerts_once():
    alerts = evaluate("2024-06", [_global()], {}, 85_000, set())
    assert len(alerts) == 1
    alert = alerts.pop()
    assert alert.budget_id == 1
    assert alert.period_key == "2024-06"
    assert alert.spent_cents == 85_000
    assert alert.budget_cents == 100_000
    assert alert.percent == 85

    again = evaluate("2024-06", [_global()], {}, 95_000, {(1, "2024-06")})
    assert again == set()


def test_category_budget_crosses_threshold_exactly():
    budget = _category(2, category_id=4, amount=20_000)
    assert evaluate("2024-06", [budget], {4: 15_000}, 15_000, set()) == set()
    alerts = evaluate("2024-06", [budget], {4: 20_000}, 20_000, set())
    assert [a.budget_id for a in alerts] == [2]
    assert alerts.pop().percent == 100


def test_exact_threshold_triggers():
    alerts = evaluate("2024-06", [_global(amount=1_000)], {}, 800, set())
    assert len(alerts) == 1


def test_category_without_spend_counts_as_zero():
    budget = _category(3, category_id=9, amount=1_000)
    assert evaluate("2024-06", [budget], {4: 5_000}, 5_000, set()) == set()


def test_non_positive_budgets_are_skipped():
    budgets = [_global(1, amount=0), _category(2, category_id=4, amount=-10)]
    assert evaluate("2024-06", budgets, {4: 500}, 500, set()) == set()


def test_budgets_from_other_periods_are_ignored():
    budgets = [_global(1, key="2024-05"), _global(2, amount=1_000)]
    alerts = evaluate("2024-06", budgets, {}, 900, set())
    assert {a.budget_id for a in alerts} == {2}


def test_dedup_is_per_period():
    budget = _global(1, amount=1_000, key="2024-07")
    alerts = evaluate("2024-07", [budget], {}, 900, {(1, "2024-06")})
    assert {a.budget_id for a in alerts} == {1}


def test_global_and_category_budgets_evaluate_independently():
    budgets = [_global(1, amount=100_000), _category(2, category_id=4, amount=10_000)]
    alerts = evaluate("2024-06", budgets, {4: 9_000, 5: 1_000}, 10_000, set())
    assert {a.budget_id for a in alerts} == {2}


def test_format_budget_alert():
    title, body = format_budget_alert(85_000, 100_000)
    assert title == "Global budget 85% used"
    assert body == "850.00 spent of 1,000.00"


def test_format_category_budget_alert():
    title, body = format_budget_alert(20_000, 20_000, "Food")
    assert title == "Food budget 100% used"
    assert body == "200.00 spent of 200.00"


def test_log_notifier_writes_alert(caplog):
    caplog.set_level("INFO", logger="notifications")
    LogNotifier().notify(1, "2024-06", 15_000, 20_000, scope_label="Food")
    assert "budget_alert: budget=1 period=2024-06" in caplog.text
    assert "Food budget 75% used" in caplog.text
