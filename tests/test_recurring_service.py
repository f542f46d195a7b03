from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Frequency,
    LegacyRecurrence,
    RecurringTransaction,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    CategoryIn,
    OccurrenceEditIn,
    RecurringTransactionIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    RecurringTransactionService,
    TransactionService,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _rent(session: Session, start: date = date(2024, 1, 31)) -> RecurringTransaction:
    account = AccountService(session).create(AccountIn(name="Checking"))
    housing = CategoryService(session).create(
        CategoryIn(name="Housing", type=TransactionType.expense)
    )
    return RecurringTransactionService(session).create(
        RecurringTransactionIn(
            name="Rent",
            amount_cents=90_000,
            type=TransactionType.expense,
            account_id=account.id,
            category_id=housing.id,
            start_date=start,
            frequency=Frequency.monthly,
        )
    )


def test_occurrences_are_virtual_until_edited():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        occurrences = recurring.occurrences(rule.id, date(2024, 1, 1), date(2024, 5, 1))
        assert [o.occurrence_date for o in occurrences] == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 31),
            date(2024, 4, 30),
        ]
        assert all(o.is_virtual for o in occurrences)
        stored = session.scalars(select(Transaction)).all()
        assert stored == []


def test_modify_occurrence_stores_single_override():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        txn = recurring.modify_occurrence(
            rule.id, date(2024, 2, 29), OccurrenceEditIn(amount_cents=95_000)
        )
        assert txn.is_modified
        assert txn.occurrence_date == date(2024, 2, 29)

        recurring.modify_occurrence(
            rule.id, date(2024, 2, 29), OccurrenceEditIn(note="raised", date=date(2024, 3, 2))
        )
        rows = session.scalars(
            select(Transaction).where(Transaction.recurring_id == rule.id)
        ).all()
        assert len(rows) == 1
        assert rows[0].amount_cents == 95_000
        assert rows[0].note == "raised"

        feb = recurring.occurrences(rule.id, date(2024, 2, 1), date(2024, 3, 1))
        assert len(feb) == 1
        assert feb[0].transaction_id == rows[0].id
        assert feb[0].date == date(2024, 3, 2)
        assert feb[0].amount_cents == 95_000


def test_modify_rejects_dates_off_schedule():
    with _session() as session:
        rule = _rent(session)
        with pytest.raises(ValueError, match="Not an occurrence"):
            RecurringTransactionService(session).modify_occurrence(
                rule.id, date(2024, 2, 28), OccurrenceEditIn(amount_cents=1)
            )


def test_delete_and_restore_single_occurrence():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        recurring.delete_occurrence(rule.id, date(2024, 3, 31))
        remaining = recurring.occurrences(rule.id, date(2024, 1, 1), date(2024, 5, 1))
        assert date(2024, 3, 31) not in [o.occurrence_date for o in remaining]
        assert len(remaining) == 3

        recurring.restore_occurrence(rule.id, date(2024, 3, 31))
        restored = recurring.occurrences(rule.id, date(2024, 3, 1), date(2024, 4, 1))
        assert len(restored) == 1
        assert restored[0].is_virtual


def test_soft_deleting_stored_occurrence_hides_it():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        txn = recurring.modify_occurrence(
            rule.id, date(2024, 1, 31), OccurrenceEditIn(amount_cents=80_000)
        )
        TransactionService(session).soft_delete(txn.id)
        jan = recurring.occurrences(rule.id, date(2024, 1, 1), date(2024, 2, 1))
        assert jan == []


def test_schedule_change_detaches_modified_and_drops_other_overrides():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        modified = recurring.modify_occurrence(
            rule.id, date(2024, 2, 29), OccurrenceEditIn(amount_cents=95_000)
        )
        recurring.delete_occurrence(rule.id, date(2024, 3, 31))

        data = RecurringTransactionIn(
            name="Rent",
            amount_cents=90_000,
            type=TransactionType.expense,
            account_id=rule.account_id,
            category_id=rule.category_id,
            start_date=date(2024, 1, 15),
            frequency=Frequency.monthly,
        )
        recurring.update(rule.id, data)

        session.refresh(modified)
        assert modified.recurring_id is None
        assert modified.occurrence_date is None
        rows = session.scalars(
            select(Transaction).where(Transaction.recurring_id == rule.id)
        ).all()
        assert rows == []

        march = recurring.occurrences(rule.id, date(2024, 3, 1), date(2024, 4, 1))
        assert [o.occurrence_date for o in march] == [date(2024, 3, 15)]
        ledger = TransactionService(session).ledger_for_period("2024-02")
        assert {e.amount_cents for e in ledger} == {90_000, 95_000}


def test_delete_template_only_deactivates_when_occurrences_stored():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        recurring.modify_occurrence(
            rule.id, date(2024, 1, 31), OccurrenceEditIn(amount_cents=1_000)
        )
        assert recurring.delete(rule.id) is False
        assert recurring.get(rule.id).is_active is False
        assert recurring.occurrences(rule.id, date(2024, 1, 1), date(2025, 1, 1)) == []

        other = recurring.create(
            RecurringTransactionIn(
                name="Gym",
                amount_cents=3_000,
                type=TransactionType.expense,
                account_id=rule.account_id,
                start_date=date(2024, 1, 5),
                frequency=Frequency.monthly,
            )
        )
        assert recurring.delete(other.id) is True
        with pytest.raises(ValueError, match="not found"):
            recurring.get(other.id)


def test_ledger_merges_stored_and_virtual_rows():
    with _session() as session:
        rule = _rent(session, start=date(2024, 6, 1))
        TransactionService(session).create(
            TransactionIn(
                name="Groceries",
                amount_cents=4_500,
                type=TransactionType.expense,
                account_id=rule.account_id,
                date=date(2024, 6, 12),
            )
        )
        TransactionService(session).create(
            TransactionIn(
                name="Groceries",
                amount_cents=4_500,
                type=TransactionType.expense,
                account_id=rule.account_id,
                date=date(2024, 7, 2),
            )
        )
        ledger = TransactionService(session).ledger_for_period("2024-06")
        assert [(e.date, e.name) for e in ledger] == [
            (date(2024, 6, 1), "Rent"),
            (date(2024, 6, 12), "Groceries"),
        ]
        assert ledger[0].recurring_id == rule.id
        assert ledger[1].transaction_id is not None


def test_upcoming_lists_next_dates():
    with _session() as session:
        rule = _rent(session)
        upcoming = RecurringTransactionService(session).upcoming(date(2024, 2, 10))
        assert [(r.id, d) for r, d in upcoming] == [(rule.id, date(2024, 2, 29))]


def test_convert_legacy_series_creates_template():
    with _session() as session:
        account = AccountService(session).create(AccountIn(name="Checking"))
        for day, amount in ((date(2024, 1, 5), 1_000), (date(2024, 2, 5), 1_200)):
            session.add(
                Transaction(
                    name="Phone",
                    amount_cents=amount,
                    type=TransactionType.expense,
                    account_id=account.id,
                    date=day,
                    recurrence=LegacyRecurrence.monthly,
                    recurrence_group_id=7,
                )
            )
        session.commit()

        recurring = RecurringTransactionService(session)
        assert recurring.convert_legacy_series() == 1
        assert recurring.convert_legacy_series() == 0

        [rule] = recurring.list()
        assert rule.frequency == Frequency.monthly
        assert rule.interval == 1
        assert rule.amount_cents == 1_000

        occurrences = recurring.occurrences(rule.id, date(2024, 1, 1), date(2024, 4, 1))
        assert [o.amount_cents for o in occurrences] == [1_000, 1_200, 1_000]
        assert occurrences[0].transaction_id is not None
        assert occurrences[1].is_modified
        assert occurrences[2].is_virtual


def _legacy_rows(session: Session, days: list[date], amount: int = 1_000) -> int:
    account = AccountService(session).create(AccountIn(name="Checking"))
    for day in days:
        session.add(
            Transaction(
                name="Insurance",
                amount_cents=amount,
                type=TransactionType.expense,
                account_id=account.id,
                date=day,
                recurrence=LegacyRecurrence.monthly,
                recurrence_group_id=3,
            )
        )
    session.commit()
    return account.id


def test_convert_chained_month_end_series_counts_each_month_once():
    with _session() as session:
        _legacy_rows(
            session,
            [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 29), date(2024, 4, 29)],
        )
        recurring = RecurringTransactionService(session)
        assert recurring.convert_legacy_series() == 1

        total, _ = BudgetService(session).aggregate_spend("2024-03")
        assert total == 1_000

        march = TransactionService(session).ledger_for_period("2024-03")
        assert [(e.date, e.occurrence_date) for e in march] == [
            (date(2024, 3, 29), date(2024, 3, 31))
        ]
        assert march[0].transaction_id is not None
        assert march[0].recurring_id is not None

        [rule] = recurring.list()
        occurrences = recurring.occurrences(rule.id, date(2024, 1, 1), date(2024, 6, 1))
        assert [o.date for o in occurrences] == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 29),
            date(2024, 4, 29),
            date(2024, 5, 31),
        ]
        assert [o.is_modified for o in occurrences] == [False, False, True, True, False]
        assert occurrences[-1].is_virtual
        standalone = session.scalars(
            select(Transaction).where(Transaction.recurring_id.is_(None))
        ).all()
        assert standalone == []


def test_convert_legacy_series_keeps_skipped_months_deleted():
    with _session() as session:
        _legacy_rows(session, [date(2024, 1, 5), date(2024, 3, 5)])
        recurring = RecurringTransactionService(session)
        recurring.convert_legacy_series()

        [rule] = recurring.list()
        occurrences = recurring.occurrences(rule.id, date(2024, 1, 1), date(2024, 5, 1))
        assert [o.occurrence_date for o in occurrences] == [
            date(2024, 1, 5),
            date(2024, 3, 5),
            date(2024, 4, 5),
        ]
        tombstone = session.scalar(
            select(Transaction).where(Transaction.occurrence_date == date(2024, 2, 5))
        )
        assert tombstone.deleted_at is not None
        assert BudgetService(session).aggregate_spend("2024-02")[0] == 0


def test_end_series_removes_occurrence_and_later_ones():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        kept = recurring.modify_occurrence(
            rule.id, date(2024, 2, 29), OccurrenceEditIn(amount_cents=95_000)
        )
        later = recurring.modify_occurrence(
            rule.id, date(2024, 4, 30), OccurrenceEditIn(amount_cents=80_000)
        )

        ended = recurring.end_series(rule.id, date(2024, 3, 31))
        assert ended.end_date == date(2024, 3, 30)
        assert ended.is_active

        occurrences = recurring.occurrences(rule.id, date(2024, 1, 1), date(2025, 1, 1))
        assert [o.occurrence_date for o in occurrences] == [
            date(2024, 1, 31),
            date(2024, 2, 29),
        ]
        session.refresh(kept)
        session.refresh(later)
        assert kept.deleted_at is None
        assert later.deleted_at is not None
        assert TransactionService(session).ledger_for_period("2024-04") == []


def test_end_series_from_first_date_deactivates():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        ended = recurring.end_series(rule.id, date(2024, 1, 31))
        assert ended.is_active is False
        assert recurring.occurrences(rule.id, date(2024, 1, 1), date(2025, 1, 1)) == []


def test_lowering_end_date_soft_deletes_overrides_after_it():
    with _session() as session:
        rule = _rent(session)
        recurring = RecurringTransactionService(session)
        late = recurring.modify_occurrence(
            rule.id, date(2024, 5, 31), OccurrenceEditIn(amount_cents=70_000)
        )
        data = RecurringTransactionIn(
            name="Rent",
            amount_cents=90_000,
            type=TransactionType.expense,
            account_id=rule.account_id,
            category_id=rule.category_id,
            start_date=rule.start_date,
            frequency=Frequency.monthly,
            end_date=date(2024, 3, 31),
        )
        recurring.update(rule.id, data)
        session.refresh(late)
        assert late.deleted_at is not None
        assert late.recurring_id == rule.id

        recurring.update(rule.id, data.model_copy(update={"end_date": None}))
        may = recurring.occurrences(rule.id, date(2024, 5, 1), date(2024, 6, 1))
        assert may == []
        assert TransactionService(session).ledger_for_period("2024-05") == []
