from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from budget_alerts import BudgetAlert, BudgetLine, evaluate, spend_ratio
from csv_utils import export_ledger
from fx_rates import FxRateService
from models import (
    Account,
    Budget,
    Category,
    LegacyRecurrence,
    RecurringTransaction,
    SavingsGoal,
    Transaction,
    TransactionType,
)
from notifications import AlertStore, Notifier
from periods import Period, period_for_key
from recurrence import (
    Occurrence,
    RecurringTemplate,
    expand,
    expand_many,
    next_occurrence_after,
    occurrence_dates,
    project,
    slot_in_period,
    template_from_legacy,
)
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    OccurrenceEditIn,
    RecurringTransactionIn,
    SavingsGoalIn,
    TransactionIn,
)


logger = logging.getLogger(__name__)


DEFAULT_ACCOUNT_NAME = "Main account"

DEFAULT_CATEGORIES: list[tuple[str, str, str, TransactionType]] = [
    ("Salary", "payments", "#4CAF50", TransactionType.income),
    ("Freelance", "work", "#66BB6A", TransactionType.income),
    ("Food", "restaurant", "#FF9800", TransactionType.expense),
    ("Transport", "directions_car", "#2196F3", TransactionType.expense),
    ("Housing", "home", "#9C27B0", TransactionType.expense),
    ("Shopping", "shopping_bag", "#E91E63", TransactionType.expense),
    ("Health", "local_hospital", "#F44336", TransactionType.expense),
    ("Leisure", "sports_esports", "#00BCD4", TransactionType.expense),
]


@dataclass(frozen=True)
class LedgerEntry:
    date: date
    type: TransactionType
    amount_cents: int
    account_id: int
    category_id: Optional[int] = None
    name: str = ""
    note: str = ""
    transaction_id: Optional[int] = None
    recurring_id: Optional[int] = None
    occurrence_date: Optional[date] = None
    transfer_account_id: Optional[int] = None

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "LedgerEntry":
        return cls(
            date=txn.date,
            type=txn.type,
            amount_cents=txn.amount_cents,
            account_id=txn.account_id,
            category_id=txn.category_id,
            name=txn.name or "",
            note=txn.note or "",
            transaction_id=txn.id,
            transfer_account_id=txn.transfer_account_id,
        )

    @classmethod
    def from_occurrence(cls, occ: Occurrence) -> "LedgerEntry":
        return cls(
            date=occ.date,
            type=occ.type,
            amount_cents=occ.amount_cents,
            account_id=occ.account_id,
            category_id=occ.category_id,
            name=occ.name,
            note=occ.note,
            transaction_id=occ.transaction_id,
            recurring_id=occ.template_id,
            occurrence_date=occ.occurrence_date,
        )


def seed_default_data(session: Session, base_currency: str = "EUR") -> dict[str, int]:
    """Create the default account and categories on an empty database."""
    created = {"accounts": 0, "categories": 0}
    has_account = session.execute(select(Account.id).limit(1)).scalar_one_or_none()
    if has_account is None:
        session.add(
            Account(name=DEFAULT_ACCOUNT_NAME, currency_code=base_currency, is_default=True)
        )
        created["accounts"] = 1

    has_category = session.execute(select(Category.id).limit(1)).scalar_one_or_none()
    if has_category is None:
        for name, icon, color, txn_type in DEFAULT_CATEGORIES:
            session.add(
                Category(name=name, icon=icon, color=color, type=txn_type, is_default=True)
            )
        created["categories"] = len(DEFAULT_CATEGORIES)
    session.flush()
    return created


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        stmt = select(Account).order_by(Account.is_default.desc(), Account.name)
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise ValueError("Account not found")
        return account

    def default_account(self) -> Optional[Account]:
        stmt = select(Account).order_by(Account.is_default.desc(), Account.id).limit(1)
        return self.session.scalar(stmt)

    def create(self, data: AccountIn) -> Account:
        existing = self.session.scalar(select(Account).where(Account.name == data.name))
        if existing:
            raise ValueError("Account already exists")
        is_first = self.default_account() is None
        account = Account(
            name=data.name,
            currency_code=data.currency_code,
            is_default=False,
        )
        self.session.add(account)
        self.session.flush()
        if data.is_default or is_first:
            self.set_default(account.id)
        self.session.commit()
        self.session.refresh(account)
        return account

    def set_default(self, account_id: int) -> None:
        account = self.get(account_id)
        self.session.execute(
            update(Account).where(Account.id != account.id).values(is_default=False)
        )
        account.is_default = True
        self.session.flush()

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        remaining = self.session.scalar(
            select(func.count(Account.id)).where(Account.id != account.id)
        )
        if not remaining:
            raise ValueError("Cannot delete the last account")

        template_ids = self.session.scalars(
            select(RecurringTransaction.id).where(
                RecurringTransaction.account_id == account.id
            )
        ).all()
        if template_ids:
            self.session.execute(
                delete(Transaction).where(Transaction.recurring_id.in_(template_ids))
            )
            self.session.execute(
                delete(RecurringTransaction).where(
                    RecurringTransaction.id.in_(template_ids)
                )
            )
        self.session.execute(
            delete(Transaction).where(
                or_(
                    Transaction.account_id == account.id,
                    Transaction.transfer_account_id == account.id,
                )
            )
        )
        was_default = account.is_default
        self.session.delete(account)
        self.session.flush()
        if was_default:
            successor = self.default_account()
            if successor:
                successor.is_default = True
        self.session.commit()

    def balance(self, account_id: int, as_of: date) -> int:
        account = self.get(account_id)
        stored = self.session.scalars(
            select(Transaction).where(
                Transaction.deleted_at.is_(None),
                Transaction.recurring_id.is_(None),
                Transaction.date <= as_of,
                or_(
                    Transaction.account_id == account.id,
                    Transaction.transfer_account_id == account.id,
                ),
            )
        ).all()
        balance = 0
        for txn in stored:
            if txn.type == TransactionType.income:
                balance += txn.amount_cents
            elif txn.type == TransactionType.expense:
                balance -= txn.amount_cents
            elif txn.account_id == account.id:
                balance -= txn.amount_cents
            else:
                balance += txn.amount_cents

        recurring = RecurringTransactionService(self.session)
        for template in recurring.list(active_only=True, account_id=account.id):
            for occ in recurring.occurrences(
                template.id, template.start_date, as_of + timedelta(days=1)
            ):
                if occ.type == TransactionType.income:
                    balance += occ.amount_cents
                else:
                    balance -= occ.amount_cents
        return balance


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        if txn_type:
            stmt = stmt.where(Category.type == txn_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        existing = self.session.scalar(
            select(Category).where(
                Category.type == data.type,
                func.lower(Category.name) == clean_name.lower(),
            )
        )
        if existing:
            raise ValueError("Category already exists")
        category = Category(
            name=clean_name,
            type=data.type,
            icon=data.icon,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        clean_name = name.strip()
        existing = self.session.scalar(
            select(Category).where(
                Category.id != category.id,
                Category.type == category.type,
                func.lower(Category.name) == clean_name.lower(),
            )
        )
        if existing:
            raise ValueError("Category already exists")
        category.name = clean_name
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.category_id == category.id)
            .values(category_id=None)
        )
        self.session.execute(
            update(RecurringTransaction)
            .where(RecurringTransaction.category_id == category.id)
            .values(category_id=None)
        )
        budget_ids = self.session.scalars(
            select(Budget.id).where(Budget.category_id == category.id)
        ).all()
        store = AlertStore(self.session)
        for budget_id in budget_ids:
            store.clear(budget_id)
        self.session.execute(delete(Budget).where(Budget.category_id == category.id))
        self.session.delete(category)
        self.session.commit()


def _check_category(
    session: Session, category_id: Optional[int], txn_type: TransactionType
) -> None:
    if category_id is None:
        return
    if txn_type == TransactionType.transfer:
        raise ValueError("Transfers have no category")
    category = session.get(Category, category_id)
    if not category:
        raise ValueError("Category not found")
    if category.type != txn_type:
        raise ValueError("Category type mismatch")


class TransactionService:
    def __init__(
        self,
        session: Session,
        fx: Optional[FxRateService] = None,
        base_currency: str = "EUR",
    ) -> None:
        self.session = session
        self.fx = fx
        self.base_currency = base_currency

    def create(self, data: TransactionIn) -> Transaction:
        AccountService(self.session).get(data.account_id)
        if data.transfer_account_id is not None:
            AccountService(self.session).get(data.transfer_account_id)
        _check_category(self.session, data.category_id, data.type)
        txn = Transaction(
            name=data.name,
            amount_cents=data.amount_cents,
            type=data.type,
            account_id=data.account_id,
            category_id=data.category_id,
            transfer_account_id=data.transfer_account_id,
            date=data.date,
            note=data.note,
            is_validated=data.is_validated,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or (txn.deleted_at is not None and not include_deleted):
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        if txn.recurring_id is not None and data.type != txn.type:
            raise ValueError("Cannot change the type of a recurring occurrence")
        AccountService(self.session).get(data.account_id)
        if data.transfer_account_id is not None:
            AccountService(self.session).get(data.transfer_account_id)
        _check_category(self.session, data.category_id, data.type)
        for field, value in data.model_dump().items():
            setattr(txn, field, value)
        if txn.recurring_id is not None:
            txn.is_modified = True
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        txn.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore(self, transaction_id: int) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is None:
            return
        txn.deleted_at = None
        self.session.commit()

    def deleted(self, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.deleted_at.is_not(None))
            .order_by(Transaction.deleted_at.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def stored_for_period(
        self, period: Period, account_id: Optional[int] = None
    ) -> list[Transaction]:
        """Standalone (non-recurring) transactions dated inside ``period``."""
        stmt = select(Transaction).where(
            Transaction.deleted_at.is_(None),
            Transaction.recurring_id.is_(None),
            Transaction.date >= period.start,
            Transaction.date < period.end,
        )
        if account_id is not None:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == account_id,
                    Transaction.transfer_account_id == account_id,
                )
            )
        return self.session.scalars(stmt.order_by(Transaction.date, Transaction.id)).all()

    def ledger_for_period(
        self, period_key: str, account_id: Optional[int] = None
    ) -> list[LedgerEntry]:
        period = period_for_key(period_key)
        entries = [
            LedgerEntry.from_transaction(txn)
            for txn in self.stored_for_period(period, account_id)
        ]
        occurrences = RecurringTransactionService(self.session).occurrences_for_range(
            period.start, period.end, account_id=account_id
        )
        entries.extend(LedgerEntry.from_occurrence(occ) for occ in occurrences)
        entries.sort(key=lambda e: (e.date, e.transaction_id or 0, e.recurring_id or 0))
        return entries

    def account_currencies(self) -> dict[int, str]:
        rows = self.session.execute(select(Account.id, Account.currency_code)).all()
        return {row.id: row.currency_code for row in rows}

    def to_base(self, amount_cents: int, account_currency: str) -> int:
        if self.fx is None or account_currency == self.base_currency:
            return amount_cents
        return self.fx.convert_cents(amount_cents, account_currency, self.base_currency)

    def month_summary(
        self, period_key: str, account_id: Optional[int] = None
    ) -> dict[str, int]:
        currencies = self.account_currencies()
        income = 0
        expense = 0
        for entry in self.ledger_for_period(period_key, account_id):
            amount = entry.amount_cents
            if account_id is None:
                amount = self.to_base(amount, currencies[entry.account_id])
            if entry.type == TransactionType.income:
                income += amount
            elif entry.type == TransactionType.expense:
                expense += amount
        return {
            "income_cents": income,
            "expense_cents": expense,
            "balance_cents": income - expense,
        }


class RecurringTransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, recurring_id: int) -> RecurringTransaction:
        rule = self.session.get(RecurringTransaction, recurring_id)
        if not rule:
            raise ValueError("Recurring transaction not found")
        return rule

    def list(
        self, *, active_only: bool = False, account_id: Optional[int] = None
    ) -> list[RecurringTransaction]:
        stmt = select(RecurringTransaction).order_by(
            RecurringTransaction.start_date, RecurringTransaction.id
        )
        if active_only:
            stmt = stmt.where(RecurringTransaction.is_active.is_(True))
        if account_id is not None:
            stmt = stmt.where(RecurringTransaction.account_id == account_id)
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        AccountService(self.session).get(data.account_id)
        _check_category(self.session, data.category_id, data.type)
        rule = RecurringTransaction(**data.model_dump())
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(
        self, recurring_id: int, data: RecurringTransactionIn
    ) -> RecurringTransaction:
        rule = self.get(recurring_id)
        AccountService(self.session).get(data.account_id)
        _check_category(self.session, data.category_id, data.type)
        schedule_changed = (
            rule.start_date != data.start_date
            or rule.frequency != data.frequency
            or rule.interval != data.interval
            or rule.end_date != data.end_date
        )
        for field, value in data.model_dump().items():
            setattr(rule, field, value)
        self.session.flush()
        if schedule_changed:
            self._reconcile_overrides(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def _reconcile_overrides(self, rule: RecurringTransaction) -> None:
        """Drop or detach stored overrides that no longer sit on the schedule.

        Overrides past the end date are soft-deleted so that extending the
        series again keeps them out of the ledger.
        """
        schedule = replace(
            RecurringTemplate.from_model(rule), is_active=True, end_date=None
        )
        stored = self.session.scalars(
            select(Transaction).where(Transaction.recurring_id == rule.id)
        ).all()
        for txn in stored:
            slot = txn.occurrence_date
            if slot and occurrence_dates(schedule, slot, slot + timedelta(days=1)):
                if rule.end_date and slot > rule.end_date and txn.deleted_at is None:
                    txn.deleted_at = datetime.utcnow()
                continue
            if txn.is_modified and txn.deleted_at is None:
                txn.recurring_id = None
                txn.occurrence_date = None
                txn.is_modified = False
            else:
                self.session.delete(txn)
        self.session.flush()

    def deactivate(self, recurring_id: int) -> RecurringTransaction:
        rule = self.get(recurring_id)
        rule.is_active = False
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def end_series(self, recurring_id: int, from_date: date) -> RecurringTransaction:
        """Delete the occurrence on ``from_date`` and every later one.

        The template ends the day before ``from_date``; ending it on or before
        its start date deactivates it instead.
        """
        rule = self.get(recurring_id)
        if from_date <= rule.start_date:
            rule.is_active = False
        else:
            new_end = from_date - timedelta(days=1)
            if rule.end_date is None or new_end < rule.end_date:
                rule.end_date = new_end
        now = datetime.utcnow()
        later = self.session.scalars(
            select(Transaction).where(
                Transaction.recurring_id == rule.id,
                Transaction.occurrence_date >= from_date,
                Transaction.deleted_at.is_(None),
            )
        ).all()
        for txn in later:
            txn.deleted_at = now
        self.session.commit()
        self.session.refresh(rule)
        logger.info(
            f"recurring_series_ended: template={rule.id} from={from_date} "
            f"overrides={len(later)}"
        )
        return rule

    def delete(self, recurring_id: int) -> bool:
        """Delete a template, or only deactivate it once occurrences are stored.

        Returns ``True`` when the template was physically removed.
        """
        rule = self.get(recurring_id)
        has_occurrences = self.session.execute(
            select(Transaction.id).where(Transaction.recurring_id == rule.id).limit(1)
        ).scalar_one_or_none()
        if has_occurrences:
            rule.is_active = False
            self.session.commit()
            return False
        self.session.delete(rule)
        self.session.commit()
        return True

    def list_overrides_for_template(self, recurring_id: int) -> dict[date, Occurrence]:
        stmt = select(Transaction).where(
            Transaction.recurring_id == recurring_id,
            Transaction.occurrence_date.is_not(None),
        )
        return {
            txn.occurrence_date: Occurrence.from_model(txn)
            for txn in self.session.scalars(stmt)
        }

    def occurrences(
        self, recurring_id: int, range_start: date, range_end: date
    ) -> list[Occurrence]:
        rule = self.get(recurring_id)
        return expand(
            RecurringTemplate.from_model(rule),
            range_start,
            range_end,
            self.list_overrides_for_template(rule.id),
        )

    def occurrences_for_range(
        self, range_start: date, range_end: date, *, account_id: Optional[int] = None
    ) -> list[Occurrence]:
        rules = self.list(active_only=True, account_id=account_id)
        return expand_many(
            [RecurringTemplate.from_model(rule) for rule in rules],
            range_start,
            range_end,
            {rule.id: self.list_overrides_for_template(rule.id) for rule in rules},
        )

    def _slot_projection(self, rule: RecurringTransaction, slot: date) -> Occurrence:
        template = RecurringTemplate.from_model(rule)
        if not occurrence_dates(
            replace(template, is_active=True), slot, slot + timedelta(days=1)
        ):
            raise ValueError("Not an occurrence of this recurring transaction")
        return project(template, slot)

    def _stored_override(self, recurring_id: int, slot: date) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction).where(
                Transaction.recurring_id == recurring_id,
                Transaction.occurrence_date == slot,
            )
        )

    def _store_projection(self, occ: Occurrence) -> Transaction:
        txn = Transaction(
            name=occ.name,
            amount_cents=occ.amount_cents,
            type=occ.type,
            account_id=occ.account_id,
            category_id=occ.category_id,
            date=occ.date,
            note=occ.note,
            is_validated=False,
            recurring_id=occ.template_id,
            occurrence_date=occ.occurrence_date,
        )
        self.session.add(txn)
        return txn

    def modify_occurrence(
        self, recurring_id: int, slot: date, data: OccurrenceEditIn
    ) -> Transaction:
        rule = self.get(recurring_id)
        projection = self._slot_projection(rule, slot)
        txn = self._stored_override(rule.id, slot)
        if txn is None:
            txn = self._store_projection(projection)
        changes = data.model_dump(exclude_unset=True)
        if "category_id" in changes:
            _check_category(self.session, changes["category_id"], rule.type)
        for field, value in changes.items():
            if value is None and field != "category_id":
                continue
            setattr(txn, field, value)
        txn.is_modified = True
        txn.deleted_at = None
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete_occurrence(self, recurring_id: int, slot: date) -> None:
        rule = self.get(recurring_id)
        projection = self._slot_projection(rule, slot)
        txn = self._stored_override(rule.id, slot)
        if txn is None:
            txn = self._store_projection(projection)
        txn.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore_occurrence(self, recurring_id: int, slot: date) -> None:
        txn = self._stored_override(recurring_id, slot)
        if txn is None or txn.deleted_at is None:
            return
        if txn.is_modified:
            txn.deleted_at = None
        else:
            self.session.delete(txn)
        self.session.commit()

    def upcoming(self, today: date, limit: int = 10) -> list[tuple[RecurringTransaction, date]]:
        upcoming: list[tuple[RecurringTransaction, date]] = []
        for rule in self.list(active_only=True):
            next_date = next_occurrence_after(
                RecurringTemplate.from_model(rule), today - timedelta(days=1)
            )
            if next_date is not None:
                upcoming.append((rule, next_date))
        upcoming.sort(key=lambda item: (item[1], item[0].id))
        return upcoming[:limit]

    def convert_legacy_series(self) -> int:
        """Turn legacy per-transaction recurrences into templates.

        Each recurrence group becomes one template; the group's stored rows
        become overrides of their slots.
        """
        legacy = self.session.scalars(
            select(Transaction)
            .where(Transaction.recurrence != LegacyRecurrence.none)
            .order_by(Transaction.date, Transaction.id)
        ).all()
        groups: dict[int, list[Transaction]] = {}
        for txn in legacy:
            groups.setdefault(txn.recurrence_group_id or txn.id, []).append(txn)

        converted = 0
        for group_id, rows in groups.items():
            seed = rows[0]
            legacy_template = template_from_legacy(seed)
            rule = RecurringTransaction(
                name=legacy_template.name,
                amount_cents=legacy_template.amount_cents,
                type=legacy_template.type,
                account_id=legacy_template.account_id,
                category_id=legacy_template.category_id,
                note=legacy_template.note,
                start_date=legacy_template.start_date,
                frequency=legacy_template.frequency,
                interval=legacy_template.interval,
                end_date=legacy_template.end_date,
                is_active=True,
            )
            self.session.add(rule)
            self.session.flush()
            schedule = replace(legacy_template, id=rule.id)

            # legacy rows were chained from the previous date, so a drifted
            # row binds to the slot of its own month/week/year
            taken: set[date] = set()
            for txn in rows:
                txn.recurrence = LegacyRecurrence.none
                txn.recurrence_end_date = None
                txn.recurrence_group_id = None
                slot = slot_in_period(schedule, txn.date)
                if slot is None or slot in taken:
                    continue
                taken.add(slot)
                txn.recurring_id = rule.id
                txn.occurrence_date = slot
                txn.is_modified = (
                    txn.date != slot
                    or txn.amount_cents != rule.amount_cents
                    or txn.category_id != rule.category_id
                    or (txn.name or "") != rule.name
                )

            # slots the legacy series skipped were deleted by the user
            if taken:
                covered_until = max(taken) + timedelta(days=1)
                for slot in occurrence_dates(schedule, rule.start_date, covered_until):
                    if slot in taken:
                        continue
                    tombstone = self._store_projection(project(schedule, slot))
                    tombstone.deleted_at = datetime.utcnow()
            converted += 1
            logger.info(
                f"legacy_recurrence_converted: group={group_id} template={rule.id} "
                f"rows={len(rows)}"
            )
        self.session.commit()
        return converted


class BudgetService:
    def __init__(
        self,
        session: Session,
        fx: Optional[FxRateService] = None,
        base_currency: str = "EUR",
    ) -> None:
        self.session = session
        self.fx = fx
        self.base_currency = base_currency

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise ValueError("Budget not found")
        return budget

    def list_for_period(self, period_key: str) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.year_month == period_key)
            .order_by(Budget.is_global.desc(), Budget.category_id, Budget.id)
        )
        return self.session.scalars(stmt).all()

    def set_budget(self, data: BudgetIn) -> Budget:
        if data.category_id is not None:
            category = self.session.get(Category, data.category_id)
            if not category:
                raise ValueError("Category not found")
            if category.type != TransactionType.expense:
                raise ValueError("Budgets can only be set for expense categories")

        stmt = select(Budget).where(
            Budget.year_month == data.year_month,
            Budget.category_id.is_(None)
            if data.category_id is None
            else Budget.category_id == data.category_id,
        )
        existing = self.session.scalar(stmt)
        if existing:
            if existing.amount_cents != data.amount_cents:
                # a new ceiling gets its own chance to alert
                AlertStore(self.session).clear(existing.id, existing.year_month)
            existing.amount_cents = data.amount_cents
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            amount_cents=data.amount_cents,
            year_month=data.year_month,
            category_id=data.category_id,
            is_global=data.is_global,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        AlertStore(self.session).clear(budget.id)
        self.session.delete(budget)
        self.session.commit()

    def aggregate_spend(
        self, period_key: str, account_id: Optional[int] = None
    ) -> tuple[int, dict[Optional[int], int]]:
        """Total expense spend and spend per category for a month."""
        txns = TransactionService(self.session, self.fx, self.base_currency)
        currencies = txns.account_currencies()
        by_category: dict[Optional[int], int] = {}
        for entry in txns.ledger_for_period(period_key, account_id):
            if entry.type != TransactionType.expense:
                continue
            amount = entry.amount_cents
            if account_id is None:
                amount = txns.to_base(amount, currencies[entry.account_id])
            by_category[entry.category_id] = by_category.get(entry.category_id, 0) + amount
        return sum(by_category.values()), by_category

    def progress_for_period(
        self, period_key: str, account_id: Optional[int] = None
    ) -> list[dict[str, object]]:
        total, by_category = self.aggregate_spend(period_key, account_id)
        progress: list[dict[str, object]] = []
        for budget in self.list_for_period(period_key):
            spent = total if budget.is_global else by_category.get(budget.category_id, 0)
            ratio = spend_ratio(spent, budget.amount_cents)
            progress.append(
                {
                    "budget_id": budget.id,
                    "year_month": budget.year_month,
                    "is_global": budget.is_global,
                    "category_id": budget.category_id,
                    "amount_cents": budget.amount_cents,
                    "spent_cents": spent,
                    "remaining_cents": budget.amount_cents - spent,
                    "percent": int(ratio * 100) if ratio is not None else 0,
                }
            )
        return progress


class BudgetAlertService:
    def __init__(
        self,
        session: Session,
        notifier: Notifier,
        fx: Optional[FxRateService] = None,
        base_currency: str = "EUR",
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.budgets = BudgetService(session, fx, base_currency)
        self.store = AlertStore(session)

    def _scope_label(self, alert: BudgetAlert) -> str:
        if alert.is_global or alert.category_id is None:
            return "Global"
        category = self.session.get(Category, alert.category_id)
        return category.name if category else "Category"

    def check_alerts(
        self, period_key: str, account_id: Optional[int] = None
    ) -> list[BudgetAlert]:
        budgets = [BudgetLine.from_model(b) for b in self.budgets.list_for_period(period_key)]
        if not budgets:
            return []
        total, by_category = self.budgets.aggregate_spend(period_key, account_id)
        alerts = evaluate(
            period_key,
            budgets,
            by_category,
            total,
            self.store.alerted_for_period(period_key),
        )
        ordered = sorted(alerts, key=lambda alert: alert.budget_id)
        for alert in ordered:
            self.notifier.notify(
                alert.budget_id,
                alert.period_key,
                alert.spent_cents,
                alert.budget_cents,
                scope_label=self._scope_label(alert),
            )
            self.store.mark_alerted(alert.budget_id, alert.period_key)
        self.session.commit()
        return ordered


class SavingsGoalService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[SavingsGoal]:
        stmt = select(SavingsGoal).order_by(SavingsGoal.created_date, SavingsGoal.id)
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal:
            raise ValueError("Savings goal not found")
        return goal

    def create(self, data: SavingsGoalIn, today: Optional[date] = None) -> SavingsGoal:
        goal = SavingsGoal(**data.model_dump(), created_date=today or date.today())
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: SavingsGoalIn) -> SavingsGoal:
        goal = self.get(goal_id)
        for field, value in data.model_dump().items():
            setattr(goal, field, value)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def contribute(self, goal_id: int, amount_cents: int) -> SavingsGoal:
        goal = self.get(goal_id)
        goal.current_cents += amount_cents
        self.session.commit()
        return goal

    def withdraw(self, goal_id: int, amount_cents: int) -> SavingsGoal:
        goal = self.get(goal_id)
        goal.current_cents = max(0, goal.current_cents - amount_cents)
        self.session.commit()
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    @staticmethod
    def progress(goal: SavingsGoal, today: date) -> dict[str, object]:
        remaining = max(0, goal.target_cents - goal.current_cents)
        percent = min(100, goal.current_cents * 100 // goal.target_cents)
        monthly_needed: Optional[int] = None
        months_left: Optional[int] = None
        if goal.target_date is not None:
            months_left = max(
                0,
                (goal.target_date.year - today.year) * 12
                + goal.target_date.month
                - today.month,
            )
            if remaining == 0:
                monthly_needed = 0
            elif months_left > 0:
                monthly_needed = -(-remaining // months_left)
            else:
                monthly_needed = remaining
        return {
            "goal_id": goal.id,
            "percent": percent,
            "remaining_cents": remaining,
            "reached": remaining == 0,
            "months_left": months_left,
            "monthly_needed_cents": monthly_needed,
        }


class CSVService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def export_period(self, period_key: str, account_id: Optional[int] = None) -> str:
        entries = TransactionService(self.session).ledger_for_period(period_key, account_id)
        category_names = {c.id: c.name for c in CategoryService(self.session).list_all()}
        account_names = {a.id: a.name for a in AccountService(self.session).list_all()}
        return export_ledger(entries, category_names, account_names)
