import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Iterable, Mapping, Optional

from models import (
    Frequency,
    LegacyRecurrence,
    RecurringTransaction,
    Transaction,
    TransactionType,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecurringTemplate:
    id: int
    amount_cents: int
    type: TransactionType
    account_id: int
    start_date: date
    frequency: Frequency
    interval: int = 1
    category_id: Optional[int] = None
    end_date: Optional[date] = None
    is_active: bool = True
    name: str = ""
    note: str = ""

    @classmethod
    def from_model(cls, rule: RecurringTransaction) -> "RecurringTemplate":
        return cls(
            id=rule.id,
            amount_cents=rule.amount_cents,
            type=rule.type,
            account_id=rule.account_id,
            start_date=rule.start_date,
            frequency=rule.frequency,
            interval=rule.interval,
            category_id=rule.category_id,
            end_date=rule.end_date,
            is_active=rule.is_active,
            name=rule.name or "",
            note=rule.note or "",
        )


@dataclass(frozen=True)
class Occurrence:
    """One dated instance of a template.

    ``occurrence_date`` is the slot computed from the template schedule;
    ``date`` is the effective date, which only differs from the slot for an
    individually modified override. ``transaction_id`` is ``None`` for a
    virtual occurrence that has never been stored.
    """

    template_id: int
    occurrence_date: date
    date: date
    amount_cents: int
    type: TransactionType
    account_id: int
    category_id: Optional[int] = None
    name: str = ""
    note: str = ""
    transaction_id: Optional[int] = None
    is_deleted: bool = False
    is_modified: bool = False

    @property
    def is_virtual(self) -> bool:
        return self.transaction_id is None

    @classmethod
    def from_model(cls, txn: Transaction) -> "Occurrence":
        return cls(
            template_id=txn.recurring_id,
            occurrence_date=txn.occurrence_date or txn.date,
            date=txn.date,
            amount_cents=txn.amount_cents,
            type=txn.type,
            account_id=txn.account_id,
            category_id=txn.category_id,
            name=txn.name or "",
            note=txn.note or "",
            transaction_id=txn.id,
            is_deleted=txn.deleted_at is not None,
            is_modified=txn.is_modified,
        )


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift ``base`` by whole months, clamping the day to the target month."""
    desired_day = desired_day or base.day
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def nth_occurrence(template: RecurringTemplate, n: int) -> date:
    step = n * template.interval
    start = template.start_date
    if template.frequency == Frequency.daily:
        return start + timedelta(days=step)
    if template.frequency == Frequency.weekly:
        return start + timedelta(weeks=step)
    if template.frequency == Frequency.monthly:
        return add_months(start, step)
    return add_months(start, 12 * step)


def _first_index_on_or_after(template: RecurringTemplate, target: date) -> int:
    start = template.start_date
    if target <= start:
        return 0
    if template.frequency in (Frequency.daily, Frequency.weekly):
        unit = 1 if template.frequency == Frequency.daily else 7
        step_days = unit * template.interval
        return -(-(target - start).days // step_days)

    unit = 1 if template.frequency == Frequency.monthly else 12
    step_months = unit * template.interval
    months_apart = (target.year - start.year) * 12 + target.month - start.month
    n = max(0, months_apart // step_months - 1)
    while nth_occurrence(template, n) < target:
        n += 1
    return n


def occurrence_dates(
    template: RecurringTemplate, range_start: date, range_end: date
) -> list[date]:
    """Schedule slots in ``[range_start, range_end)`` honouring the end date."""
    if not template.is_active or range_end <= range_start:
        return []
    if template.interval <= 0:
        logger.warning(
            f"recurrence_skip: template={template.id} interval={template.interval}"
        )
        return []

    dates: list[date] = []
    n = _first_index_on_or_after(template, range_start)
    while True:
        current = nth_occurrence(template, n)
        if current >= range_end:
            break
        if template.end_date and current > template.end_date:
            break
        if current >= range_start:
            dates.append(current)
        n += 1
    return dates


def slot_in_period(template: RecurringTemplate, on_date: date) -> Optional[date]:
    """The schedule slot sharing ``on_date``'s period, ignoring the end date.

    Monthly schedules match within the calendar month, yearly ones within the
    calendar year, and daily/weekly ones take the last slot at most one step
    before ``on_date``.
    """
    schedule = replace(template, is_active=True, end_date=None)
    if template.frequency == Frequency.monthly:
        start = on_date.replace(day=1)
        end = add_months(start, 1)
    elif template.frequency == Frequency.yearly:
        start = date(on_date.year, 1, 1)
        end = date(on_date.year + 1, 1, 1)
    else:
        unit = 1 if template.frequency == Frequency.daily else 7
        start = on_date - timedelta(days=unit * template.interval - 1)
        end = on_date + timedelta(days=1)
    slots = occurrence_dates(schedule, start, end)
    return slots[-1] if slots else None


def project(template: RecurringTemplate, on_date: date) -> Occurrence:
    return Occurrence(
        template_id=template.id,
        occurrence_date=on_date,
        date=on_date,
        amount_cents=template.amount_cents,
        type=template.type,
        account_id=template.account_id,
        category_id=template.category_id,
        name=template.name,
        note=template.note,
    )


def expand(
    template: RecurringTemplate,
    range_start: date,
    range_end: date,
    overrides: Optional[Mapping[date, Occurrence]] = None,
) -> list[Occurrence]:
    overrides = overrides or {}
    result: list[Occurrence] = []
    for slot in occurrence_dates(template, range_start, range_end):
        stored = overrides.get(slot)
        if stored is None:
            result.append(project(template, slot))
            continue
        if stored.is_deleted:
            continue
        if stored.occurrence_date != slot or stored.template_id != template.id:
            stored = replace(stored, occurrence_date=slot, template_id=template.id)
        result.append(stored)
    return result


def expand_many(
    templates: Iterable[RecurringTemplate],
    range_start: date,
    range_end: date,
    overrides_by_template: Optional[Mapping[int, Mapping[date, Occurrence]]] = None,
) -> list[Occurrence]:
    overrides_by_template = overrides_by_template or {}
    merged: list[Occurrence] = []
    for template in templates:
        merged.extend(
            expand(
                template,
                range_start,
                range_end,
                overrides_by_template.get(template.id),
            )
        )
    # sort is stable, so equal keys keep insertion order
    merged.sort(key=lambda occ: (occ.occurrence_date, occ.template_id))
    return merged


def next_occurrence_after(
    template: RecurringTemplate, on_date: date
) -> Optional[date]:
    if not template.is_active or template.interval <= 0:
        return None
    n = _first_index_on_or_after(template, on_date + timedelta(days=1))
    candidate = nth_occurrence(template, n)
    if template.end_date and candidate > template.end_date:
        return None
    return candidate


LEGACY_SCHEDULE: dict[LegacyRecurrence, tuple[Frequency, int]] = {
    LegacyRecurrence.weekly: (Frequency.weekly, 1),
    LegacyRecurrence.monthly: (Frequency.monthly, 1),
    LegacyRecurrence.quarterly: (Frequency.monthly, 3),
    LegacyRecurrence.four_monthly: (Frequency.monthly, 4),
    LegacyRecurrence.semi_annual: (Frequency.monthly, 6),
    LegacyRecurrence.annual: (Frequency.yearly, 1),
}


def template_from_legacy(txn: Transaction, template_id: int = 0) -> RecurringTemplate:
    """Describe a legacy per-transaction recurrence as a template.

    ``txn`` is the earliest transaction of its recurrence group.
    """
    if txn.recurrence not in LEGACY_SCHEDULE:
        raise ValueError("Transaction has no legacy recurrence")
    frequency, interval = LEGACY_SCHEDULE[txn.recurrence]
    return RecurringTemplate(
        id=template_id,
        amount_cents=txn.amount_cents,
        type=txn.type,
        account_id=txn.account_id,
        start_date=txn.date,
        frequency=frequency,
        interval=interval,
        category_id=txn.category_id,
        end_date=txn.recurrence_end_date,
        name=txn.name or "",
        note=txn.note or "",
    )
