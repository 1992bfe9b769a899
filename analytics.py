from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable, Hashable, Iterable, Optional, Protocol, Sequence, TypeVar

from models import TransactionType
from periods import Period

WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

K = TypeVar("K", bound=Hashable)


@dataclass(frozen=True)
class LedgerEntry:
    """Read-only snapshot of a transaction as seen by the aggregation engine."""

    id: int
    user_id: int
    type: TransactionType
    category: str
    amount_cents: int
    date: date
    cashback_cents: int = 0
    category_id: Optional[int] = None
    category_tag: Optional[str] = None
    description: str = ""

    @property
    def is_income(self) -> bool:
        return self.type == TransactionType.income

    @property
    def is_expense(self) -> bool:
        return self.type == TransactionType.expense


class LedgerReader(Protocol):
    def list_transactions(self, user_id: int, period: Period) -> list[LedgerEntry]:
        ...


@dataclass(frozen=True)
class PeriodSummary:
    total_income_cents: int = 0
    total_expense_cents: int = 0
    transaction_count: int = 0
    total_cashback_cents: int = 0
    by_category: dict[str, int] = field(default_factory=dict)

    @property
    def balance_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents

    def value(self, metric: "Metric") -> int:
        if metric == Metric.income:
            return self.total_income_cents
        if metric == Metric.expense:
            return self.total_expense_cents
        return self.balance_cents


@dataclass
class Bucket:
    total_cents: int = 0
    count: int = 0

    def add(self, amount_cents: int) -> None:
        self.total_cents += amount_cents
        self.count += 1

    @property
    def average_cents(self) -> float:
        if not self.count:
            return 0.0
        return self.total_cents / self.count


def _in_range(
    entry: LedgerEntry, start: Optional[date], end: Optional[date]
) -> bool:
    if start is not None and entry.date < start:
        return False
    if end is not None and entry.date > end:
        return False
    return True


def select_entries(
    entries: Iterable[LedgerEntry],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
) -> list[LedgerEntry]:
    return [
        e
        for e in entries
        if _in_range(e, start, end)
        and (type is None or e.type == type)
        and (category is None or e.category == category)
    ]


def summarize(
    entries: Iterable[LedgerEntry],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    category: Optional[str] = None,
) -> PeriodSummary:
    """Reduce ``entries`` to a PeriodSummary in one pass.

    ``by_category`` holds expense totals per category name; income is only
    reflected in ``total_income_cents``.
    """
    income = 0
    expense = 0
    cashback = 0
    count = 0
    by_category: dict[str, int] = defaultdict(int)
    for entry in entries:
        if not _in_range(entry, start, end):
            continue
        if category is not None and entry.category != category:
            continue
        count += 1
        cashback += entry.cashback_cents
        if entry.is_income:
            income += entry.amount_cents
        else:
            expense += entry.amount_cents
            by_category[entry.category] += entry.amount_cents
    return PeriodSummary(
        total_income_cents=income,
        total_expense_cents=expense,
        transaction_count=count,
        total_cashback_cents=cashback,
        by_category=dict(by_category),
    )


def group_totals(
    entries: Iterable[LedgerEntry], key: Callable[[LedgerEntry], K]
) -> dict[K, Bucket]:
    buckets: dict[K, Bucket] = defaultdict(Bucket)
    for entry in entries:
        buckets[key(entry)].add(entry.amount_cents)
    return dict(buckets)


def totals_by_category(
    entries: Iterable[LedgerEntry], type: Optional[TransactionType] = None
) -> dict[str, Bucket]:
    return group_totals(
        (e for e in entries if type is None or e.type == type), lambda e: e.category
    )


def totals_by_weekday(
    entries: Iterable[LedgerEntry], type: Optional[TransactionType] = None
) -> dict[int, Bucket]:
    """Buckets keyed by ``date.weekday()`` (Monday is 0)."""
    return group_totals(
        (e for e in entries if type is None or e.type == type),
        lambda e: e.date.weekday(),
    )


def totals_by_month(
    entries: Iterable[LedgerEntry], type: Optional[TransactionType] = None
) -> dict[tuple[int, int], Bucket]:
    return group_totals(
        (e for e in entries if type is None or e.type == type),
        lambda e: (e.date.year, e.date.month),
    )


def top_category(
    entries: Iterable[LedgerEntry], type: TransactionType = TransactionType.expense
) -> Optional[tuple[str, Bucket]]:
    buckets = totals_by_category(entries, type)
    if not buckets:
        return None
    # ties resolve by name so the answer does not depend on input order
    name = min(buckets, key=lambda n: (-buckets[n].total_cents, n))
    return name, buckets[name]


class Granularity(str, Enum):
    day = "day"
    week = "week"
    month = "month"


def bucket_label(value: date, granularity: Granularity) -> str:
    if granularity == Granularity.month:
        return f"{value.year:04d}-{value.month:02d}"
    if granularity == Granularity.week:
        iso_year, iso_week, _ = value.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    return value.isoformat()


def cash_flow(
    entries: Iterable[LedgerEntry], granularity: Granularity = Granularity.day
) -> list[dict[str, object]]:
    income: dict[str, int] = defaultdict(int)
    expense: dict[str, int] = defaultdict(int)
    for entry in entries:
        label = bucket_label(entry.date, granularity)
        if entry.is_income:
            income[label] += entry.amount_cents
        else:
            expense[label] += entry.amount_cents
    rows = []
    for label in sorted(set(income) | set(expense)):
        rows.append(
            {
                "period": label,
                "income_cents": income.get(label, 0),
                "expense_cents": expense.get(label, 0),
                "balance_cents": income.get(label, 0) - expense.get(label, 0),
            }
        )
    return rows


class Metric(str, Enum):
    income = "income"
    expense = "expense"
    balance = "balance"


class Direction(str, Enum):
    up = "up"
    down = "down"
    flat = "flat"


@dataclass(frozen=True)
class Comparison:
    current_value: float
    previous_value: float
    absolute_delta: float
    percent_change: float
    direction: Direction

    def to_dict(self) -> dict[str, object]:
        return {
            "current": self.current_value,
            "previous": self.previous_value,
            "delta": self.absolute_delta,
            "percent_change": round(self.percent_change, 1),
            "direction": self.direction.value,
        }


def percent_change(current: float, previous: float) -> float:
    # no positive baseline: growth from nothing counts as 100
    if previous <= 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) * 100 / previous


def compare(
    current: float, previous: float, *, flat_threshold: float = 1.0
) -> Comparison:
    change = percent_change(current, previous)
    if abs(change) < flat_threshold:
        direction = Direction.flat
    elif change > 0:
        direction = Direction.up
    else:
        direction = Direction.down
    return Comparison(
        current_value=current,
        previous_value=previous,
        absolute_delta=current - previous,
        percent_change=change,
        direction=direction,
    )


def compare_summaries(
    current: PeriodSummary,
    previous: PeriodSummary,
    metric: Metric,
    *,
    flat_threshold: float = 1.0,
) -> Comparison:
    return compare(
        current.value(metric), previous.value(metric), flat_threshold=flat_threshold
    )


def share_pct(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return part * 100 / whole


def weekday_pattern(entries: Sequence[LedgerEntry]) -> list[dict[str, object]]:
    income = totals_by_weekday(entries, TransactionType.income)
    expense = totals_by_weekday(entries, TransactionType.expense)
    rows = []
    for index, name in enumerate(WEEKDAY_NAMES):
        inc = income.get(index, Bucket())
        exp = expense.get(index, Bucket())
        rows.append(
            {
                "day": name,
                "day_index": index,
                "avg_income_cents": inc.average_cents,
                "avg_expense_cents": exp.average_cents,
                "income_count": inc.count,
                "expense_count": exp.count,
            }
        )
    return rows
