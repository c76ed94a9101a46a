"""Summary reports: totals and optional category/subcategory breakdowns.

The service here only reads. It resolves a period, pulls the owner's
transactions for that window from a ``TransactionStore`` and folds them into
an immutable ``SummaryReport``. Display names for breakdown buckets come from
a ``CategoryStore`` and are looked up at most once per key per report.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol

from errors import InvalidRequest, ReportTimeout, UpstreamUnavailable
from models import TransactionType
from periods import Clock, Period, resolve_period, utc_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class GroupBy(str, Enum):
    none = "none"
    category = "category"
    subcategory = "subcategory"


class TransactionLike(Protocol):
    type: object
    amount: Decimal
    category_id: Optional[int]
    subcategory_id: Optional[int]


class CategoryLike(Protocol):
    name: str


class TransactionStore(Protocol):
    def fetch_in_range(
        self, user_id: int, start: datetime, end: datetime
    ) -> list[TransactionLike]: ...


class CategoryStore(Protocol):
    def find_by_id(self, user_id: int, category_id: int) -> Optional[CategoryLike]: ...


class Deadline:
    """Wall-clock budget shared between a report and whoever awaits it."""

    def __init__(
        self, seconds: float, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check(self) -> None:
        if self._cancelled.is_set():
            raise ReportTimeout("Report computation cancelled")
        if self._clock() >= self._expires_at:
            raise ReportTimeout("Report computation timed out")


@dataclass(frozen=True)
class SummaryTotals:
    income: Decimal
    expenses: Decimal
    savings: Decimal


@dataclass(frozen=True)
class GroupSummary:
    id: int
    name: str
    income: Decimal
    expenses: Decimal


@dataclass(frozen=True)
class SummaryReport:
    period: Period
    totals: SummaryTotals
    group_by: GroupBy = GroupBy.none
    by_category: Optional[tuple[GroupSummary, ...]] = None
    by_subcategory: Optional[tuple[GroupSummary, ...]] = None

    def as_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "period": {
                "start": self.period.start.isoformat(),
                "end": self.period.end.isoformat(),
            },
            "totals": {
                "income": self.totals.income,
                "expenses": self.totals.expenses,
                "savings": self.totals.savings,
            },
        }
        if self.by_category is not None:
            data["byCategory"] = [
                {
                    "categoryId": group.id,
                    "categoryName": group.name,
                    "income": group.income,
                    "expenses": group.expenses,
                }
                for group in self.by_category
            ]
        if self.by_subcategory is not None:
            data["bySubcategory"] = [
                {
                    "subcategoryId": group.id,
                    "subcategoryName": group.name,
                    "income": group.income,
                    "expenses": group.expenses,
                }
                for group in self.by_subcategory
            ]
        return data


@dataclass
class _Bucket:
    id: int
    name: str
    income: Decimal = field(default=ZERO)
    expenses: Decimal = field(default=ZERO)

    def add(self, txn: TransactionLike) -> None:
        if txn.type == TransactionType.income:
            self.income += txn.amount
        elif txn.type == TransactionType.expense:
            self.expenses += txn.amount

    def freeze(self) -> GroupSummary:
        return GroupSummary(self.id, self.name, self.income, self.expenses)


def parse_group_by(value: Optional[str]) -> GroupBy:
    try:
        return GroupBy(value)
    except ValueError as exc:
        raise InvalidRequest(f"Invalid groupBy: {value!r}") from exc


def compute_totals(transactions: Iterable[TransactionLike]) -> SummaryTotals:
    income = ZERO
    expenses = ZERO
    for txn in transactions:
        if txn.type == TransactionType.income:
            income += txn.amount
        elif txn.type == TransactionType.expense:
            expenses += txn.amount
    return SummaryTotals(income=income, expenses=expenses, savings=income - expenses)


class _NameResolver:
    """Owner-scoped display-name lookups, memoized for one report."""

    def __init__(
        self,
        categories: CategoryStore,
        user_id: int,
        deadline: Optional[Deadline] = None,
    ) -> None:
        self.categories = categories
        self.user_id = user_id
        self.deadline = deadline
        self.names: dict[int, str] = {}

    def name_for(self, category_id: int) -> str:
        if category_id in self.names:
            return self.names[category_id]
        if self.deadline is not None:
            self.deadline.check()
        name = ""
        try:
            category = self.categories.find_by_id(self.user_id, category_id)
        except UpstreamUnavailable:
            logger.warning(
                "category_lookup_failed: user_id=%s category_id=%s",
                self.user_id,
                category_id,
                exc_info=True,
            )
        else:
            if category is not None:
                name = category.name
        self.names[category_id] = name
        return name


def group_transactions(
    transactions: Iterable[TransactionLike],
    key: Callable[[TransactionLike], Optional[int]],
    names: _NameResolver,
) -> tuple[GroupSummary, ...]:
    buckets: dict[int, _Bucket] = {}
    for txn in transactions:
        bucket_id = key(txn)
        if bucket_id is None:
            continue
        bucket = buckets.get(bucket_id)
        if bucket is None:
            bucket = _Bucket(id=bucket_id, name=names.name_for(bucket_id))
            buckets[bucket_id] = bucket
        bucket.add(txn)
    return tuple(bucket.freeze() for bucket in buckets.values())


def aggregate(
    period: Period,
    transactions: list[TransactionLike],
    *,
    user_id: int,
    group_by: str,
    categories: CategoryStore,
    deadline: Optional[Deadline] = None,
) -> SummaryReport:
    grouping = parse_group_by(group_by)
    totals = compute_totals(transactions)
    if grouping == GroupBy.none:
        return SummaryReport(period=period, totals=totals)

    names = _NameResolver(categories, user_id, deadline)
    if grouping == GroupBy.category:
        groups = group_transactions(transactions, lambda t: t.category_id, names)
        return SummaryReport(
            period=period, totals=totals, group_by=grouping, by_category=groups
        )
    groups = group_transactions(transactions, lambda t: t.subcategory_id, names)
    return SummaryReport(
        period=period, totals=totals, group_by=grouping, by_subcategory=groups
    )


class ReportService:
    def __init__(
        self,
        transactions: TransactionStore,
        categories: CategoryStore,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.transactions = transactions
        self.categories = categories
        self.clock = clock

    def compute_summary(
        self,
        user_id: int,
        period: Optional[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: Optional[str] = GroupBy.none.value,
        *,
        deadline: Optional[Deadline] = None,
    ) -> SummaryReport:
        resolved = resolve_period(period, start, end, now=self.clock())
        grouping = parse_group_by(group_by)

        if deadline is not None:
            deadline.check()
        txns = self.transactions.fetch_in_range(user_id, resolved.start, resolved.end)
        # The caller may have given up while the read was in flight.
        if deadline is not None:
            deadline.check()

        report = aggregate(
            resolved,
            txns,
            user_id=user_id,
            group_by=grouping,
            categories=self.categories,
            deadline=deadline,
        )
        logger.info(
            "report_summary: user_id=%s period=%s group_by=%s transactions=%s",
            user_id,
            resolved.slug,
            grouping.value,
            len(txns),
        )
        return report
