from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional

import pytest
from sqlalchemy.exc import OperationalError

from errors import InvalidRequest, ReportTimeout, UpstreamUnavailable
from models import Category, Transaction, TransactionType
from periods import resolve_period
from reports import Deadline, GroupBy, ReportService, SummaryTotals, aggregate
from services import SqlCategoryStore, SqlTransactionStore

UTC = timezone.utc
NOW = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)


def fixed_clock() -> datetime:
    return NOW


def txn(
    kind,
    amount: str,
    category_id: Optional[int] = None,
    subcategory_id: Optional[int] = None,
):
    return SimpleNamespace(
        type=kind,
        amount=Decimal(amount),
        category_id=category_id,
        subcategory_id=subcategory_id,
    )


class FakeTransactionStore:
    def __init__(self, transactions, error: Optional[Exception] = None) -> None:
        self.transactions = transactions
        self.error = error
        self.calls: list[tuple[int, datetime, datetime]] = []

    def fetch_in_range(self, user_id, start, end):
        self.calls.append((user_id, start, end))
        if self.error:
            raise self.error
        return list(self.transactions)


class FakeCategoryStore:
    def __init__(self, names: dict[int, str], failing: frozenset = frozenset()) -> None:
        self.names = names
        self.failing = failing
        self.calls: list[tuple[int, int]] = []

    def find_by_id(self, user_id, category_id):
        self.calls.append((user_id, category_id))
        if category_id in self.failing:
            raise UpstreamUnavailable("category store unavailable")
        name = self.names.get(category_id)
        return SimpleNamespace(name=name) if name is not None else None


def make_service(transactions, names=None, **kwargs):
    store = FakeTransactionStore(transactions, kwargs.pop("error", None))
    categories = FakeCategoryStore(names or {}, **kwargs)
    return ReportService(store, categories, clock=fixed_clock), store, categories


def test_totals_split_income_and_expenses():
    service, store, _ = make_service(
        [
            txn(TransactionType.income, "2500.00"),
            txn(TransactionType.expense, "40.10"),
            txn(TransactionType.expense, "9.90"),
        ]
    )
    report = service.compute_summary(7, "monthly")

    assert report.totals.income == Decimal("2500.00")
    assert report.totals.expenses == Decimal("50.00")
    assert report.totals.savings == Decimal("2450.00")
    assert report.group_by == GroupBy.none
    assert report.by_category is None
    assert report.by_subcategory is None
    assert store.calls == [(7, report.period.start, report.period.end)]


def test_savings_is_exact_for_fractional_amounts():
    amounts = ["0.10", "0.20", "0.30", "1999.99", "0.01"]
    transactions = [txn(TransactionType.income, a) for a in amounts]
    transactions += [txn(TransactionType.expense, a) for a in reversed(amounts)]
    transactions.append(txn(TransactionType.expense, "0.60"))
    service, _, _ = make_service(transactions)

    totals = service.compute_summary(1, "daily").totals
    assert totals.savings == totals.income - totals.expenses
    assert totals.savings == Decimal("-0.60")


def test_unrecognized_kind_is_left_out_of_totals():
    service, _, _ = make_service(
        [
            txn(TransactionType.income, "10"),
            txn("transfer", "1000", category_id=1),
            txn(TransactionType.expense, "3"),
        ],
        {1: "Misc"},
    )
    report = service.compute_summary(1, "daily", group_by="category")

    assert report.totals.income == Decimal("10")
    assert report.totals.expenses == Decimal("3")
    [bucket] = report.by_category
    assert bucket.income == Decimal("0")
    assert bucket.expenses == Decimal("0")


def test_category_grouping_skips_uncategorized_but_counts_it_in_totals():
    service, _, _ = make_service(
        [
            txn(TransactionType.income, "100", category_id=5),
            txn(TransactionType.expense, "40", category_id=5),
            txn(TransactionType.expense, "15"),
        ],
        {5: "Freelance"},
    )
    report = service.compute_summary(1, "weekly", group_by="category")

    assert report.totals.income == Decimal("100")
    assert report.totals.expenses == Decimal("55")
    assert len(report.by_category) == 1
    bucket = report.by_category[0]
    assert bucket.id == 5
    assert bucket.name == "Freelance"
    assert bucket.income == Decimal("100")
    assert bucket.expenses == Decimal("40")


def test_subcategory_grouping_keys_on_subcategory():
    service, _, _ = make_service(
        [
            txn(TransactionType.expense, "12", category_id=1, subcategory_id=11),
            txn(TransactionType.expense, "8", category_id=1, subcategory_id=12),
            txn(TransactionType.expense, "5", category_id=1, subcategory_id=11),
            txn(TransactionType.expense, "30", category_id=1),
        ],
        {1: "Food", 11: "Groceries", 12: "Coffee"},
    )
    report = service.compute_summary(1, "yearly", group_by="subcategory")

    assert report.by_category is None
    groups = {g.id: g for g in report.by_subcategory}
    assert set(groups) == {11, 12}
    assert groups[11].name == "Groceries"
    assert groups[11].expenses == Decimal("17")
    assert groups[12].expenses == Decimal("8")
    assert report.totals.expenses == Decimal("55")


def test_missing_category_yields_unnamed_bucket():
    service, _, _ = make_service(
        [txn(TransactionType.expense, "20", category_id=99)], names={}
    )
    report = service.compute_summary(1, "monthly", group_by="category")

    [bucket] = report.by_category
    assert bucket.id == 99
    assert bucket.name == ""
    assert bucket.expenses == Decimal("20")


def test_failed_lookup_degrades_to_empty_name(caplog):
    service, _, _ = make_service(
        [
            txn(TransactionType.income, "50", category_id=1),
            txn(TransactionType.expense, "20", category_id=2),
        ],
        names={1: "Salary", 2: "Rent"},
        failing=frozenset({2}),
    )
    report = service.compute_summary(1, "monthly", group_by="category")

    names = {g.id: g.name for g in report.by_category}
    assert names == {1: "Salary", 2: ""}
    assert "category_lookup_failed" in caplog.text


def test_name_lookups_are_memoized_per_report():
    transactions = [
        txn(TransactionType.expense, "1", category_id=1 + (i % 3)) for i in range(30)
    ]
    service, _, categories = make_service(transactions, {1: "A", 2: "B", 3: "C"})

    service.compute_summary(4, "monthly", group_by="category")
    assert sorted(categories.calls) == [(4, 1), (4, 2), (4, 3)]

    # A second report starts with a fresh memo.
    service.compute_summary(4, "monthly", group_by="category")
    assert len(categories.calls) == 6


def test_no_lookups_without_grouping():
    service, _, categories = make_service(
        [txn(TransactionType.expense, "1", category_id=1)], {1: "A"}
    )
    service.compute_summary(1, "monthly")
    assert categories.calls == []


def test_identical_requests_give_equal_reports():
    transactions = [
        txn(TransactionType.income, "100", category_id=1),
        txn(TransactionType.expense, "33.33", category_id=2),
        txn(TransactionType.expense, "0.67", category_id=1),
    ]
    service, _, _ = make_service(transactions, {1: "A", 2: "B"})
    first = service.compute_summary(1, "monthly", group_by="category")
    second = service.compute_summary(1, "monthly", group_by="category")
    assert first == second
    assert first.as_dict() == second.as_dict()


def test_unknown_group_by_is_invalid_and_reads_nothing():
    service, store, _ = make_service([txn(TransactionType.income, "1")])
    with pytest.raises(InvalidRequest):
        service.compute_summary(1, "monthly", group_by="merchant")
    assert store.calls == []


def test_unknown_period_is_invalid():
    service, store, _ = make_service([])
    with pytest.raises(InvalidRequest):
        service.compute_summary(1, "hourly")
    assert store.calls == []


def test_custom_period_without_end_is_invalid():
    service, _, _ = make_service([])
    with pytest.raises(InvalidRequest):
        service.compute_summary(1, "custom", start=datetime(2024, 1, 1, tzinfo=UTC))


def test_report_period_is_resolved_window_not_transaction_span():
    service, _, _ = make_service([txn(TransactionType.income, "5")])
    report = service.compute_summary(1, "monthly")
    assert report.period.start == datetime(2024, 3, 1, tzinfo=UTC)
    assert report.period.end == datetime(2024, 3, 31, 23, 59, 59, 999999, tzinfo=UTC)
    assert report.as_dict()["period"] == {
        "start": "2024-03-01T00:00:00+00:00",
        "end": "2024-03-31T23:59:59.999999+00:00",
    }


def test_store_failure_surfaces_as_upstream_unavailable():
    service, _, _ = make_service(
        [], error=UpstreamUnavailable("transaction store unavailable")
    )
    with pytest.raises(UpstreamUnavailable):
        service.compute_summary(1, "monthly")


def test_cancelled_deadline_stops_before_any_store_read():
    service, store, categories = make_service(
        [txn(TransactionType.income, "1", category_id=1)], {1: "A"}
    )
    deadline = Deadline(10)
    deadline.cancel()
    with pytest.raises(ReportTimeout):
        service.compute_summary(1, "monthly", group_by="category", deadline=deadline)
    assert store.calls == []
    assert categories.calls == []


def test_expired_deadline_stops_name_lookups():
    ticks = iter([0.0, 0.0, 0.0, 5.0])
    deadline = Deadline(1.0, clock=lambda: next(ticks))
    service, store, categories = make_service(
        [txn(TransactionType.income, "1", category_id=1)], {1: "A"}
    )
    with pytest.raises(ReportTimeout):
        service.compute_summary(1, "monthly", group_by="category", deadline=deadline)
    assert len(store.calls) == 1
    assert categories.calls == []


def test_deadline_cancelled_during_fetch_discards_rows():
    deadline = Deadline(10)

    class CancellingStore(FakeTransactionStore):
        def fetch_in_range(self, user_id, start, end):
            rows = super().fetch_in_range(user_id, start, end)
            deadline.cancel()
            return rows

    store = CancellingStore([txn(TransactionType.income, "1")])
    service = ReportService(store, FakeCategoryStore({}), clock=fixed_clock)
    with pytest.raises(ReportTimeout):
        service.compute_summary(1, "monthly", deadline=deadline)
    assert len(store.calls) == 1


def test_aggregate_rejects_unknown_grouping():
    period = resolve_period("monthly", None, None, now=NOW)
    categories = FakeCategoryStore({2: "Rent"})
    with pytest.raises(InvalidRequest):
        aggregate(
            period,
            [txn(TransactionType.expense, "5", subcategory_id=2)],
            user_id=1,
            group_by="merchant",
            categories=categories,
        )
    assert categories.calls == []


def test_aggregate_accepts_grouping_names():
    period = resolve_period("monthly", None, None, now=NOW)
    report = aggregate(
        period,
        [txn(TransactionType.expense, "5", subcategory_id=2)],
        user_id=1,
        group_by="subcategory",
        categories=FakeCategoryStore({2: "Rent"}),
    )
    assert report.group_by == GroupBy.subcategory
    assert [g.name for g in report.by_subcategory] == ["Rent"]


def test_report_timeout_is_retryable_upstream_failure():
    assert issubclass(ReportTimeout, UpstreamUnavailable)
    assert ReportTimeout.retryable is True


def _expense(user, amount, occurred_at, category=None):
    return Transaction(
        user_id=user.id,
        type=TransactionType.expense,
        amount=Decimal(amount),
        currency="EUR",
        category_id=category.id if category else None,
        occurred_at=occurred_at,
    )


def test_sql_stores_scope_by_owner_and_inclusive_window(
    session, session_factory, users
):
    alice, bob = users
    food = Category(user_id=alice.id, name="Food")
    hidden = Category(user_id=bob.id, name="Hidden")
    session.add_all([food, hidden])
    session.flush()
    session.add_all(
        [
            _expense(alice, "12.50", datetime(2024, 3, 1, 0, 0), food),
            Transaction(
                user_id=alice.id,
                type=TransactionType.income,
                amount=Decimal("1000.00"),
                currency="EUR",
                occurred_at=datetime(2024, 3, 31, 23, 59, 59, 999999),
            ),
            _expense(alice, "99.00", datetime(2024, 4, 1, 0, 0), food),
            _expense(alice, "42.00", datetime(2024, 2, 29, 23, 59, 59), food),
            _expense(bob, "5.00", datetime(2024, 3, 10, 9, 0), hidden),
            # Category owned by someone else: grouped, but left unnamed.
            _expense(alice, "7.00", datetime(2024, 3, 12, 9, 0), hidden),
        ]
    )
    session.commit()

    service = ReportService(
        SqlTransactionStore(session_factory),
        SqlCategoryStore(session_factory),
        clock=fixed_clock,
    )
    report = service.compute_summary(alice.id, "monthly", group_by="category")

    assert report.totals.income == Decimal("1000.00")
    assert report.totals.expenses == Decimal("19.50")
    groups = {g.id: (g.name, g.expenses) for g in report.by_category}
    assert groups == {
        food.id: ("Food", Decimal("12.50")),
        hidden.id: ("", Decimal("7.00")),
    }


def test_sql_store_inverted_custom_window_is_empty(
    session, session_factory, users
):
    alice, _ = users
    session.add(_expense(alice, "10.00", datetime(2024, 4, 15, 12, 0)))
    session.commit()

    service = ReportService(
        SqlTransactionStore(session_factory),
        SqlCategoryStore(session_factory),
        clock=fixed_clock,
    )
    report = service.compute_summary(
        alice.id,
        "custom",
        start=datetime(2024, 5, 1, tzinfo=UTC),
        end=datetime(2024, 4, 1, tzinfo=UTC),
    )
    assert report.totals == SummaryTotals(Decimal("0"), Decimal("0"), Decimal("0"))
    assert report.period.start > report.period.end


def test_sql_store_wraps_database_errors():
    class BrokenSession:
        def __enter__(self):
            return self

        def __exit__(self, *_exc):
            return False

        def scalars(self, *_args, **_kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        def scalar(self, *_args, **_kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

    with pytest.raises(UpstreamUnavailable):
        SqlTransactionStore(BrokenSession).fetch_in_range(1, NOW, NOW)
    with pytest.raises(UpstreamUnavailable):
        SqlCategoryStore(BrokenSession).find_by_id(1, 1)
