"""Unit tests for windowed KPI rollups."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from repair_desk import data_manager, reports
from repair_desk.constants import ItemKind, PaymentMethod
from repair_desk.stages import StageCatalog

DAY = date(2025, 6, 10)
WINDOW = reports.day_window(DAY)


@pytest.fixture
def catalog():
    rows = [
        data_manager.StageRow("ST1", "New", 1, "blue"),
        data_manager.StageRow("ST5", "Closed", 5, "gray"),
    ]
    return StageCatalog.from_rows(rows, "Closed")


def _order(order_id, *, accepted, completed=None, cost="0", profit="0", method=None, stage="ST1"):
    closed = completed is not None
    return data_manager.OrderRow(
        order_id=order_id,
        client_ref="client",
        device="device",
        issue=None,
        stage_id="ST5" if closed else stage,
        accepted_at=accepted,
        completed_at=completed,
        subtotal=Decimal(cost),
        total_discount=Decimal("0"),
        estimated_cost=Decimal(cost),
        estimated_profit=Decimal(profit),
        final_cost=Decimal(cost) if closed else None,
        total_profit=Decimal(profit) if closed else None,
        payment_method=method,
        prepayment=Decimal("0"),
        balance_due=Decimal("0"),
    )


def _item(order_id, kind, name, *, quantity=1, total="0", profit="0"):
    return data_manager.LineItemRow(
        item_id=f"I-{order_id}-{name}",
        order_id=order_id,
        kind=kind.value,
        name=name,
        quantity=quantity,
        unit_cost=Decimal("0"),
        unit_price=Decimal(total),
        discount_type="percent",
        discount_value=Decimal("0"),
        inventory_id=None,
        technician_id=None,
        warranty_days=0,
        warranty_months=0,
        comment=None,
        stock_reserved=False,
        cost_price=Decimal("0"),
        selling_price=Decimal(total),
        total_price=Decimal(total),
        profit=Decimal(profit),
    )


def _at(hour, day=DAY):
    return datetime(day.year, day.month, day.day, hour, tzinfo=UTC)


def test_window_is_half_open():
    """The start instant belongs to the window, the end instant does not."""

    assert WINDOW.contains(WINDOW.start)
    assert not WINDOW.contains(WINDOW.end)
    assert not WINDOW.contains(None)


def test_previous_window_has_same_length():
    """The comparison window ends where the reporting window starts."""

    previous = WINDOW.previous()

    assert previous.end == WINDOW.start
    assert previous.end - previous.start == timedelta(days=1)


def test_window_requires_end_after_start():
    """Empty or inverted windows are refused."""

    with pytest.raises(ValueError):
        reports.PeriodWindow(WINDOW.start, WINDOW.start)


def test_window_requires_timezone_aware_bounds():
    """Naive bounds cannot be compared with stored timestamps."""

    with pytest.raises(ValueError, match="timezone-aware"):
        reports.PeriodWindow(datetime(2025, 6, 10), datetime(2025, 6, 11))


def test_day_window_honours_time_zone():
    """Calendar days start at local midnight of the given zone."""

    tz = timezone(timedelta(hours=3))
    window = reports.day_window(DAY, tz)

    assert window.start == datetime(2025, 6, 9, 21, tzinfo=UTC)


def test_order_accepted_and_closed_today_with_cash(catalog):
    """One order accepted and closed in the window fills the cash bucket."""

    orders = [_order("A010", accepted=_at(9), completed=_at(15), cost="315.00", profit="215.00", method="cash")]

    summary = reports.summarize(orders, [], WINDOW, catalog=catalog)

    assert summary.devices_accepted == 1
    assert summary.devices_closed == 1
    assert summary.total_revenue == Decimal("315.00")
    assert summary.payment_methods[PaymentMethod.CASH].total_amount == Decimal("315.00")
    assert summary.payment_methods[PaymentMethod.CASH].profit == Decimal("215.00")
    assert summary.payment_methods[PaymentMethod.BANK].total_amount == Decimal("0.00")


def test_average_repair_time_rounds_to_whole_hours(catalog):
    """Turnarounds of 4h and 6h average to 5h."""

    orders = [
        _order("A010", accepted=_at(8), completed=_at(12), method="cash"),
        _order("A011", accepted=_at(9), completed=_at(15), method="bank"),
    ]

    summary = reports.summarize(orders, [], WINDOW, catalog=catalog)

    assert summary.avg_repair_hours == 5


def test_average_repair_time_rounds_half_up():
    """A 2.5h mean rounds up to 3h."""

    orders = [
        _order("A010", accepted=_at(8), completed=_at(10)),
        _order("A011", accepted=_at(8), completed=_at(11)),
    ]

    assert reports.average_repair_hours(orders) == 3


def test_average_repair_time_without_closed_orders_is_none(catalog):
    """No closed orders means there is no turnaround to report."""

    summary = reports.summarize([_order("A010", accepted=_at(9))], [], WINDOW, catalog=catalog)

    assert summary.avg_repair_hours is None
    assert summary.devices_closed == 0


def test_previous_day_counts_feed_the_trend(catalog):
    """Orders of the day before are counted separately."""

    yesterday = DAY - timedelta(days=1)
    orders = [
        _order("A010", accepted=_at(9, yesterday), completed=_at(18, yesterday), method="cash"),
        _order("A011", accepted=_at(10, yesterday)),
        _order("A012", accepted=_at(9)),
    ]

    summary = reports.summarize(orders, [], WINDOW, catalog=catalog)

    assert (summary.devices_accepted, summary.devices_closed) == (1, 0)
    assert (summary.previous_accepted, summary.previous_closed) == (2, 1)


def test_item_profits_only_count_orders_closed_in_window(catalog):
    """Profit splits and top sellers come from items of closed orders."""

    orders = [
        _order("A010", accepted=_at(9), completed=_at(12), method="cash"),
        _order("A011", accepted=_at(9)),
    ]
    items = [
        _item("A010", ItemKind.SERVICE, "Screen swap", total="100", profit="100"),
        _item("A010", ItemKind.PART, "Screen", total="150", profit="50"),
        _item("A010", ItemKind.ACCESSORY, "Case", quantity=2, total="40", profit="16"),
        _item("A011", ItemKind.SERVICE, "Cleaning", total="30", profit="30"),
    ]

    summary = reports.summarize(orders, items, WINDOW, catalog=catalog)

    assert summary.devices_profit == Decimal("150.00")
    assert summary.accessories_profit == Decimal("16.00")
    assert summary.accessories_sold == 2
    assert summary.profit_by_kind[ItemKind.SERVICE] == Decimal("100.00")
    assert summary.top_service == "Screen swap"
    assert summary.top_accessory == "Case"


def test_top_accessory_ranks_by_units_not_lines(catalog):
    """Accessories are ranked by quantity sold."""

    orders = [_order("A010", accepted=_at(9), completed=_at(12), method="cash")]
    items = [
        _item("A010", ItemKind.ACCESSORY, "Cable", quantity=1),
        _item("A010", ItemKind.ACCESSORY, "Cable-2", quantity=1),
        _item("A010", ItemKind.ACCESSORY, "Charger", quantity=3),
    ]

    summary = reports.summarize(orders, items, WINDOW, catalog=catalog)

    assert summary.top_accessory == "Charger"


def test_most_frequent_breaks_ties_lexically():
    """Equal counts resolve to the alphabetically first name."""

    assert reports.most_frequent({"Zeta": 2, "Alpha": 2, "Mid": 1}) == "Alpha"
    assert reports.most_frequent({}) is None
