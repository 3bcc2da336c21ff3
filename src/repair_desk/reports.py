"""Time-windowed KPI rollups over persisted orders and their items.

A window is half-open (``start <= ts < end``). Orders count as accepted in a
window by ``accepted_at`` and as closed when they sit in the terminal stage
with a ``completed_at`` inside the window. Item-level figures only consider
items of orders closed in the window. Money is summed unrounded and rounded
to cents once, when the summary is built.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from . import data_manager, log
from .aggregation import quantize_money
from .constants import ItemKind, PaymentMethod
from .stages import StageCatalog

ZERO = Decimal("0")
SECONDS_PER_HOUR = Decimal("3600")


@dataclass(frozen=True)
class PeriodWindow:
    """Half-open time range ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.utcoffset() is None or self.end.utcoffset() is None:
            raise ValueError("Window bounds must be timezone-aware")
        if self.end <= self.start:
            raise ValueError("Window end must be after its start")

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment < self.end

    def previous(self) -> "PeriodWindow":
        """Window of the same length ending where this one starts."""

        length = self.end - self.start
        return PeriodWindow(start=self.start - length, end=self.start)


def day_window(day: date, tz: tzinfo = UTC) -> PeriodWindow:
    """Calendar day ``day`` in time zone ``tz``."""

    start = datetime.combine(day, time.min, tzinfo=tz)
    return PeriodWindow(start=start, end=start + timedelta(days=1))


@dataclass(frozen=True)
class PaymentMethodStats:
    total_amount: Decimal = ZERO
    profit: Decimal = ZERO


@dataclass(frozen=True)
class DashboardSummary:
    """KPI figures for one window compared with the window before it."""

    window: PeriodWindow
    devices_accepted: int
    devices_closed: int
    previous_accepted: int
    previous_closed: int
    total_revenue: Decimal
    devices_profit: Decimal
    accessories_profit: Decimal
    accessories_sold: int
    profit_by_kind: Mapping[ItemKind, Decimal]
    avg_repair_hours: Optional[int]
    top_service: Optional[str]
    top_accessory: Optional[str]
    payment_methods: Mapping[PaymentMethod, PaymentMethodStats] = field(default_factory=dict)


def accepted_in(orders: Iterable[data_manager.OrderRow], window: PeriodWindow) -> List[data_manager.OrderRow]:
    return [order for order in orders if window.contains(order.accepted_at)]


def closed_in(
    orders: Iterable[data_manager.OrderRow],
    window: PeriodWindow,
    catalog: StageCatalog,
) -> List[data_manager.OrderRow]:
    return [
        order
        for order in orders
        if catalog.is_terminal(order.stage_id) and window.contains(order.completed_at)
    ]


def most_frequent(counts: Mapping[str, int]) -> Optional[str]:
    """Name with the highest count; ties go to the lexically smallest name."""

    if not counts:
        return None
    return min(counts.items(), key=lambda pair: (-pair[1], pair[0]))[0]


def average_repair_hours(orders: Iterable[data_manager.OrderRow]) -> Optional[int]:
    """Mean ``completed_at - accepted_at`` in whole hours (half up).

    Orders missing either timestamp are left out of both the sum and the count.
    """

    durations = [
        Decimal(str((order.completed_at - order.accepted_at).total_seconds())) / SECONDS_PER_HOUR
        for order in orders
        if order.accepted_at is not None and order.completed_at is not None
    ]
    if not durations:
        return None
    mean = sum(durations, ZERO) / len(durations)
    return int(mean.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def summarize(
    orders: Iterable[data_manager.OrderRow],
    items: Iterable[data_manager.LineItemRow],
    window: PeriodWindow,
    *,
    catalog: StageCatalog,
) -> DashboardSummary:
    """Build the dashboard KPIs for ``window``.

    Args:
        orders: Every persisted order; filtering happens here.
        items: Line items, at least those of orders closed in ``window``.
        window: Reporting window; the trend figures use ``window.previous()``.
        catalog: Stage catalog used to recognise closed orders.

    Returns:
        DashboardSummary: Counts, revenue, profit splits, turnaround, top
            sellers, and payment method buckets, money rounded to cents.
    """

    all_orders = list(orders)
    previous = window.previous()

    accepted = accepted_in(all_orders, window)
    closed = closed_in(all_orders, window, catalog)
    closed_ids = {order.order_id for order in closed}

    total_revenue = sum((order.estimated_cost for order in accepted), ZERO)

    profit_by_kind: Dict[ItemKind, Decimal] = {kind: ZERO for kind in ItemKind}
    accessories_sold = 0
    service_counts: Counter[str] = Counter()
    accessory_units: Counter[str] = Counter()
    for item in items:
        if item.order_id not in closed_ids:
            continue
        kind = ItemKind(item.kind)
        profit_by_kind[kind] += item.profit
        if kind == ItemKind.ACCESSORY:
            accessories_sold += item.quantity
            accessory_units[item.name] += item.quantity
        elif kind == ItemKind.SERVICE:
            service_counts[item.name] += 1

    buckets: Dict[PaymentMethod, Dict[str, Decimal]] = {
        method: {"total_amount": ZERO, "profit": ZERO} for method in PaymentMethod
    }
    for order in closed:
        if order.payment_method is None:
            continue
        try:
            method = PaymentMethod(order.payment_method)
        except ValueError:
            log.warning("Order '%s' has unknown payment method '%s'", order.order_id, order.payment_method)
            continue
        buckets[method]["total_amount"] += order.final_cost or ZERO
        buckets[method]["profit"] += order.total_profit or ZERO

    summary = DashboardSummary(
        window=window,
        devices_accepted=len(accepted),
        devices_closed=len(closed),
        previous_accepted=len(accepted_in(all_orders, previous)),
        previous_closed=len(closed_in(all_orders, previous, catalog)),
        total_revenue=quantize_money(total_revenue),
        devices_profit=quantize_money(profit_by_kind[ItemKind.SERVICE] + profit_by_kind[ItemKind.PART]),
        accessories_profit=quantize_money(profit_by_kind[ItemKind.ACCESSORY]),
        accessories_sold=accessories_sold,
        profit_by_kind={kind: quantize_money(value) for kind, value in profit_by_kind.items()},
        avg_repair_hours=average_repair_hours(closed),
        top_service=most_frequent(service_counts),
        top_accessory=most_frequent(accessory_units),
        payment_methods={
            method: PaymentMethodStats(
                total_amount=quantize_money(values["total_amount"]),
                profit=quantize_money(values["profit"]),
            )
            for method, values in buckets.items()
        },
    )
    log.debug(
        "Summarized window %s..%s: accepted=%d closed=%d",
        window.start.isoformat(),
        window.end.isoformat(),
        summary.devices_accepted,
        summary.devices_closed,
    )
    return summary
