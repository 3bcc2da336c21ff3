"""Order-level folding of line item pricing.

The aggregate is always recomputed from the full item set of an order. Orders
hold tens of items at most, so a full re-fold is cheap and avoids the subtle
bugs of delta updates. :class:`RunningTotals` exists to cross-check the
persisted figures against a fresh fold and surface drift.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional, Protocol

from . import log
from .constants import ItemKind
from .errors import ConsistencyViolation

ZERO = Decimal("0")
CENT = Decimal("0.01")


class PricedLine(Protocol):
    """Anything exposing the derived values of a priced line item."""

    kind: str
    selling_price: Decimal
    total_price: Decimal
    profit: Decimal


@dataclass(frozen=True)
class OrderTotals:
    """Financial figures of one order, rounded to cents."""

    subtotal: Decimal
    total_discount: Decimal
    total_cost: Decimal
    estimated_profit: Decimal


EMPTY_TOTALS = OrderTotals(ZERO.quantize(CENT), ZERO.quantize(CENT), ZERO.quantize(CENT), ZERO.quantize(CENT))


def quantize_money(value: Decimal) -> Decimal:
    """Round a currency value to two decimals, halves away from zero."""

    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _fold(selling: Decimal, total: Decimal, profit: Decimal) -> OrderTotals:
    return OrderTotals(
        subtotal=quantize_money(selling),
        total_discount=quantize_money(selling - total),
        total_cost=quantize_money(total),
        estimated_profit=quantize_money(profit),
    )


def aggregate(lines: Iterable[PricedLine]) -> OrderTotals:
    """Fold line pricing into order totals.

    ``subtotal`` sums selling prices, ``total_cost`` sums discounted totals,
    ``total_discount`` is their difference and ``estimated_profit`` sums
    profits. The fold is order independent; rounding happens once, here.
    """

    selling = ZERO
    total = ZERO
    profit = ZERO
    for line in lines:
        selling += line.selling_price
        total += line.total_price
        profit += line.profit
    return _fold(selling, total, profit)


def totals_by_kind(lines: Iterable[PricedLine]) -> Dict[ItemKind, Decimal]:
    """Sum discounted totals per item kind (parts, services, accessories)."""

    sums: Dict[ItemKind, Decimal] = {kind: ZERO for kind in ItemKind}
    for line in lines:
        kind = ItemKind(line.kind)
        sums[kind] += line.total_price
    return {kind: quantize_money(value) for kind, value in sums.items()}


def balance_due(total: Optional[Decimal], prepayment: Optional[Decimal]) -> Decimal:
    """Amount still owed by the client, never below zero."""

    owed = (total or ZERO) - (prepayment or ZERO)
    return quantize_money(max(owed, ZERO))


class RunningTotals:
    """Incrementally maintained order totals with a re-fold cross-check.

    Seed it from the figures last persisted on the order, ``apply`` or
    ``discard`` the lines touched by an edit, then compare against a fresh
    :func:`aggregate` of the stored items. A mismatch means the persisted
    figures were computed from a different item set, typically because another
    session edited the same order in between.
    """

    def __init__(self, selling: Decimal = ZERO, total: Decimal = ZERO, profit: Decimal = ZERO) -> None:
        self.selling = selling
        self.total = total
        self.profit = profit

    @classmethod
    def from_totals(cls, totals: OrderTotals) -> "RunningTotals":
        return cls(selling=totals.subtotal, total=totals.total_cost, profit=totals.estimated_profit)

    def apply(self, line: PricedLine) -> None:
        self.selling += line.selling_price
        self.total += line.total_price
        self.profit += line.profit

    def discard(self, line: PricedLine) -> None:
        self.selling -= line.selling_price
        self.total -= line.total_price
        self.profit -= line.profit

    def snapshot(self) -> OrderTotals:
        return _fold(self.selling, self.total, self.profit)

    def matches(self, lines: Iterable[PricedLine]) -> bool:
        """Return ``True`` when the running figures equal a full re-fold."""

        return self.snapshot() == aggregate(lines)

    def verify(self, lines: Iterable[PricedLine]) -> OrderTotals:
        """Return the re-folded totals, raising when the running figures drifted.

        Raises:
            ConsistencyViolation: If the running total disagrees with the fold.
        """

        expected = aggregate(lines)
        actual = self.snapshot()
        if actual != expected:
            log.error("Running totals drifted: running=%s refold=%s", actual, expected)
            raise ConsistencyViolation(
                f"Order totals drifted: running total {actual.total_cost} != recomputed {expected.total_cost}"
            )
        return expected
