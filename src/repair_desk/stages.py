"""Stage catalog and the order stage state machine.

Every catalog stage is a state. Moves between active stages are
unrestricted. Moving into the terminal stage closes the order: it requires a
payment method and freezes the financial snapshot exactly once. Leaving the
terminal stage is never allowed.

The workbook stores stage names only. Which stage is terminal is decided a
single time, when :meth:`StageCatalog.from_rows` loads the catalog; everything
downstream asks :meth:`StageCatalog.is_terminal`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from . import data_manager, log
from .aggregation import OrderTotals, balance_due
from .constants import PaymentMethod, StageKind
from .errors import ConsistencyViolation, MissingReferenceError, ValidationError


@dataclass(frozen=True)
class Stage:
    """A catalog stage with its kind resolved."""

    stage_id: str
    name: str
    position: int
    color: str
    kind: StageKind

    @property
    def is_terminal(self) -> bool:
        return self.kind == StageKind.TERMINAL


class StageCatalog:
    """Ordered, read-mostly set of stages with exactly one terminal stage."""

    def __init__(self, stages: Iterable[Stage]) -> None:
        ordered = sorted(stages, key=lambda stage: (stage.position, stage.stage_id))
        if not ordered:
            raise ConsistencyViolation("The stage catalog is empty")
        terminals = [stage for stage in ordered if stage.is_terminal]
        if len(terminals) != 1:
            raise ConsistencyViolation(
                f"The stage catalog must contain exactly one terminal stage, found {len(terminals)}"
            )
        self._stages: List[Stage] = ordered
        self._by_id: Dict[str, Stage] = {stage.stage_id: stage for stage in ordered}
        self._terminal = terminals[0]

    @classmethod
    def from_rows(cls, rows: Iterable[data_manager.StageRow], terminal_name: str) -> "StageCatalog":
        """Build the catalog, tagging the stage named ``terminal_name`` as terminal.

        Raises:
            ConsistencyViolation: If no stage, or more than one, carries the
                terminal name.
        """

        label = terminal_name.strip()
        stages = [
            Stage(
                stage_id=row.stage_id,
                name=row.name,
                position=row.position,
                color=row.color,
                kind=StageKind.TERMINAL if row.name.strip() == label else StageKind.ACTIVE,
            )
            for row in rows
        ]
        catalog = cls(stages)
        log.debug("Loaded stage catalog with %d stages (terminal '%s')", len(stages), catalog.terminal.stage_id)
        return catalog

    def __iter__(self):
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def terminal(self) -> Stage:
        return self._terminal

    def first(self) -> Stage:
        """Stage assigned to newly created orders."""

        return self._stages[0]

    def find(self, stage_id: str) -> Optional[Stage]:
        return self._by_id.get(stage_id)

    def get(self, stage_id: str) -> Stage:
        """Resolve a stage by identifier.

        Raises:
            MissingReferenceError: If the catalog has no such stage.
        """

        stage = self._by_id.get(stage_id)
        if stage is None:
            log.warning("Stage lookup failed for id '%s'", stage_id)
            raise MissingReferenceError(f"Unknown stage id: {stage_id}")
        return stage

    def is_terminal(self, stage_id: str) -> bool:
        return stage_id == self._terminal.stage_id


@dataclass(frozen=True)
class TransitionPlan:
    """Writes required to move an order to ``target``.

    ``field_values`` uses the ``Orders`` sheet column names. An empty plan
    (``is_noop``) means nothing must be written and no event recorded.
    """

    order_id: str
    target: Stage
    field_values: Dict[str, Any] = field(default_factory=dict)
    event_description: Optional[str] = None
    closes_order: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.field_values


def coerce_payment_method(payment_method: Any) -> PaymentMethod:
    """Return ``payment_method`` as a :class:`PaymentMethod`.

    Raises:
        ValidationError: If it is missing or not one of the supported methods.
    """

    if payment_method is None or payment_method == "":
        raise ValidationError("A payment method is required to close an order")
    try:
        return PaymentMethod(payment_method)
    except ValueError as exc:
        raise ValidationError(f"Unsupported payment method: {payment_method}") from exc


def is_closed(catalog: StageCatalog, order: data_manager.OrderRow) -> bool:
    """An order is closed once it sits in the terminal stage or has a completion stamp."""

    return order.completed_at is not None or catalog.is_terminal(order.stage_id)


def plan_transition(
    catalog: StageCatalog,
    order: data_manager.OrderRow,
    target_stage_id: str,
    *,
    payment_method: Any = None,
    totals: OrderTotals,
    now: datetime,
) -> TransitionPlan:
    """Validate a stage change and describe the writes it needs.

    Args:
        catalog: Loaded stage catalog.
        order: Current persisted state of the order.
        target_stage_id: Requested stage.
        payment_method: Required when the target is terminal.
        totals: Current aggregate of the order's items; copied into the
            snapshot on first closing.
        now: Completion timestamp used on first closing.

    Returns:
        TransitionPlan: Order fields to write and the history description.

    Raises:
        MissingReferenceError: If the target stage is unknown.
        ValidationError: If closing without a supported payment method.
        ConsistencyViolation: If re-opening a closed order or re-closing it
            with a different payment method.
    """

    target = catalog.get(target_stage_id)
    closed = is_closed(catalog, order)

    if not target.is_terminal:
        if closed:
            log.warning("Rejected re-opening of closed order '%s'", order.order_id)
            raise ConsistencyViolation(f"Order '{order.order_id}' is closed and cannot be re-opened")
        if target.stage_id == order.stage_id:
            return TransitionPlan(order_id=order.order_id, target=target)
        return TransitionPlan(
            order_id=order.order_id,
            target=target,
            field_values={"StageID": target.stage_id},
            event_description=f'Status changed to "{target.name}"',
        )

    method = coerce_payment_method(payment_method)

    if order.completed_at is not None:
        if order.payment_method is not None and order.payment_method != method.value:
            log.warning(
                "Rejected re-close of order '%s' with payment method '%s' (frozen: '%s')",
                order.order_id,
                method.value,
                order.payment_method,
            )
            raise ConsistencyViolation(
                f"Order '{order.order_id}' was already closed with payment method '{order.payment_method}'"
            )
        if catalog.is_terminal(order.stage_id):
            log.info("Order '%s' already closed; close request ignored", order.order_id)
            return TransitionPlan(order_id=order.order_id, target=target)
        # Snapshot stays frozen; only the stage pointer is repaired.
        return TransitionPlan(
            order_id=order.order_id,
            target=target,
            field_values={"StageID": target.stage_id},
            event_description=f'Status changed to "{target.name}"',
        )

    return TransitionPlan(
        order_id=order.order_id,
        target=target,
        field_values={
            "StageID": target.stage_id,
            "CompletedAt": now,
            "FinalCost": totals.total_cost,
            "TotalProfit": totals.estimated_profit,
            "PaymentMethod": method.value,
            "BalanceDue": balance_due(totals.total_cost, order.prepayment),
        },
        event_description=f'Status changed to "{target.name}" (payment: {method.value})',
        closes_order=True,
    )
