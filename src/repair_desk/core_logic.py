"""Business logic layer for Repair Desk.

This module orchestrates repair orders: it consumes the Data Access Layer
(DAL) for all I/O and routes every mutation through the pricing, aggregation,
stage, audit, and inventory rules. Each mutating operation runs inside
:func:`unit_of_work`, so the workbook on disk only ever reflects operations
that completed every one of their steps.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from openpyxl.workbook import Workbook

from . import audit, data_manager, inventory, log, pricing, reports
from .aggregation import OrderTotals, RunningTotals, aggregate, balance_due, quantize_money, totals_by_kind
from .constants import EXPECTED_SCHEMA_VERSION, HistoryEventType, ItemKind, MovementType, PaymentMethod, SheetName
from .errors import (
    BusinessRuleViolation,
    CollaboratorFailure,
    ConsistencyViolation,
    MissingReferenceError,
    ValidationError,
)
from .stages import StageCatalog, is_closed, plan_transition

ORDER_NUMBER_PATTERN = re.compile(r"^A(\d+)$")
FIRST_ORDER_NUMBER = 10


@dataclass
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    ``workbook`` is swapped for a freshly loaded copy when a unit of work
    rolls back.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _depth: int = field(default=0, repr=False, compare=False)


@dataclass(frozen=True)
class CreateOrderCommand:
    """User intent for registering a device brought in for repair."""

    client_ref: str
    device: str
    actor: str
    issue: Optional[str] = None
    prepayment: Decimal = Decimal("0")
    accepted_at: Optional[datetime] = None


@dataclass(frozen=True)
class LineItemCommand:
    """User intent for adding or editing a priced line item."""

    order_id: str
    kind: ItemKind
    name: str
    quantity: int
    unit_price: Decimal
    unit_cost: Decimal = Decimal("0")
    discount: Optional[pricing.DiscountSpec] = None
    inventory_id: Optional[str] = None
    technician_id: Optional[str] = None
    warranty_days: int = 0
    warranty_months: int = 0
    comment: Optional[str] = None


@dataclass(frozen=True)
class StageChangeCommand:
    """User intent for moving an order to another stage.

    ``payment_method`` must be collected by the caller before asking for the
    terminal stage; the engine never prompts for it.
    """

    order_id: str
    stage_id: str
    actor: str
    payment_method: Optional[PaymentMethod] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC time.

    Raises:
        ValidationError: If ``candidate`` carries no UTC offset.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None or candidate.utcoffset() is None:
        log.error("Rejected naive timestamp %s", candidate.isoformat())
        raise ValidationError(f"Timestamp must be timezone-aware: {candidate.isoformat()}")
    return candidate


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_orders_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "orders")
    if "all" not in bucket:
        all_orders = list(data_manager.iter_orders(context.workbook))
        bucket["all"] = all_orders
        bucket["by_id"] = {order.order_id: order for order in all_orders}
        log.debug("Populated orders cache with %d entries", len(all_orders))
    return bucket


def _ensure_line_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "line_items")
    if "all" not in bucket:
        all_items = list(data_manager.iter_line_items(context.workbook))
        by_order: Dict[str, List[data_manager.LineItemRow]] = {}
        for item in all_items:
            by_order.setdefault(item.order_id, []).append(item)
        bucket["all"] = all_items
        bucket["by_id"] = {item.item_id: item for item in all_items}
        bucket["by_order"] = by_order
        log.debug("Populated line items cache with %d entries", len(all_items))
    return bucket


def _ensure_history_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "history")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_history(context.workbook))
        log.debug("Populated history cache with %d entries", len(bucket["all"]))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for orchestration functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a new context on a freshly loaded workbook with empty caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def _rollback(context: RuntimeContext) -> None:
    try:
        context.workbook = data_manager.refresh_workbook(context.settings.data_file)
    except OSError as exc:
        raise CollaboratorFailure(f"Unable to reload workbook after a failed operation: {exc}") from exc
    finally:
        context._cache.clear()
    log.warning("Rolled back in-memory changes to '%s'", context.settings.data_file)


@contextmanager
def unit_of_work(context: RuntimeContext) -> Iterator[RuntimeContext]:
    """Run a multi-step mutation as one all-or-nothing operation.

    On success the workbook is saved once. On any exception every in-memory
    write of the block is discarded by reloading the workbook from disk.
    Persistence errors surface as :class:`CollaboratorFailure`; domain errors
    are re-raised unchanged. Nested blocks join the outermost one.

    Raises:
        CollaboratorFailure: If the DAL fails while writing or saving.
    """

    if context._depth:
        context._depth += 1
        try:
            yield context
        finally:
            context._depth -= 1
        return

    context._depth = 1
    try:
        yield context
    except BusinessRuleViolation:
        context._depth = 0
        _rollback(context)
        raise
    except (OSError, KeyError) as exc:
        context._depth = 0
        log.error("Persistence failure, rolling back: %s", exc)
        _rollback(context)
        raise CollaboratorFailure(f"Persistence failed: {exc}") from exc
    except Exception:
        context._depth = 0
        _rollback(context)
        raise
    context._depth = 0

    try:
        persist_context(context)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", context.settings.data_file, exc)
        _rollback(context)
        raise CollaboratorFailure(f"Unable to save workbook: {exc}") from exc


def get_stage_catalog(context: RuntimeContext) -> StageCatalog:
    """Return the stage catalog, classifying the terminal stage once per load."""

    bucket = _get_cache_bucket(context, "stages")
    if "catalog" not in bucket:
        rows = list(data_manager.iter_stages(context.workbook))
        bucket["catalog"] = StageCatalog.from_rows(rows, context.settings.closed_stage_name)
    return bucket["catalog"]


def list_orders(context: RuntimeContext) -> List[data_manager.OrderRow]:
    """Return every order in sheet order."""
    return list(_ensure_orders_cache(context)["all"])


def get_order(context: RuntimeContext, order_id: str) -> data_manager.OrderRow:
    """Resolve an order by identifier.

    Raises:
        MissingReferenceError: If ``order_id`` is absent from the workbook.
    """
    cache = _ensure_orders_cache(context)
    try:
        return cache["by_id"][order_id]
    except KeyError as exc:
        log.warning("Order lookup failed for id '%s'", order_id)
        raise MissingReferenceError(f"Unknown order id: {order_id}") from exc


def list_line_items(context: RuntimeContext, order_id: Optional[str] = None) -> List[data_manager.LineItemRow]:
    """Return all line items, or only those of ``order_id``."""
    cache = _ensure_line_items_cache(context)
    if order_id is None:
        return list(cache["all"])
    return list(cache["by_order"].get(order_id, []))


def get_line_item(context: RuntimeContext, item_id: str) -> data_manager.LineItemRow:
    """Resolve a line item by identifier.

    Raises:
        MissingReferenceError: If ``item_id`` is unknown.
    """
    cache = _ensure_line_items_cache(context)
    try:
        return cache["by_id"][item_id]
    except KeyError as exc:
        log.warning("Line item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown line item id: {item_id}") from exc


def get_order_history(context: RuntimeContext, order_id: str) -> List[data_manager.HistoryRow]:
    """Return the history of ``order_id`` newest first."""
    get_order(context, order_id)
    return audit.order_history(_ensure_history_cache(context)["all"], order_id)


def list_inventory(context: RuntimeContext) -> List[data_manager.InventoryRow]:
    return list(data_manager.iter_inventory(context.workbook))


def order_totals(context: RuntimeContext, order_id: str) -> OrderTotals:
    """Recompute the live totals of ``order_id`` from its items."""
    get_order(context, order_id)
    return aggregate(list_line_items(context, order_id))


def order_breakdown(context: RuntimeContext, order_id: str) -> Dict[ItemKind, Decimal]:
    """Discounted totals of ``order_id`` per item kind."""
    get_order(context, order_id)
    return totals_by_kind(list_line_items(context, order_id))


def next_order_id(existing: List[data_manager.OrderRow]) -> str:
    """Next human order number (``A010``, ``A011``, ...)."""
    numbers = [
        int(match.group(1))
        for match in (ORDER_NUMBER_PATTERN.match(order.order_id) for order in existing)
        if match
    ]
    next_number = max(numbers) + 1 if numbers else FIRST_ORDER_NUMBER
    return f"A{next_number:03d}"


def _require_actor(actor: str) -> str:
    if not actor or not actor.strip():
        raise ValidationError("An actor is required")
    return actor.strip()


def _require_open(context: RuntimeContext, order: data_manager.OrderRow) -> None:
    if is_closed(get_stage_catalog(context), order):
        log.warning("Rejected item change on closed order '%s'", order.order_id)
        raise ConsistencyViolation(f"Order '{order.order_id}' is closed; its items can no longer change")


def _stored_totals(order: data_manager.OrderRow) -> OrderTotals:
    return OrderTotals(
        subtotal=order.subtotal,
        total_discount=order.total_discount,
        total_cost=order.estimated_cost,
        estimated_profit=order.estimated_profit,
    )


def _refresh_order_totals(context: RuntimeContext, order: data_manager.OrderRow, running: RunningTotals) -> OrderTotals:
    """Re-fold the order's stored items and persist the result.

    The full fold is what gets written. ``running`` holds the previously
    persisted figures adjusted by this edit; a mismatch means the stored
    figures were stale, usually because another session edited the order.
    """

    _invalidate_cache(context, "line_items")
    items = list_line_items(context, order.order_id)
    totals = aggregate(items)
    if not running.matches(items):
        log.warning(
            "Order '%s' totals drifted from stored figures (running=%s, recomputed=%s); storing recomputed values",
            order.order_id,
            running.snapshot().total_cost,
            totals.total_cost,
        )
    data_manager.update_order(
        context.workbook,
        order.order_id,
        field_values={
            "Subtotal": totals.subtotal,
            "TotalDiscount": totals.total_discount,
            "EstimatedCost": totals.total_cost,
            "EstimatedProfit": totals.estimated_profit,
            "BalanceDue": balance_due(totals.total_cost, order.prepayment),
        },
    )
    _invalidate_cache(context, "orders")
    log.debug("Order '%s' totals now %s", order.order_id, totals)
    return totals


def _validate_line_command(command: LineItemCommand) -> None:
    pricing.validate_line(
        name=command.name,
        kind=command.kind,
        quantity=command.quantity,
        unit_price=command.unit_price,
        unit_cost=command.unit_cost,
        discount=command.discount,
    )
    for label, value in (("Warranty days", command.warranty_days), ("Warranty months", command.warranty_months)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{label} must be a whole number of zero or more")
    if command.inventory_id is not None and pricing.coerce_kind(command.kind) != ItemKind.PART:
        raise ValidationError("Only parts can be linked to a stocked inventory record")


def build_line_item(command: LineItemCommand, *, item_id: str, stock_reserved: bool) -> data_manager.LineItemRow:
    """Materialize a :class:`LineItemCommand` into a DAL row with derived values."""
    discount = pricing.coerce_discount(command.discount)
    priced = pricing.compute_line(
        kind=command.kind,
        quantity=command.quantity,
        unit_price=command.unit_price,
        unit_cost=command.unit_cost,
        discount=discount,
    )
    return data_manager.LineItemRow(
        item_id=item_id,
        order_id=command.order_id,
        kind=pricing.coerce_kind(command.kind).value,
        name=command.name.strip(),
        quantity=int(command.quantity),
        unit_cost=pricing.to_decimal(command.unit_cost),
        unit_price=pricing.to_decimal(command.unit_price),
        discount_type=discount.type.value,
        discount_value=discount.value,
        inventory_id=command.inventory_id,
        technician_id=command.technician_id,
        warranty_days=command.warranty_days,
        warranty_months=command.warranty_months,
        comment=command.comment,
        stock_reserved=stock_reserved,
        cost_price=priced.cost_price,
        selling_price=priced.selling_price,
        total_price=priced.total_price,
        profit=priced.profit,
    )


def _line_field_values(row: data_manager.LineItemRow) -> Dict[str, Any]:
    columns = data_manager.SHEET_COLUMNS[SheetName.LINE_ITEMS.value]
    values = data_manager.serialize_line_item(row)
    return {column: value for column, value in zip(columns, values) if column not in ("ItemID", "OrderID")}


def _take_stock(context: RuntimeContext, inventory_id: str, quantity: int, *, order_id: str, timestamp: datetime) -> None:
    inventory.decrement_stock(context.workbook, inventory_id, quantity)
    inventory.record_movement(
        context.workbook,
        inventory_id,
        MovementType.ORDER_USE,
        quantity,
        timestamp=timestamp,
        order_id=order_id,
        notes=f"Used in order {order_id}",
    )


def _return_stock(context: RuntimeContext, inventory_id: str, quantity: int, *, order_id: str, timestamp: datetime) -> None:
    inventory.increment_stock(context.workbook, inventory_id, quantity)
    inventory.record_movement(
        context.workbook,
        inventory_id,
        MovementType.ORDER_RETURN,
        quantity,
        timestamp=timestamp,
        order_id=order_id,
        notes=f"Returned from order {order_id}",
    )


def create_order(context: RuntimeContext, command: CreateOrderCommand) -> data_manager.OrderRow:
    """Register a new order in the catalog's first stage with no items.

    Raises:
        ValidationError: If the client reference, device, actor, or prepayment
            is invalid.
    """
    actor = _require_actor(command.actor)
    if not command.client_ref or not command.client_ref.strip():
        raise ValidationError("Client reference cannot be empty")
    if not command.device or not command.device.strip():
        raise ValidationError("Device description cannot be empty")
    prepayment = pricing.to_decimal(command.prepayment, field_name="Prepayment")
    pricing.require_nonnegative(prepayment, field_name="Prepayment")

    catalog = get_stage_catalog(context)
    timestamp = _resolve_timestamp(command.accepted_at)
    zero = quantize_money(Decimal("0"))
    order = data_manager.OrderRow(
        order_id=next_order_id(list_orders(context)),
        client_ref=command.client_ref.strip(),
        device=command.device.strip(),
        issue=command.issue.strip() if command.issue else None,
        stage_id=catalog.first().stage_id,
        accepted_at=timestamp,
        completed_at=None,
        subtotal=zero,
        total_discount=zero,
        estimated_cost=zero,
        estimated_profit=zero,
        final_cost=None,
        total_profit=None,
        payment_method=None,
        prepayment=quantize_money(prepayment),
        balance_due=zero,
    )

    with unit_of_work(context):
        data_manager.append_order(context.workbook, order)
        audit.record(
            context.workbook,
            order.order_id,
            actor,
            HistoryEventType.CREATED,
            f"Order created for {order.device}",
            timestamp=timestamp,
        )
        if prepayment > 0:
            audit.record(
                context.workbook,
                order.order_id,
                actor,
                HistoryEventType.PREPAYMENT_ADDED,
                f"Prepayment recorded: {order.prepayment}",
                timestamp=timestamp,
            )
        _invalidate_cache(context, "orders", "history")

    log.info("Created order '%s' in stage '%s'", order.order_id, order.stage_id)
    return order


def add_line_item(context: RuntimeContext, command: LineItemCommand, *, timestamp: Optional[datetime] = None) -> data_manager.LineItemRow:
    """Validate and attach a line item, then re-fold the order totals.

    A part linked to stock takes ``quantity`` units out of inventory and logs
    an ``order_use`` movement within the same unit of work.

    Raises:
        MissingReferenceError: If the order or inventory record is unknown.
        ConsistencyViolation: If the order is closed.
        ValidationError: If the line or the stock request is invalid.
    """
    order = get_order(context, command.order_id)
    _require_open(context, order)
    _validate_line_command(command)
    if command.inventory_id is not None:
        inventory.get_inventory_item(context.workbook, command.inventory_id)

    moment = _resolve_timestamp(timestamp)
    row = build_line_item(
        command,
        item_id=data_manager.generate_record_id("I", moment),
        stock_reserved=command.inventory_id is not None,
    )
    running = RunningTotals.from_totals(_stored_totals(order))
    running.apply(row)

    with unit_of_work(context):
        data_manager.append_line_item(context.workbook, row)
        if row.inventory_id is not None:
            _take_stock(context, row.inventory_id, row.quantity, order_id=order.order_id, timestamp=moment)
        _refresh_order_totals(context, order, running)

    log.info(
        "Added %s '%s' to order '%s' (quantity=%d, total=%s)",
        row.kind,
        row.name,
        order.order_id,
        row.quantity,
        row.total_price,
    )
    return row


def add_inventory_part(
    context: RuntimeContext,
    order_id: str,
    inventory_id: str,
    *,
    quantity: int = 1,
    technician_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.LineItemRow:
    """Add a stocked part priced at its unit cost times the configured markup."""
    part = inventory.get_inventory_item(context.workbook, inventory_id)
    command = LineItemCommand(
        order_id=order_id,
        kind=ItemKind.PART,
        name=part.part_name,
        quantity=quantity,
        unit_cost=part.unit_cost,
        unit_price=quantize_money(pricing.suggested_part_price(part.unit_cost, context.settings.part_markup)),
        inventory_id=part.inventory_id,
        technician_id=technician_id or context.settings.default_technician_id,
    )
    return add_line_item(context, command, timestamp=timestamp)


def update_line_item(
    context: RuntimeContext,
    item_id: str,
    command: LineItemCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.LineItemRow:
    """Replace the editable fields of a line item and re-fold the order.

    Stock follows the edit: a changed quantity on the same stocked part moves
    only the difference; switching or removing the link returns the old units
    and takes the new ones.

    Raises:
        MissingReferenceError: If the item, order, or inventory record is unknown.
        ConsistencyViolation: If the order is closed.
        ValidationError: If the new values are invalid or try to move the item
            to another order.
    """
    existing = get_line_item(context, item_id)
    if command.order_id != existing.order_id:
        raise ValidationError("Line items cannot be moved between orders")
    order = get_order(context, existing.order_id)
    _require_open(context, order)
    _validate_line_command(command)
    if command.inventory_id is not None:
        inventory.get_inventory_item(context.workbook, command.inventory_id)

    moment = _resolve_timestamp(timestamp)
    row = build_line_item(command, item_id=existing.item_id, stock_reserved=command.inventory_id is not None)
    running = RunningTotals.from_totals(_stored_totals(order))
    running.discard(existing)
    running.apply(row)

    old_link = existing.inventory_id if existing.stock_reserved else None
    new_link = row.inventory_id

    with unit_of_work(context):
        data_manager.update_line_item(context.workbook, item_id, field_values=_line_field_values(row))
        if old_link is not None and old_link == new_link:
            delta = row.quantity - existing.quantity
            if delta > 0:
                _take_stock(context, new_link, delta, order_id=order.order_id, timestamp=moment)
            elif delta < 0:
                _return_stock(context, old_link, -delta, order_id=order.order_id, timestamp=moment)
        else:
            if old_link is not None:
                _return_stock(context, old_link, existing.quantity, order_id=order.order_id, timestamp=moment)
            if new_link is not None:
                _take_stock(context, new_link, row.quantity, order_id=order.order_id, timestamp=moment)
        _refresh_order_totals(context, order, running)

    log.info("Updated line item '%s' on order '%s'", item_id, order.order_id)
    return row


def delete_line_item(
    context: RuntimeContext,
    item_id: str,
    actor: str,
    *,
    timestamp: Optional[datetime] = None,
) -> None:
    """Remove a line item, restock a reserved part, and log the deletion.

    Raises:
        MissingReferenceError: If the item is unknown.
        ConsistencyViolation: If the order is closed.
    """
    actor = _require_actor(actor)
    existing = get_line_item(context, item_id)
    order = get_order(context, existing.order_id)
    _require_open(context, order)

    moment = _resolve_timestamp(timestamp)
    running = RunningTotals.from_totals(_stored_totals(order))
    running.discard(existing)

    with unit_of_work(context):
        data_manager.delete_line_item(context.workbook, item_id)
        if existing.stock_reserved and existing.inventory_id is not None:
            _return_stock(context, existing.inventory_id, existing.quantity, order_id=order.order_id, timestamp=moment)
        audit.record(
            context.workbook,
            order.order_id,
            actor,
            HistoryEventType.ITEM_DELETED,
            f'Item "{existing.name}" removed from order',
            timestamp=moment,
        )
        _refresh_order_totals(context, order, running)
        _invalidate_cache(context, "history")

    log.info("Deleted line item '%s' from order '%s'", item_id, order.order_id)


def add_comment(
    context: RuntimeContext,
    order_id: str,
    actor: str,
    text: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.HistoryRow:
    """Attach a free-text comment to the order history.

    Raises:
        MissingReferenceError: If the order is unknown.
        ValidationError: If the comment is blank.
    """
    actor = _require_actor(actor)
    get_order(context, order_id)
    if not text or not text.strip():
        raise ValidationError("Comment cannot be empty")
    moment = _resolve_timestamp(timestamp)

    with unit_of_work(context):
        event = audit.record(
            context.workbook,
            order_id,
            actor,
            HistoryEventType.COMMENT,
            text,
            timestamp=moment,
        )
        _invalidate_cache(context, "history")
    return event


def set_prepayment(
    context: RuntimeContext,
    order_id: str,
    amount: Decimal,
    actor: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Record the amount the client paid up front and refresh the balance due.

    Increases are logged as ``prepayment_added`` events.

    Raises:
        MissingReferenceError: If the order is unknown.
        ConsistencyViolation: If the order is already closed.
        ValidationError: If ``amount`` is negative.
    """
    actor = _require_actor(actor)
    order = get_order(context, order_id)
    if is_closed(get_stage_catalog(context), order):
        raise ConsistencyViolation(f"Order '{order_id}' is closed; its prepayment is final")
    value = quantize_money(pricing.to_decimal(amount, field_name="Prepayment"))
    pricing.require_nonnegative(value, field_name="Prepayment")
    moment = _resolve_timestamp(timestamp)

    with unit_of_work(context):
        data_manager.update_order(
            context.workbook,
            order_id,
            field_values={
                "Prepayment": value,
                "BalanceDue": balance_due(order.estimated_cost, value),
            },
        )
        if value > order.prepayment:
            audit.record(
                context.workbook,
                order_id,
                actor,
                HistoryEventType.PREPAYMENT_ADDED,
                f"Prepayment changed from {order.prepayment} to {value}",
                timestamp=moment,
            )
        _invalidate_cache(context, "orders", "history")

    log.info("Set prepayment of order '%s' to %s", order_id, value)
    return get_order(context, order_id)


def change_stage(context: RuntimeContext, command: StageChangeCommand) -> data_manager.OrderRow:
    """Move an order to another stage.

    Moves between active stages update the stage pointer and log one
    ``status_change`` event. Moving to the terminal stage for the first time
    also freezes ``final_cost``/``total_profit`` from a fresh fold of the items,
    stamps ``completed_at``, and stores the payment method, all in one unit of
    work. Repeating a close with the same payment method changes nothing.

    Raises:
        MissingReferenceError: If the order or stage is unknown.
        ValidationError: If closing without a supported payment method.
        ConsistencyViolation: If re-opening a closed order or re-closing it
            with another payment method.
    """
    actor = _require_actor(command.actor)
    order = get_order(context, command.order_id)
    catalog = get_stage_catalog(context)
    totals = aggregate(list_line_items(context, order.order_id))
    moment = _resolve_timestamp(command.timestamp)

    plan = plan_transition(
        catalog,
        order,
        command.stage_id,
        payment_method=command.payment_method,
        totals=totals,
        now=moment,
    )
    if plan.is_noop:
        log.info("Stage change of order '%s' to '%s' is a no-op", order.order_id, plan.target.stage_id)
        return order

    field_values = dict(plan.field_values)
    if plan.closes_order:
        field_values.update(
            {
                "Subtotal": totals.subtotal,
                "TotalDiscount": totals.total_discount,
                "EstimatedCost": totals.total_cost,
                "EstimatedProfit": totals.estimated_profit,
            }
        )

    with unit_of_work(context):
        data_manager.update_order(context.workbook, order.order_id, field_values=field_values)
        audit.record(
            context.workbook,
            order.order_id,
            actor,
            HistoryEventType.STATUS_CHANGE,
            plan.event_description,
            timestamp=moment,
        )
        _invalidate_cache(context, "orders", "history")

    if plan.closes_order:
        log.info(
            "Closed order '%s' (final_cost=%s, total_profit=%s, payment=%s)",
            order.order_id,
            totals.total_cost,
            totals.estimated_profit,
            field_values["PaymentMethod"],
        )
    else:
        log.info("Moved order '%s' to stage '%s'", order.order_id, plan.target.stage_id)
    return get_order(context, order.order_id)


def close_order(
    context: RuntimeContext,
    order_id: str,
    actor: str,
    payment_method: Optional[PaymentMethod],
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.OrderRow:
    """Move ``order_id`` to the terminal stage with ``payment_method``."""
    catalog = get_stage_catalog(context)
    return change_stage(
        context,
        StageChangeCommand(
            order_id=order_id,
            stage_id=catalog.terminal.stage_id,
            actor=actor,
            payment_method=payment_method,
            timestamp=timestamp,
        ),
    )


def add_inventory_item(
    context: RuntimeContext,
    *,
    inventory_id: str,
    part_name: str,
    quantity: int,
    unit_cost: Decimal,
    sku: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.InventoryRow:
    """Register a stocked part and log its opening quantity as ``manual_in``.

    Raises:
        ValidationError: If the identifier is taken or any value is invalid.
    """
    if not inventory_id or not inventory_id.strip():
        raise ValidationError("Inventory id cannot be empty")
    if not part_name or not part_name.strip():
        raise ValidationError("Part name cannot be empty")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ValidationError("Stock quantity must be a whole number of zero or more")
    cost = pricing.to_decimal(unit_cost, field_name="Unit cost")
    pricing.require_nonnegative(cost, field_name="Unit cost")
    if any(record.inventory_id == inventory_id for record in list_inventory(context)):
        raise ValidationError(f"Inventory id already exists: {inventory_id}")
    moment = _resolve_timestamp(timestamp)

    record = data_manager.InventoryRow(
        inventory_id=inventory_id.strip(),
        part_name=part_name.strip(),
        sku=sku,
        quantity=quantity,
        unit_cost=cost,
        is_active=True,
    )
    with unit_of_work(context):
        data_manager.append_inventory(context.workbook, record)
        if quantity > 0:
            inventory.record_movement(
                context.workbook,
                record.inventory_id,
                MovementType.MANUAL_IN,
                quantity,
                timestamp=moment,
                notes="Opening stock",
            )
    log.info("Registered inventory item '%s' (quantity=%d)", record.inventory_id, quantity)
    return record


def period_summary(context: RuntimeContext, window: reports.PeriodWindow) -> reports.DashboardSummary:
    """KPI rollup of ``window`` against the window before it."""
    return reports.summarize(
        list_orders(context),
        list_line_items(context),
        window,
        catalog=get_stage_catalog(context),
    )


def daily_summary(context: RuntimeContext, day: date, tz: tzinfo = UTC) -> reports.DashboardSummary:
    """KPI rollup of calendar day ``day`` against the day before."""
    return period_summary(context, reports.day_window(day, tz))
