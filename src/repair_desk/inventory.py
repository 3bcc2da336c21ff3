"""Stock collaborator used when a line item is backed by a stocked part.

Stock quantity changes and the movement log are independent writes; callers
wrap them together with the line item mutation in
:func:`repair_desk.core_logic.unit_of_work`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import MovementType
from .errors import MissingReferenceError, ValidationError


def get_inventory_item(workbook: Workbook, inventory_id: str) -> data_manager.InventoryRow:
    """Resolve a stocked part by identifier.

    Raises:
        MissingReferenceError: If no inventory record carries ``inventory_id``.
    """

    for record in data_manager.iter_inventory(workbook):
        if record.inventory_id == inventory_id:
            return record
    log.warning("Inventory lookup failed for id '%s'", inventory_id)
    raise MissingReferenceError(f"Unknown inventory id: {inventory_id}")


def _require_positive(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Stock quantity change must be a whole number of at least 1")


def decrement_stock(workbook: Workbook, inventory_id: str, quantity: int) -> int:
    """Take ``quantity`` units out of stock and return the remaining quantity.

    Raises:
        MissingReferenceError: If the record does not exist.
        ValidationError: If the record is inactive or holds fewer units than
            requested.
    """

    _require_positive(quantity)
    record = get_inventory_item(workbook, inventory_id)
    if not record.is_active:
        log.warning("Attempted stock deduction on inactive part '%s'", inventory_id)
        raise ValidationError(f"Inventory item '{inventory_id}' is inactive")
    if record.quantity < quantity:
        log.warning(
            "Insufficient stock for '%s': requested %d, available %d",
            inventory_id,
            quantity,
            record.quantity,
        )
        raise ValidationError(
            f"Insufficient stock for '{record.part_name}': {record.quantity} available, {quantity} requested"
        )
    remaining = record.quantity - quantity
    data_manager.update_inventory(workbook, inventory_id, field_values={"Quantity": remaining})
    log.info("Decremented stock of '%s' by %d (now %d)", inventory_id, quantity, remaining)
    return remaining


def increment_stock(workbook: Workbook, inventory_id: str, quantity: int) -> int:
    """Return ``quantity`` units to stock and report the new quantity."""

    _require_positive(quantity)
    record = get_inventory_item(workbook, inventory_id)
    updated = record.quantity + quantity
    data_manager.update_inventory(workbook, inventory_id, field_values={"Quantity": updated})
    log.info("Incremented stock of '%s' by %d (now %d)", inventory_id, quantity, updated)
    return updated


def record_movement(
    workbook: Workbook,
    inventory_id: str,
    movement_type: MovementType,
    quantity: int,
    *,
    timestamp: datetime,
    order_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> data_manager.MovementRow:
    """Append one entry to the stock movement log."""

    movement = data_manager.MovementRow(
        movement_id=data_manager.generate_record_id("M", timestamp),
        timestamp=timestamp,
        inventory_id=inventory_id,
        movement_type=MovementType(movement_type).value,
        quantity=quantity,
        order_id=order_id,
        notes=notes,
    )
    data_manager.append_movement(workbook, movement)
    log.debug("Recorded %s movement for '%s' (quantity=%d)", movement.movement_type, inventory_id, quantity)
    return movement
