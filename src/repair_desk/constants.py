"""Enumerations shared across Repair Desk modules.

Centralises domain constants so that the data access layer (DAL), the pricing
and lifecycle rules, and the CLI rely on a single source of truth for
critical identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Label of the terminal stage when config.ini does not override it.
DEFAULT_CLOSED_STAGE_NAME = "Closed"

# Default markup applied to a stocked part's unit cost when it is added to an order.
DEFAULT_PART_MARKUP = "1.5"


class ItemKind(str, Enum):
    """Enumerate the kinds of priced line items attached to an order."""

    SERVICE = "service"
    PART = "part"
    ACCESSORY = "accessory"


class DiscountType(str, Enum):
    """Enumerate how a line item discount value is interpreted."""

    PERCENT = "percent"
    FIXED = "fixed"


class PaymentMethod(str, Enum):
    """Enumerate the payment methods accepted when an order is closed.

    The set is closed on purpose: adding a method is a code change.
    """

    BANK = "bank"
    CASH = "cash"
    BS_CASH = "bs_cash"


class HistoryEventType(str, Enum):
    """Enumerate the event types written to an order's history."""

    CREATED = "created"
    COMMENT = "comment"
    STATUS_CHANGE = "status_change"
    ITEM_DELETED = "item_deleted"
    PREPAYMENT_ADDED = "prepayment_added"


class MovementType(str, Enum):
    """Enumerate the reasons recorded on inventory movements."""

    ORDER_USE = "order_use"
    ORDER_RETURN = "order_return"
    MANUAL_IN = "manual_in"
    MANUAL_OUT = "manual_out"


class StageKind(str, Enum):
    """Classification assigned to every stage when the catalog is loaded."""

    ACTIVE = "active"
    TERMINAL = "terminal"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    STAGES = "Stages"
    ORDERS = "Orders"
    LINE_ITEMS = "LineItems"
    ORDER_HISTORY = "OrderHistory"
    INVENTORY = "Inventory"
    INVENTORY_MOVEMENTS = "InventoryMovements"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CLOSED_STAGE_NAME",
    "DEFAULT_PART_MARKUP",
    "ItemKind",
    "DiscountType",
    "PaymentMethod",
    "HistoryEventType",
    "MovementType",
    "StageKind",
    "SheetName",
]
