"""Data access layer for Repair Desk.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_CLOSED_STAGE_NAME, DEFAULT_PART_MARKUP, SheetName


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.STAGES.value: [
        "StageID",
        "StageName",
        "Position",
        "Color",
    ],
    SheetName.ORDERS.value: [
        "OrderID",
        "ClientRef",
        "Device",
        "Issue",
        "StageID",
        "AcceptedAt",
        "CompletedAt",
        "Subtotal",
        "TotalDiscount",
        "EstimatedCost",
        "EstimatedProfit",
        "FinalCost",
        "TotalProfit",
        "PaymentMethod",
        "Prepayment",
        "BalanceDue",
    ],
    SheetName.LINE_ITEMS.value: [
        "ItemID",
        "OrderID",
        "ItemKind",
        "Name",
        "Quantity",
        "UnitCost",
        "UnitPrice",
        "DiscountType",
        "DiscountValue",
        "InventoryID",
        "TechnicianID",
        "WarrantyDays",
        "WarrantyMonths",
        "Comment",
        "StockReserved",
        "CostPrice",
        "SellingPrice",
        "TotalPrice",
        "Profit",
    ],
    SheetName.ORDER_HISTORY.value: [
        "EventID",
        "OrderID",
        "Actor",
        "EventType",
        "Description",
        "Timestamp",
    ],
    SheetName.INVENTORY.value: [
        "InventoryID",
        "PartName",
        "SKU",
        "Quantity",
        "UnitCost",
        "IsActive",
    ],
    SheetName.INVENTORY_MOVEMENTS.value: [
        "MovementID",
        "Timestamp",
        "InventoryID",
        "MovementType",
        "Quantity",
        "OrderID",
        "Notes",
    ],
}

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_technician_id: str
    closed_stage_name: str = DEFAULT_CLOSED_STAGE_NAME
    part_markup: Decimal = Decimal(DEFAULT_PART_MARKUP)


@dataclass(frozen=True)
class StageRow:
    """In-memory view of a row from the ``Stages`` sheet."""

    stage_id: str
    name: str
    position: int
    color: str


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``Orders`` sheet."""

    order_id: str
    client_ref: str
    device: str
    issue: Optional[str]
    stage_id: str
    accepted_at: datetime
    completed_at: Optional[datetime]
    subtotal: Decimal
    total_discount: Decimal
    estimated_cost: Decimal
    estimated_profit: Decimal
    final_cost: Optional[Decimal]
    total_profit: Optional[Decimal]
    payment_method: Optional[str]
    prepayment: Decimal
    balance_due: Decimal


@dataclass(frozen=True)
class LineItemRow:
    """In-memory view of a row from the ``LineItems`` sheet."""

    item_id: str
    order_id: str
    kind: str
    name: str
    quantity: int
    unit_cost: Decimal
    unit_price: Decimal
    discount_type: str
    discount_value: Decimal
    inventory_id: Optional[str]
    technician_id: Optional[str]
    warranty_days: int
    warranty_months: int
    comment: Optional[str]
    stock_reserved: bool
    cost_price: Decimal
    selling_price: Decimal
    total_price: Decimal
    profit: Decimal


@dataclass(frozen=True)
class HistoryRow:
    """In-memory view of a row from the ``OrderHistory`` sheet."""

    event_id: str
    order_id: str
    actor: str
    event_type: str
    description: str
    timestamp: datetime


@dataclass(frozen=True)
class InventoryRow:
    """In-memory view of a row from the ``Inventory`` sheet."""

    inventory_id: str
    part_name: str
    sku: Optional[str]
    quantity: int
    unit_cost: Decimal
    is_active: bool


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``InventoryMovements`` sheet."""

    movement_id: str
    timestamp: datetime
    inventory_id: str
    movement_type: str
    quantity: int
    order_id: Optional[str]
    notes: Optional[str]


def generate_record_id(prefix: str, when: datetime) -> str:
    """Generate a sortable primary key such as ``H20250101120000000000-3fa2c1``.

    The timestamp keeps keys in chronological order; the random suffix keeps
    them unique when several rows share the same instant.
    """

    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` are mandatory. ``[Stages]`` and
    ``[Pricing]`` are optional and fall back to the package defaults. Relative
    ``DataFile`` entries are anchored to ``base_path`` (or the current working
    directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``PartMarkup`` is not a number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
        default_technician = parser.get("Defaults", "DefaultTechnician")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    closed_stage_name = parser.get("Stages", "ClosedStage", fallback=DEFAULT_CLOSED_STAGE_NAME)
    markup_raw = parser.get("Pricing", "PartMarkup", fallback=DEFAULT_PART_MARKUP)
    try:
        part_markup = Decimal(markup_raw)
    except ArithmeticError as exc:
        raise ValueError(f"Invalid PartMarkup value: {markup_raw!r}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_technician_id=default_technician,
        closed_stage_name=closed_stage_name.strip(),
        part_markup=part_markup,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def iter_stages(workbook: Workbook) -> Iterable[StageRow]:
    """Iterate over the ``Stages`` worksheet in sheet order."""

    return _iter_sheet(workbook, SheetName.STAGES.value, deserialize_stage)


def iter_orders(workbook: Workbook) -> Iterable[OrderRow]:
    """Iterate over the ``Orders`` worksheet in sheet order."""

    return _iter_sheet(workbook, SheetName.ORDERS.value, deserialize_order)


def iter_line_items(workbook: Workbook) -> Iterable[LineItemRow]:
    """Iterate over the ``LineItems`` worksheet in sheet order."""

    return _iter_sheet(workbook, SheetName.LINE_ITEMS.value, deserialize_line_item)


def iter_history(workbook: Workbook) -> Iterable[HistoryRow]:
    """Iterate over the ``OrderHistory`` worksheet in insertion order."""

    return _iter_sheet(workbook, SheetName.ORDER_HISTORY.value, deserialize_history)


def iter_inventory(workbook: Workbook) -> Iterable[InventoryRow]:
    """Iterate over the ``Inventory`` worksheet in sheet order."""

    return _iter_sheet(workbook, SheetName.INVENTORY.value, deserialize_inventory)


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Iterate over the ``InventoryMovements`` worksheet in insertion order."""

    return _iter_sheet(workbook, SheetName.INVENTORY_MOVEMENTS.value, deserialize_movement)


def append_stage(workbook: Workbook, record: StageRow) -> None:
    """Append a stage to the ``Stages`` worksheet."""

    workbook[SheetName.STAGES.value].append(serialize_stage(record))


def append_order(workbook: Workbook, record: OrderRow) -> None:
    """Append an order to the ``Orders`` worksheet."""

    workbook[SheetName.ORDERS.value].append(serialize_order(record))


def append_line_item(workbook: Workbook, record: LineItemRow) -> None:
    """Append a line item to the ``LineItems`` worksheet."""

    workbook[SheetName.LINE_ITEMS.value].append(serialize_line_item(record))


def append_history(workbook: Workbook, record: HistoryRow) -> None:
    """Append an event to the ``OrderHistory`` worksheet.

    The history sheet is insert-only; the module deliberately offers no update
    or delete helper for it.
    """

    workbook[SheetName.ORDER_HISTORY.value].append(serialize_history(record))


def append_inventory(workbook: Workbook, record: InventoryRow) -> None:
    """Append a stocked part to the ``Inventory`` worksheet."""

    workbook[SheetName.INVENTORY.value].append(serialize_inventory(record))


def append_movement(workbook: Workbook, record: MovementRow) -> None:
    """Append a stock movement to the ``InventoryMovements`` worksheet."""

    workbook[SheetName.INVENTORY_MOVEMENTS.value].append(serialize_movement(record))


def _header_map(sheet) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, field_values: Mapping[str, Any]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    for field in field_values:
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=_to_cell(value))


def update_order(workbook: Workbook, order_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of an existing order.

    Only the specified fields are written; every field name is checked against
    the header row before any cell changes.

    Raises:
        KeyError: If the order or any referenced column cannot be found.
    """

    _update_row(workbook, SheetName.ORDERS.value, "OrderID", order_id, field_values)


def update_line_item(workbook: Workbook, item_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of an existing line item.

    Raises:
        KeyError: If the item or any referenced column cannot be found.
    """

    _update_row(workbook, SheetName.LINE_ITEMS.value, "ItemID", item_id, field_values)


def update_inventory(workbook: Workbook, inventory_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of an existing inventory record.

    Raises:
        KeyError: If the record or any referenced column cannot be found.
    """

    _update_row(workbook, SheetName.INVENTORY.value, "InventoryID", inventory_id, field_values)


def delete_line_item(workbook: Workbook, item_id: str) -> None:
    """Physically remove a line item row.

    Raises:
        KeyError: If the item cannot be found.
    """

    row_index = locate_row(workbook, SheetName.LINE_ITEMS.value, "ItemID", item_id)
    if row_index is None:
        raise KeyError(f"Line item not found: {item_id}")
    workbook[SheetName.LINE_ITEMS.value].delete_rows(row_index)
    log.debug("Deleted line item row %d (%s)", row_index, item_id)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _to_cell(value: Any) -> Any:
    # Enum members and datetimes are stored as plain text.
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _exact(value: Decimal) -> str:
    # Text keeps every digit; an Excel number would round-trip through a float.
    return str(value)


def _dec(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _opt_dec(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None else None


def _opt_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and str(raw) != "" else None


def _ts(raw: object) -> datetime:
    # Cells typed in by hand come back without an offset; they are read as UTC.
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    return value if value.utcoffset() is not None else value.replace(tzinfo=UTC)


def _opt_ts(raw: object) -> Optional[datetime]:
    return _ts(raw) if raw is not None and str(raw) != "" else None


def _int(raw: object, default: int = 0) -> int:
    return int(raw) if raw is not None else default


def serialize_stage(record: StageRow) -> list[object]:
    return [record.stage_id, record.name, record.position, record.color]


def serialize_order(record: OrderRow) -> list[object]:
    """Convert an order dataclass into the ``Orders`` column ordering."""

    return [
        record.order_id,
        record.client_ref,
        record.device,
        record.issue,
        record.stage_id,
        record.accepted_at.isoformat(),
        record.completed_at.isoformat() if record.completed_at is not None else None,
        record.subtotal,
        record.total_discount,
        record.estimated_cost,
        record.estimated_profit,
        record.final_cost,
        record.total_profit,
        record.payment_method,
        record.prepayment,
        record.balance_due,
    ]


def serialize_line_item(record: LineItemRow) -> list[object]:
    """Convert a line item dataclass into the ``LineItems`` column ordering."""

    return [
        record.item_id,
        record.order_id,
        record.kind,
        record.name,
        record.quantity,
        record.unit_cost,
        record.unit_price,
        record.discount_type,
        record.discount_value,
        record.inventory_id,
        record.technician_id,
        record.warranty_days,
        record.warranty_months,
        record.comment,
        record.stock_reserved,
        _exact(record.cost_price),
        _exact(record.selling_price),
        _exact(record.total_price),
        _exact(record.profit),
    ]


def serialize_history(record: HistoryRow) -> list[object]:
    return [
        record.event_id,
        record.order_id,
        record.actor,
        record.event_type,
        record.description,
        record.timestamp.isoformat(),
    ]


def serialize_inventory(record: InventoryRow) -> list[object]:
    return [record.inventory_id, record.part_name, record.sku, record.quantity, record.unit_cost, record.is_active]


def serialize_movement(record: MovementRow) -> list[object]:
    return [
        record.movement_id,
        record.timestamp.isoformat(),
        record.inventory_id,
        record.movement_type,
        record.quantity,
        record.order_id,
        record.notes,
    ]


def deserialize_stage(raw_row: Sequence[object]) -> StageRow:
    stage_id, name, position, color = raw_row[:4]
    return StageRow(
        stage_id=str(stage_id),
        name=str(name),
        position=_int(position),
        color=str(color) if color is not None else "",
    )


def deserialize_order(raw_row: Sequence[object]) -> OrderRow:
    """Convert a raw ``Orders`` row into a strongly typed record.

    Money columns become :class:`~decimal.Decimal`; the snapshot columns stay
    ``None`` until the order is closed.
    """

    (
        order_id,
        client_ref,
        device,
        issue,
        stage_id,
        accepted_at,
        completed_at,
        subtotal,
        total_discount,
        estimated_cost,
        estimated_profit,
        final_cost,
        total_profit,
        payment_method,
        prepayment,
        balance_due,
    ) = raw_row[:16]

    return OrderRow(
        order_id=str(order_id),
        client_ref=str(client_ref) if client_ref is not None else "",
        device=str(device) if device is not None else "",
        issue=_opt_str(issue),
        stage_id=str(stage_id),
        accepted_at=_ts(accepted_at),
        completed_at=_opt_ts(completed_at),
        subtotal=_dec(subtotal),
        total_discount=_dec(total_discount),
        estimated_cost=_dec(estimated_cost),
        estimated_profit=_dec(estimated_profit),
        final_cost=_opt_dec(final_cost),
        total_profit=_opt_dec(total_profit),
        payment_method=_opt_str(payment_method),
        prepayment=_dec(prepayment),
        balance_due=_dec(balance_due),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    """Convert a raw ``LineItems`` row into a strongly typed record."""

    (
        item_id,
        order_id,
        kind,
        name,
        quantity,
        unit_cost,
        unit_price,
        discount_type,
        discount_value,
        inventory_id,
        technician_id,
        warranty_days,
        warranty_months,
        comment,
        stock_reserved,
        cost_price,
        selling_price,
        total_price,
        profit,
    ) = raw_row[:19]

    return LineItemRow(
        item_id=str(item_id),
        order_id=str(order_id),
        kind=str(kind),
        name=str(name) if name is not None else "",
        quantity=_int(quantity, default=1),
        unit_cost=_dec(unit_cost),
        unit_price=_dec(unit_price),
        discount_type=str(discount_type) if discount_type is not None else "percent",
        discount_value=_dec(discount_value),
        inventory_id=_opt_str(inventory_id),
        technician_id=_opt_str(technician_id),
        warranty_days=_int(warranty_days),
        warranty_months=_int(warranty_months),
        comment=_opt_str(comment),
        stock_reserved=bool(stock_reserved),
        cost_price=_dec(cost_price),
        selling_price=_dec(selling_price),
        total_price=_dec(total_price),
        profit=_dec(profit),
    )


def deserialize_history(raw_row: Sequence[object]) -> HistoryRow:
    event_id, order_id, actor, event_type, description, timestamp = raw_row[:6]
    return HistoryRow(
        event_id=str(event_id),
        order_id=str(order_id),
        actor=str(actor) if actor is not None else "",
        event_type=str(event_type),
        description=str(description) if description is not None else "",
        timestamp=_ts(timestamp),
    )


def deserialize_inventory(raw_row: Sequence[object]) -> InventoryRow:
    inventory_id, part_name, sku, quantity, unit_cost, is_active = raw_row[:6]
    return InventoryRow(
        inventory_id=str(inventory_id),
        part_name=str(part_name),
        sku=_opt_str(sku),
        quantity=_int(quantity),
        unit_cost=_dec(unit_cost),
        is_active=bool(is_active),
    )


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    movement_id, timestamp, inventory_id, movement_type, quantity, order_id, notes = raw_row[:7]
    return MovementRow(
        movement_id=str(movement_id),
        timestamp=_ts(timestamp),
        inventory_id=str(inventory_id),
        movement_type=str(movement_type),
        quantity=_int(quantity),
        order_id=_opt_str(order_id),
        notes=_opt_str(notes),
    )
