"""Integration tests describing end-to-end Repair Desk workflows.

These scenarios run the business logic against a real workbook on disk and
reload it between steps, so every assertion reflects what was persisted.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from repair_desk import constants, core_logic, data_manager, setup_excel
from repair_desk.errors import ValidationError
from repair_desk.pricing import DiscountSpec

DAY = date(2025, 6, 10)


def _at(hour: int) -> datetime:
    return datetime(DAY.year, DAY.month, DAY.day, hour, tzinfo=UTC)


def _service(order_id: str, name: str, price: str, *, discount: DiscountSpec | None = None) -> core_logic.LineItemCommand:
    return core_logic.LineItemCommand(
        order_id=order_id,
        kind=constants.ItemKind.SERVICE,
        name=name,
        quantity=1,
        unit_price=Decimal(price),
        discount=discount,
        technician_id="T-DESK",
    )


def test_repair_lifecycle_flow(stocked_context):
    """Accept, price, close, and report a repair using a stocked part."""

    context = stocked_context
    order = core_logic.create_order(
        context,
        core_logic.CreateOrderCommand(
            client_ref="Ann +1 555 0100",
            device="Phone X",
            issue="Cracked screen",
            actor="T-DESK",
            prepayment=Decimal("100"),
            accepted_at=_at(9),
        ),
    )
    assert order.order_id == "A010"

    core_logic.add_line_item(
        context,
        _service(order.order_id, "Screen swap", "100", discount=DiscountSpec(constants.DiscountType.PERCENT, Decimal("10"))),
        timestamp=_at(10),
    )
    part = core_logic.add_inventory_part(context, order.order_id, "INV-SCREEN", quantity=2, timestamp=_at(10))
    assert part.unit_price == Decimal("150.00")

    # Reload so the assertions below read what the unit of work saved.
    context = core_logic.refresh_context(context)
    stored = core_logic.get_order(context, order.order_id)
    assert stored.subtotal == Decimal("400")
    assert stored.total_discount == Decimal("10")
    assert stored.estimated_cost == Decimal("390")
    assert stored.estimated_profit == Decimal("190")
    assert stored.balance_due == Decimal("290")
    (screen,) = core_logic.list_inventory(context)
    assert screen.quantity == 3

    closed = core_logic.close_order(
        context,
        order.order_id,
        "T-DESK",
        constants.PaymentMethod.CASH,
        timestamp=_at(15),
    )
    assert closed.final_cost == Decimal("390")
    assert closed.total_profit == Decimal("190")

    context = core_logic.refresh_context(context)
    summary = core_logic.daily_summary(context, DAY)
    assert summary.devices_accepted == 1
    assert summary.devices_closed == 1
    assert summary.total_revenue == Decimal("390.00")
    assert summary.devices_profit == Decimal("190.00")
    assert summary.avg_repair_hours == 6
    assert summary.top_service == "Screen swap"
    assert summary.payment_methods[constants.PaymentMethod.CASH].total_amount == Decimal("390.00")

    events = [event.event_type for event in core_logic.get_order_history(context, order.order_id)]
    assert events == ["status_change", "prepayment_added", "created"]


def test_deleting_stocked_part_returns_units(stocked_context):
    """Deleting a reserved part restocks it and logs both movements."""

    context = stocked_context
    order = core_logic.create_order(
        context,
        core_logic.CreateOrderCommand(client_ref="Bob", device="Tablet", actor="T-DESK", accepted_at=_at(9)),
    )
    part = core_logic.add_inventory_part(context, order.order_id, "INV-SCREEN", quantity=2, timestamp=_at(10))
    core_logic.delete_line_item(context, part.item_id, "T-DESK", timestamp=_at(11))

    context = core_logic.refresh_context(context)
    (screen,) = core_logic.list_inventory(context)
    assert screen.quantity == 5
    movements = [
        (movement.movement_type, movement.quantity)
        for movement in data_manager.iter_movements(context.workbook)
    ]
    assert movements == [("manual_in", 5), ("order_use", 2), ("order_return", 2)]
    assert core_logic.get_order(context, order.order_id).estimated_cost == Decimal("0")


def test_failed_stock_reservation_leaves_workbook_untouched(stocked_context):
    """Requesting more units than stocked writes neither the item nor the totals."""

    context = stocked_context
    order = core_logic.create_order(
        context,
        core_logic.CreateOrderCommand(client_ref="Cy", device="Laptop", actor="T-DESK", accepted_at=_at(9)),
    )

    with pytest.raises(ValidationError):
        core_logic.add_inventory_part(context, order.order_id, "INV-SCREEN", quantity=6, timestamp=_at(10))

    for view in (context, core_logic.refresh_context(context)):
        assert core_logic.list_line_items(view, order.order_id) == []
        assert core_logic.list_inventory(view)[0].quantity == 5
        assert core_logic.get_order(view, order.order_id).estimated_cost == Decimal("0")


def test_order_ids_continue_after_reload(runtime_context):
    """Order numbers keep increasing across sessions."""

    first = core_logic.create_order(
        runtime_context,
        core_logic.CreateOrderCommand(client_ref="Ann", device="Phone", actor="T-DESK"),
    )
    context = core_logic.refresh_context(runtime_context)
    second = core_logic.create_order(
        context,
        core_logic.CreateOrderCommand(client_ref="Ann", device="Watch", actor="T-DESK"),
    )

    assert (first.order_id, second.order_id) == ("A010", "A011")


def test_setup_refuses_to_overwrite_without_force(tmp_path):
    """create_master_workbook protects an existing data file."""

    target = tmp_path / "master.xlsx"
    setup_excel.create_master_workbook(target)

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(target)

    assert setup_excel.create_master_workbook(target, overwrite=True) == target.resolve()


def test_setup_run_from_config_uses_closed_stage_label(config_factory):
    """The configured closed-stage label names the last default stage."""

    bundle = config_factory(closed_stage_name="Delivered")

    output = setup_excel.run_from_config(bundle.config_path, overwrite=True)

    stages = list(data_manager.iter_stages(data_manager.open_workbook(output)))
    assert stages[-1].name == "Delivered"
    assert output == bundle.workbook_path.resolve()


def test_setup_main_reports_existing_workbook(config_factory, capsys):
    """The setup script exits with 1 and explains how to force."""

    bundle = config_factory()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(bundle.config_path), "--force"]) == 0
