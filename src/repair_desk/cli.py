"""Command-line entry points for Repair Desk.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing what the business layer returns. Every mutating command
is persisted by the business layer's unit of work.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import DiscountType, ItemKind, PaymentMethod
from .errors import BusinessRuleViolation, CollaboratorFailure
from .pricing import DiscountSpec, to_decimal


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="repair-desk",
        description="Command-line tools for the Repair Desk order workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as order creation and closing."""
    specs = {
        "new-order": register_new_order_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "add-part": register_add_part_command(subparsers),
        "edit-item": register_edit_item_command(subparsers),
        "delete-item": register_delete_item_command(subparsers),
        "comment": register_comment_command(subparsers),
        "prepay": register_prepay_command(subparsers),
        "stage": register_stage_command(subparsers),
        "close": register_close_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as order details and reports."""
    specs = {
        "show": register_show_command(subparsers),
        "history": register_history_command(subparsers),
        "stages": register_stages_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_actor_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--actor", default=None, help="Who performs the action (defaults to the configured technician).")


def _add_line_item_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--kind", choices=[member.value for member in ItemKind], required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--quantity", type=int, default=1)
    parser.add_argument("--unit-price", required=True)
    parser.add_argument("--unit-cost", default="0")
    parser.add_argument(
        "--discount-type",
        choices=[member.value for member in DiscountType],
        default=DiscountType.PERCENT.value,
    )
    parser.add_argument("--discount", default="0", help="Percent (0-100) or fixed amount, depending on --discount-type.")
    parser.add_argument("--inventory-id", default=None, help="Link a part to a stocked inventory record.")
    parser.add_argument("--technician-id", default=None)
    parser.add_argument("--warranty-days", type=int, default=0)
    parser.add_argument("--warranty-months", type=int, default=0)
    parser.add_argument("--comment", default=None)


def register_new_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-order``."""
    name = "new-order"
    help_text = "Register a device brought in for repair."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client", required=True, help="Client reference (name or phone).")
        parser.add_argument("--device", required=True)
        parser.add_argument("--issue", default=None)
        parser.add_argument("--prepayment", default="0")
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_order)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Attach a service, part, or accessory to an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        _add_line_item_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_add_part_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-part``."""
    name = "add-part"
    help_text = "Add a stocked part to an order at the default markup."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--inventory-id", required=True)
        parser.add_argument("--quantity", type=int, default=1)
        parser.add_argument("--technician-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_part)


def register_edit_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-item``."""
    name = "edit-item"
    help_text = "Replace the values of an existing line item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        _add_line_item_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_item)


def register_delete_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-item``."""
    name = "delete-item"
    help_text = "Remove a line item from an open order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_item)


def register_comment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``comment``."""
    name = "comment"
    help_text = "Add a comment to an order's history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--text", required=True)
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_comment)


def register_prepay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``prepay``."""
    name = "prepay"
    help_text = "Set the amount the client paid up front."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--amount", required=True)
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_prepay)


def register_stage_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stage``."""
    name = "stage"
    help_text = "Move an order to another stage."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--stage-id", required=True)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
            help="Required when the target stage closes the order.",
        )
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stage)


def register_close_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``close``."""
    name = "close"
    help_text = "Close an order and freeze its final cost and profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        _add_actor_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""
    name = "add-stock"
    help_text = "Register a stocked part with its opening quantity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--inventory-id", required=True)
        parser.add_argument("--part-name", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--unit-cost", required=True)
        parser.add_argument("--sku", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_stock)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display an order with its items and totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display an order's history, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def register_stages_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stages``."""
    name = "stages"
    help_text = "List the stage catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stages)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display the KPIs of one day compared with the day before."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", dest="day", type=date.fromisoformat, default=None, help="YYYY-MM-DD (defaults to today, UTC).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / data_manager.CONFIG_FILE_NAME
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "actor", None) or context.settings.default_technician_id


def translate_new_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.CreateOrderCommand:
    """Translate CLI args into an order creation command."""
    return core_logic.CreateOrderCommand(
        client_ref=args.client,
        device=args.device,
        issue=args.issue,
        prepayment=to_decimal(args.prepayment, field_name="Prepayment"),
        actor=resolve_actor(context, args),
    )


def translate_line_item(context: core_logic.RuntimeContext, args: argparse.Namespace, order_id: str) -> core_logic.LineItemCommand:
    """Translate CLI args into a line item command for ``order_id``."""
    return core_logic.LineItemCommand(
        order_id=order_id,
        kind=ItemKind(args.kind),
        name=args.name,
        quantity=args.quantity,
        unit_price=to_decimal(args.unit_price, field_name="Unit price"),
        unit_cost=to_decimal(args.unit_cost, field_name="Unit cost"),
        discount=DiscountSpec(
            type=DiscountType(args.discount_type),
            value=to_decimal(args.discount, field_name="Discount value"),
        ),
        inventory_id=args.inventory_id,
        technician_id=args.technician_id or context.settings.default_technician_id,
        warranty_days=args.warranty_days,
        warranty_months=args.warranty_months,
        comment=args.comment,
    )


def translate_stage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.StageChangeCommand:
    """Translate CLI args into a stage change command."""
    return core_logic.StageChangeCommand(
        order_id=args.order_id,
        stage_id=args.stage_id,
        actor=resolve_actor(context, args),
        payment_method=PaymentMethod(args.payment_method) if args.payment_method else None,
    )


def format_order(order: data_manager.OrderRow, stage_name: str) -> str:
    lines = [
        f"Order {order.order_id} [{stage_name}]",
        f"  Client:     {order.client_ref}",
        f"  Device:     {order.device}",
    ]
    if order.issue:
        lines.append(f"  Issue:      {order.issue}")
    lines.extend(
        [
            f"  Accepted:   {order.accepted_at.isoformat()}",
            f"  Subtotal:   {order.subtotal}",
            f"  Discount:   {order.total_discount}",
            f"  Total:      {order.estimated_cost}",
            f"  Profit:     {order.estimated_profit}",
            f"  Prepayment: {order.prepayment}",
            f"  Balance:    {order.balance_due}",
        ]
    )
    if order.completed_at is not None:
        lines.extend(
            [
                f"  Completed:  {order.completed_at.isoformat()}",
                f"  Final cost: {order.final_cost}",
                f"  Final profit: {order.total_profit}",
                f"  Payment:    {order.payment_method}",
            ]
        )
    return "\n".join(lines)


def run_new_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order creation workflow via the BLL."""
    order = core_logic.create_order(context, translate_new_order(context, args))
    print(order.order_id)
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow via the BLL."""
    item = core_logic.add_line_item(context, translate_line_item(context, args, args.order_id))
    print(item.item_id)
    return 0


def run_add_part(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stocked part workflow via the BLL."""
    item = core_logic.add_inventory_part(
        context,
        args.order_id,
        args.inventory_id,
        quantity=args.quantity,
        technician_id=args.technician_id,
    )
    print(item.item_id)
    return 0


def run_edit_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-item workflow via the BLL."""
    existing = core_logic.get_line_item(context, args.item_id)
    core_logic.update_line_item(context, args.item_id, translate_line_item(context, args, existing.order_id))
    return 0


def run_delete_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-item workflow via the BLL."""
    core_logic.delete_line_item(context, args.item_id, resolve_actor(context, args))
    return 0


def run_comment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the comment workflow via the BLL."""
    core_logic.add_comment(context, args.order_id, resolve_actor(context, args), args.text)
    return 0


def run_prepay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the prepayment workflow via the BLL."""
    order = core_logic.set_prepayment(
        context,
        args.order_id,
        to_decimal(args.amount, field_name="Prepayment"),
        resolve_actor(context, args),
    )
    print(f"Balance due: {order.balance_due}")
    return 0


def run_stage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stage change workflow via the BLL."""
    core_logic.change_stage(context, translate_stage(context, args))
    return 0


def run_close(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the closing workflow via the BLL."""
    order = core_logic.close_order(
        context,
        args.order_id,
        resolve_actor(context, args),
        PaymentMethod(args.payment_method),
    )
    print(f"Final cost: {order.final_cost}  Balance due: {order.balance_due}")
    return 0


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the inventory registration workflow via the BLL."""
    core_logic.add_inventory_item(
        context,
        inventory_id=args.inventory_id,
        part_name=args.part_name,
        quantity=args.quantity,
        unit_cost=to_decimal(args.unit_cost, field_name="Unit cost"),
        sku=args.sku,
    )
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print an order, its line items, and the per-kind breakdown."""
    order = core_logic.get_order(context, args.order_id)
    stage = core_logic.get_stage_catalog(context).find(order.stage_id)
    print(format_order(order, stage.name if stage is not None else order.stage_id))
    for item in core_logic.list_line_items(context, order.order_id):
        print(f"  - {item.item_id} {item.kind:<9} {item.name} x{item.quantity} = {item.total_price}")
    for kind, amount in core_logic.order_breakdown(context, order.order_id).items():
        print(f"  {kind.value} total: {amount}")
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the history of an order, newest first."""
    for event in core_logic.get_order_history(context, args.order_id):
        print(f"{event.timestamp.isoformat()}  {event.actor:<10} {event.event_type:<16} {event.description}")
    return 0


def run_stages(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the stage catalog in position order."""
    for stage in core_logic.get_stage_catalog(context):
        marker = " (closes order)" if stage.is_terminal else ""
        print(f"{stage.stage_id}  {stage.position}  {stage.name}{marker}")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the daily KPI summary."""
    day = args.day if args.day is not None else datetime.now(UTC).date()
    summary = core_logic.daily_summary(context, day)
    print(f"Dashboard for {day.isoformat()} ({context.settings.shop_name})")
    print(f"  Devices accepted:   {summary.devices_accepted} (previous day {summary.previous_accepted})")
    print(f"  Devices closed:     {summary.devices_closed} (previous day {summary.previous_closed})")
    print(f"  Revenue:            {summary.total_revenue}")
    print(f"  Devices profit:     {summary.devices_profit}")
    print(f"  Accessories profit: {summary.accessories_profit} ({summary.accessories_sold} sold)")
    if summary.avg_repair_hours is not None:
        print(f"  Avg repair time:    {summary.avg_repair_hours} h")
    print(f"  Top service:        {summary.top_service or '-'}")
    print(f"  Top accessory:      {summary.top_accessory or '-'}")
    for method, stats in summary.payment_methods.items():
        print(f"  {method.value:<8} total {stats.total_amount}  profit {stats.profit}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, CollaboratorFailure):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
