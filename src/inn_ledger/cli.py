"""Command-line entry points for the inn ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the request bodies consumed by the workflow and
entity store. Keeping the CLI thin means the same parser configuration can be
reused by tests, scripts, or the request handlers in :mod:`inn_ledger.api`.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, workflow
from .constants import AssetType, Race, TraderType
from .data_manager import TransactionRow
from .errors import BusinessRuleViolation, NotFoundError


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
        prog="inn-ledger",
        description="Command-line tools for the inn ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upwards).",
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
    """Declare mutating CLI commands such as registrations and trades."""
    specs = {
        "add-trader": register_add_trader_command(subparsers),
        "add-hunter": register_add_hunter_command(subparsers),
        "add-asset": register_add_asset_command(subparsers),
        "buy": register_trade_command(subparsers, "buy"),
        "sell": register_trade_command(subparsers, "sell"),
        "edit-transaction": register_edit_transaction_command(subparsers),
        "delete-transaction": register_delete_transaction_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "log": register_log_command(subparsers),
        "transactions": register_transactions_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item(raw: str) -> Dict[str, str]:
    """Parse an ``ASSET_ID:AMOUNT`` argument into a line-item mapping."""
    asset_id, separator, amount = raw.rpartition(":")
    if not separator or not asset_id or not amount:
        raise argparse.ArgumentTypeError(f"Expected ASSET_ID:AMOUNT, got '{raw}'")
    return {"asset": asset_id, "amount": amount}


def register_add_trader_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-trader``."""
    name = "add-trader"
    help_text = "Register a new trader in the Traders sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--type", dest="trader_type", choices=[member.value for member in TraderType], required=True)
        parser.add_argument("--location", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_trader)


def register_add_hunter_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-hunter``."""
    name = "add-hunter"
    help_text = "Register a new hunter in the Hunters sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--race", choices=[member.value for member in Race], required=True)
        parser.add_argument("--location", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_hunter)


def register_add_asset_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-asset``."""
    name = "add-asset"
    help_text = "Register an asset, or restock it when the name already exists."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--description", default=None)
        parser.add_argument("--material", default=None)
        parser.add_argument("--weight", default=None)
        parser.add_argument("--crown-value", default=None)
        parser.add_argument("--type", dest="asset_type", choices=[member.value for member in AssetType], default=None)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_asset)


def register_trade_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
) -> CommandSpec:
    """Register ``buy`` (from a trader) or ``sell`` (to a hunter)."""
    buying = name == "buy"
    help_text = "Record a purchase from a trader." if buying else "Record a sale to a hunter."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if buying:
            parser.add_argument("--trader-id", dest="counterparty_id", required=True)
        else:
            parser.add_argument("--hunter-id", dest="counterparty_id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="Line item as ASSET_ID:AMOUNT; repeat for several assets.",
        )
        parser.add_argument("--crown-value", default="0")
        parser.add_argument("--date", default=None, help="ISO-8601 date; defaults to now.")
        parser.set_defaults(command=name, inn_buying=buying)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_trade)


def register_edit_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-transaction``."""
    name = "edit-transaction"
    help_text = "Change fields of a transaction and re-balance stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--counterparty-id", default=None)
        parser.add_argument("--item", dest="items", action="append", type=parse_item, default=None)
        parser.add_argument("--crown-value", default=None)
        parser.add_argument("--date", default=None)
        direction = parser.add_mutually_exclusive_group()
        direction.add_argument("--buying", dest="inn_buying", action="store_const", const=True, default=None)
        direction.add_argument("--selling", dest="inn_buying", action="store_const", const=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_transaction)


def register_delete_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-transaction``."""
    name = "delete-transaction"
    help_text = "Delete a transaction and reverse its stock effect."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_transaction)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "Find transactions by counterparty name or date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", default=None)
        parser.add_argument("--first-day", default=None)
        parser.add_argument("--last-day", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_query)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


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


def translate_add_trader(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-trader request."""
    return {"name": args.name, "type": args.trader_type, "location": args.location}


def translate_add_hunter(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-hunter request."""
    return {"name": args.name, "race": args.race, "location": args.location}


def translate_add_asset(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-asset request."""
    return {
        "name": args.name,
        "description": args.description,
        "material": args.material,
        "weight": args.weight,
        "crown_value": args.crown_value,
        "type": args.asset_type,
        "amount": args.amount,
    }


def translate_trade(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a create-transaction request body."""
    body: Dict[str, Any] = {
        "mercader": args.counterparty_id,
        "bienes": list(args.items),
        "innBuying": args.inn_buying,
        "crownValue": args.crown_value,
    }
    if args.date:
        body["date"] = args.date
    return body


def translate_edit_transaction(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the partial body of an edit request."""
    changes: Dict[str, Any] = {}
    if args.counterparty_id is not None:
        changes["mercader"] = args.counterparty_id
    if args.items:
        changes["bienes"] = list(args.items)
    if args.crown_value is not None:
        changes["crownValue"] = args.crown_value
    if args.date is not None:
        changes["date"] = args.date
    if args.inn_buying is not None:
        changes["innBuying"] = args.inn_buying
    return changes


def format_transaction(record: TransactionRow) -> str:
    """Render one transaction as a single report line."""
    items = ", ".join(f"{item.asset_id} x{item.amount}" for item in record.items)
    direction = "BUY " if record.inn_buying else "SELL"
    return f"{record.transaction_id}  {direction}  {record.counterparty_id}  {record.date_iso}  {record.crown_value}  [{items}]"


def run_add_trader(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-trader workflow."""
    record = core_logic.add_trader(context, translate_add_trader(args))
    print(record.trader_id)
    return 0


def run_add_hunter(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-hunter workflow."""
    record = core_logic.add_hunter(context, translate_add_hunter(args))
    print(record.hunter_id)
    return 0


def run_add_asset(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-asset workflow (create or restock)."""
    record, _created = core_logic.add_asset(context, translate_add_asset(args))
    print(f"{record.asset_id}  {record.amount}")
    return 0


def run_trade(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a buy or sell through the transaction workflow."""
    record = workflow.create_transaction(context, translate_trade(args))
    print(record.transaction_id)
    return 0


def run_edit_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit workflow."""
    record = workflow.edit_transaction(context, args.transaction_id, translate_edit_transaction(args))
    print(format_transaction(record))
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow."""
    workflow.delete_transaction(context, args.transaction_id)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every asset with its current amount."""
    for asset in core_logic.list_assets(context):
        print(f"{asset.asset_id}  {asset.name}  {asset.amount}")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction log in sheet order."""
    for record in core_logic.list_transactions(context):
        print(format_transaction(record))
    return 0


def run_transactions_query(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print transactions matching a counterparty name or a date range."""
    if args.name:
        records: List[TransactionRow] = workflow.find_transactions_by_name(context, args.name)
    elif args.first_day and args.last_day:
        records = workflow.find_transactions_between(context, args.first_day, args.last_day)
    else:
        log.error("transactions needs --name or both --first-day and --last-day")
        return 1
    for record in records:
        print(format_transaction(record))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, NotFoundError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
