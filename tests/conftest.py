"""Shared pytest fixtures and utilities for inn ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from inn_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from inn_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2024, 5, 20, 12, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "InnName = {inn_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Store]\n"
    "LockTimeoutSeconds = {lock_timeout}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    inn_name: str


@dataclass(frozen=True)
class SeededLedger:
    """Identifiers of the records created by the ``seeded`` fixture."""

    context: core_logic.RuntimeContext
    trader_id: str
    hunter_id: str
    asset_id: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "inn_ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        inn_name: str = "The Prancing Pony",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        lock_timeout: str = "2",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                inn_name=inn_name,
                schema_version=schema_version,
                lock_timeout=lock_timeout,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            inn_name=inn_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def seeded(runtime_context: core_logic.RuntimeContext) -> SeededLedger:
    """A ledger holding one trader, one hunter and ten iron swords."""

    trader = core_logic.add_trader(
        runtime_context, {"name": "Gorm", "type": "blacksmith", "location": "Riverwood"}
    )
    hunter = core_logic.add_hunter(
        runtime_context, {"name": "Geralt", "race": "WITCH", "location": "Kaer Morhen"}
    )
    asset, _ = core_logic.add_asset(
        runtime_context,
        {
            "name": "Iron sword",
            "description": "A plain blade",
            "material": "iron",
            "weight": "3.5",
            "crown_value": "40",
            "type": "weapon",
            "amount": 10,
        },
    )
    return SeededLedger(
        context=runtime_context,
        trader_id=trader.trader_id,
        hunter_id=hunter.hunter_id,
        asset_id=asset.asset_id,
    )


@pytest.fixture
def add_asset(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.AssetRow]:
    """Register an extra asset with sensible defaults."""

    def _add(name: str, amount: int | str = 0, **overrides) -> data_manager.AssetRow:
        fields = {
            "name": name,
            "description": f"{name} for sale",
            "material": "mixed",
            "weight": "1",
            "crown_value": "5",
            "type": "product",
            "amount": amount,
        }
        fields.update(overrides)
        record, _ = core_logic.add_asset(runtime_context, fields)
        return record

    return _add


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="inn-ledger", description="Inn ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Clock fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so generated identifiers are predictable."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
