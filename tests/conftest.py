"""Shared pytest fixtures and utilities for cash book tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable
from unittest.mock import Mock

import openpyxl
import pytest

# Ensure the source package is importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cashbook import cli, constants, core_logic, data_manager  # noqa: E402
from cashbook.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "Currency = {currency}\n"
)

# Master data seeded into every test workbook.
PRODUCTS = [("P1", "Oak Chair", True), ("P2", "Pine Table", True)]
ACTIVITY_TYPES = [("A1", "Carpentry"), ("A2", "Repairs")]
EXPENSE_TYPES = [("E1", "Timber"), ("E2", "Electricity")]


@dataclass(frozen=True)
class ConfigBundle:
    """Paths and values written into one generated ``config.ini``."""

    directory: Path
    config_path: Path
    workbook_path: Path
    business_name: str
    schema_version: str
    currency: str


def seed_master_data(workbook_path: Path) -> None:
    """Write the standard products, activity types, and expense types."""

    workbook = openpyxl.load_workbook(workbook_path)
    for row in PRODUCTS:
        workbook[data_manager.PRODUCTS_SHEET].append(list(row))
    for row in ACTIVITY_TYPES:
        workbook[data_manager.ACTIVITY_TYPES_SHEET].append(list(row))
    for row in EXPENSE_TYPES:
        workbook[data_manager.EXPENSE_TYPES_SHEET].append(list(row))
    workbook.save(workbook_path)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Build seeded cash book workbooks under ``tmp_path``."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "cashbook_data.xlsx",
        seed: bool = True,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        if seed:
            seed_master_data(workbook_path)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Seeded workbook in its own directory."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Write a ``config.ini`` next to a fresh workbook and describe both."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Workshop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        currency: str = "USD",
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
                business_name=business_name,
                schema_version=schema_version,
                currency=currency,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            business_name=business_name,
            schema_version=schema_version,
            currency=currency,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Path of a default ``config.ini`` (USD reporting)."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Context loaded from a real config and workbook on disk."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Bare parser without sub-commands."""

    return argparse.ArgumentParser(prog="cashbook-cli", description="Cash book CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Sub-command action attached to ``cli_parser``."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three no-op command specs."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Settings reporting in USD, pointing at an unused workbook path."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "cashbook_data.xlsx",
        business_name="Test Workshop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_currency=constants.Currency.USD,
    )


@pytest.fixture
def workbook() -> Mock:
    """Stand-in workbook; the DAL is patched wherever it is touched."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
