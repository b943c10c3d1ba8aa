"""Shared pytest fixtures and utilities for the POS core tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterator, List
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pdv_core import cli, constants, core_logic, data_manager  # noqa: E402
from pdv_core.constants import SheetName  # noqa: E402
from pdv_core.policy import DEFAULT_POLICY, policy_to_rows  # noqa: E402
from pdv_core.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_SELLER_ID = "U-ADMIN"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultSeller = {default_seller_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_seller_id: str
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


def make_product(
    product_id: str,
    *,
    quantity: int = 10,
    sale_price: str = "10.00",
    purchase_price: str = "6.00",
    name: str | None = None,
) -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        name=name or f"Product {product_id}",
        category="Mercearia",
        quantity=quantity,
        purchase_price=Decimal(purchase_price),
        sale_price=Decimal(sale_price),
    )


def make_customer(customer_id: str, **overrides) -> data_manager.CustomerRow:
    values = {"customer_id": customer_id, "name": f"Customer {customer_id}"}
    values.update(overrides)
    return data_manager.CustomerRow(**values)


# ---------------------------------------------------------------------------
# Workbook/config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        admin_id: str = DEFAULT_SELLER_ID,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, admin_id=admin_id, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Loja Teste",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_seller_id: str = DEFAULT_SELLER_ID,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", admin_id=default_seller_id)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_seller_id=default_seller_id,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_seller_id=default_seller_id,
            schema_version=schema_version,
            store_name=store_name,
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


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pdv-cli", description="POS CLI")


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
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Loja Teste",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_seller_id=DEFAULT_SELLER_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def collections(monkeypatch: pytest.MonkeyPatch) -> Dict[SheetName, List[object]]:
    """Replace workbook collection I/O with plain lists keyed by sheet.

    Tests seed rows by assigning to the returned mapping before the store
    first reads a collection, and inspect it to see what was saved.
    """

    data: Dict[SheetName, List[object]] = {
        SheetName.PRODUCTS: [],
        SheetName.CUSTOMERS: [],
        SheetName.SALES: [],
        SheetName.USERS: [],
        SheetName.SETTINGS: policy_to_rows(DEFAULT_POLICY),
        SheetName.PRICE_SIMULATIONS: [],
    }

    def _load(workbook, key):
        return list(data[key])

    def _save(workbook, key, rows):
        data[key] = list(rows)

    monkeypatch.setattr(data_manager, "load_collection", _load)
    monkeypatch.setattr(data_manager, "save_collection", _save)
    return data


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    workbook: Mock,
    collections: Dict[SheetName, List[object]],
) -> core_logic.RuntimeContext:
    """Assemble a runtime context backed by in-memory collections."""

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
