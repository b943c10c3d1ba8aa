"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from pdv_core import constants, data_manager
from pdv_core.constants import SheetName


def _sale(sale_id: str, *items: data_manager.SaleItemRow, **overrides) -> data_manager.SaleRow:
    values = dict(
        sale_id=sale_id,
        date_iso="2026-03-01T10:00:00+00:00",
        status=constants.SaleStatus.COMPLETED.value,
        items=tuple(items),
        subtotal=Decimal("20.00"),
        discount=Decimal("10"),
        total=Decimal("18.00"),
    )
    values.update(overrides)
    return data_manager.SaleRow(**values)


def _item(product_id: str, quantity: int, unit_price: str = "10.00") -> data_manager.SaleItemRow:
    price = Decimal(unit_price)
    return data_manager.SaleItemRow(
        product_id=product_id,
        product_name=f"Product {product_id}",
        quantity=quantity,
        unit_price=price,
        total_price=price * quantity,
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Loja Teste"
    assert parser.get("Defaults", "DefaultSeller") == "U-ADMIN"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path, encoding="utf-8")

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_seller_id == "U-ADMIN"
    assert settings.store_name == "Loja Teste"


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    assert isinstance(data_manager.open_workbook(master_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_rejects_missing_sheets(tmp_path):
    """Workbooks lacking one of the collection sheets are refused."""

    path = tmp_path / "partial.xlsx"
    workbook = openpyxl.Workbook()
    workbook.active.title = SheetName.PRODUCTS.value
    workbook.save(path)

    with pytest.raises(KeyError, match="missing sheets"):
        data_manager.open_workbook(path)


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.save_collection(
        workbook,
        SheetName.CUSTOMERS,
        [data_manager.CustomerRow(customer_id="C1", name="Ana")],
    )
    copy_path = tmp_path / "backups" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[SheetName.CUSTOMERS.value].iter_rows(min_row=2, values_only=True))
    assert rows[0][:2] == ("C1", "Ana")


def test_refresh_workbook_drops_unsaved_changes(master_workbook_path):
    original = data_manager.open_workbook(master_workbook_path)
    data_manager.save_collection(
        original,
        SheetName.CUSTOMERS,
        [data_manager.CustomerRow(customer_id="C9", name="Unsaved")],
    )

    refreshed = data_manager.refresh_workbook(master_workbook_path)

    assert refreshed is not original
    assert data_manager.load_collection(refreshed, SheetName.CUSTOMERS) == []


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


def test_fresh_workbook_contains_default_admin_and_settings(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)

    users = data_manager.load_collection(workbook, SheetName.USERS)
    settings = data_manager.load_collection(workbook, SheetName.SETTINGS)

    assert [user.user_id for user in users] == ["U-ADMIN"]
    assert {page.value for page in constants.PagePermission} == set(users[0].permissions)
    assert ("vendas", "desconto_maximo_percentual", "15") in {
        (row.section, row.key, row.value) for row in settings
    }


def test_products_survive_a_disk_round_trip(master_workbook_path):
    """Prices come back numerically equal and barcodes stay strings."""

    workbook = data_manager.open_workbook(master_workbook_path)
    product = data_manager.ProductRow(
        product_id="P1",
        name="Arroz 5kg",
        category="Mercearia",
        quantity=7,
        purchase_price=Decimal("18.40"),
        sale_price=Decimal("24.90"),
        barcode="7891234567890",
    )
    data_manager.save_collection(workbook, SheetName.PRODUCTS, [product])
    data_manager.save_workbook(workbook, master_workbook_path)

    (loaded,) = data_manager.load_collection(data_manager.open_workbook(master_workbook_path), SheetName.PRODUCTS)

    assert loaded.product_id == "P1"
    assert loaded.quantity == 7
    assert loaded.sale_price == Decimal("24.90")
    assert loaded.barcode == "7891234567890"
    assert loaded.image_url is None


def test_save_collection_replaces_previous_rows(master_workbook_path):
    """Saving a shorter collection must not leave stale rows behind."""

    workbook = data_manager.open_workbook(master_workbook_path)
    customers = [data_manager.CustomerRow(customer_id=f"C{i}", name=f"Cliente {i}") for i in range(3)]
    data_manager.save_collection(workbook, SheetName.CUSTOMERS, customers)
    data_manager.save_collection(workbook, SheetName.CUSTOMERS, customers[1:2])

    loaded = data_manager.load_collection(workbook, SheetName.CUSTOMERS)

    assert [row.customer_id for row in loaded] == ["C1"]


def test_sales_are_saved_with_their_lines(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    sales = [
        _sale("S2", _item("P1", 1), _item("P2", 3, "2.50"), customer_id="C1", seller_id="U1", seller_name="Bia"),
        _sale("S1", _item("P1", 2), status=constants.SaleStatus.CANCELLED.value),
    ]

    data_manager.save_collection(workbook, SheetName.SALES, sales)
    loaded = data_manager.load_collection(workbook, SheetName.SALES)

    assert [sale.sale_id for sale in loaded] == ["S2", "S1"]
    assert [item.product_id for item in loaded[0].items] == ["P1", "P2"]
    assert loaded[0].items[1].total_price == Decimal("7.50")
    assert loaded[0].seller_name == "Bia"
    assert loaded[1].is_cancelled
    item_rows = list(workbook[SheetName.SALE_ITEMS.value].iter_rows(min_row=2, values_only=True))
    assert [(row[0], row[1]) for row in item_rows] == [("S2", 1), ("S2", 2), ("S1", 1)]


def test_sale_items_are_ordered_by_line_number():
    """Line order comes from LineNo, not from the physical sheet order."""

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for sheet, columns in data_manager.SHEET_COLUMNS.items():
        workbook.create_sheet(sheet.value).append(list(columns))
    workbook[SheetName.SALES.value].append(["S1", "2026-03-01", "completed", None, None, None, 5, 0, 5, None])
    workbook[SheetName.SALE_ITEMS.value].append(["S1", 2, "P2", "B", 1, 2, 2])
    workbook[SheetName.SALE_ITEMS.value].append(["S1", 1, "P1", "A", 1, 3, 3])

    (sale,) = data_manager.load_collection(workbook, SheetName.SALES)

    assert [item.product_id for item in sale.items] == ["P1", "P2"]


def test_load_collection_rejects_sale_items_sheet(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.load_collection(workbook, SheetName.SALE_ITEMS)


# ---------------------------------------------------------------------------
# Row codecs
# ---------------------------------------------------------------------------


def test_deserialize_sale_defaults_missing_status_to_completed():
    sale = data_manager.deserialize_sale(("S1", "2026-03-01", None, None, None, None, "10", "0", "10"))

    assert sale.status == constants.SaleStatus.COMPLETED.value
    assert sale.total == Decimal("10")
    assert sale.edited_at_iso is None


def test_deserialize_product_coerces_numeric_cells():
    product = data_manager.deserialize_product((101, "Feijão", None, 3.0, 4.5, 7, 789123, None))

    assert product.product_id == "101"
    assert product.quantity == 3
    assert product.purchase_price == Decimal("4.5")
    assert product.barcode == "789123"
    assert product.category == ""


def test_deserialize_product_rejects_non_numeric_price():
    with pytest.raises(ValueError):
        data_manager.deserialize_product(("P1", "Bad", "", 1, "abc", "1.00"))


def test_user_permissions_round_trip_as_sorted_csv():
    user = data_manager.UserRow(
        user_id="U1",
        name="Bia",
        username="bia",
        password="x",
        role="vendedor",
        created_at_iso="2026-03-01T00:00:00+00:00",
        permissions=frozenset({"sales", "dashboard"}),
    )

    raw = data_manager.serialize_user(user)

    assert raw[-1] == "dashboard,sales"
    assert data_manager.deserialize_user(raw) == user


@pytest.mark.parametrize("raw, expected", [("sim", True), ("TRUE", True), ("0", False), ("", False), (1, True)])
def test_parse_bool_accepts_common_spellings(raw, expected):
    assert data_manager.parse_bool(raw) is expected
