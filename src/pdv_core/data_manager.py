"""Data access layer for the POS core.

This module reads from and writes to the ``master_workbook.xlsx`` workbook.
Business rules live in :mod:`pdv_core.core_logic`; nothing here validates
stock, totals or permissions.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Collection operations: loading every row of a collection as typed records
   and writing a whole collection back (``load_collection`` /
   ``save_collection``), which is the persistence contract the entity store
   relies on.
"""


from __future__ import annotations

import configparser
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import SaleStatus, SheetName


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[SheetName, Sequence[str]] = {
    SheetName.PRODUCTS: [
        "ProductID",
        "Name",
        "Category",
        "Quantity",
        "PurchasePrice",
        "SalePrice",
        "Barcode",
        "ImageURL",
    ],
    SheetName.CUSTOMERS: [
        "CustomerID",
        "Name",
        "Nickname",
        "Phone",
        "Address",
        "SalesCount",
        "TotalSpent",
    ],
    SheetName.SALES: [
        "SaleID",
        "Date",
        "Status",
        "CustomerID",
        "SellerID",
        "SellerName",
        "Subtotal",
        "Discount",
        "Total",
        "EditedAt",
    ],
    SheetName.SALE_ITEMS: [
        "SaleID",
        "LineNo",
        "ProductID",
        "ProductName",
        "Quantity",
        "UnitPrice",
        "TotalPrice",
    ],
    SheetName.USERS: [
        "UserID",
        "Name",
        "Username",
        "Password",
        "Email",
        "Role",
        "CreatedAt",
        "Permissions",
    ],
    SheetName.SETTINGS: ["Section", "Key", "Value"],
    SheetName.PRICE_SIMULATIONS: [
        "SimulationID",
        "CreatedAt",
        "PurchasePrice",
        "TaxRate",
        "ProfitMargin",
        "SuggestedSalesPrice",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` entries we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_seller_id: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: str
    quantity: int
    purchase_price: Decimal
    sale_price: Decimal
    barcode: str = ""
    image_url: Optional[str] = None


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet.

    ``sales_count`` and ``total_spent`` are aggregates over the customer's
    non-cancelled sales and are only changed by the sale engines.
    """

    customer_id: str
    name: str
    nickname: str = ""
    phone: str = ""
    address: str = ""
    sales_count: int = 0
    total_spent: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class SaleItemRow:
    """One line of a sale. Name and unit price are snapshots taken at sale time."""

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a ``Sales`` row joined with its ``SaleItems`` rows."""

    sale_id: str
    date_iso: str
    status: str
    items: tuple[SaleItemRow, ...]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    customer_id: Optional[str] = None
    seller_id: Optional[str] = None
    seller_name: Optional[str] = None
    edited_at_iso: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == SaleStatus.CANCELLED.value


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: str
    name: str
    username: str
    password: str
    role: str
    created_at_iso: str
    email: Optional[str] = None
    permissions: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class SettingRow:
    """One ``(section, key, value)`` entry of the ``Settings`` sheet."""

    section: str
    key: str
    value: str


@dataclass(frozen=True)
class PriceSimulationRow:
    """Append-only pricing calculator log entry."""

    simulation_id: str
    created_at_iso: str
    purchase_price: Decimal
    tax_rate: Decimal
    profit_margin: Decimal
    suggested_sales_price: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path is returned untouched. Otherwise the search walks from
    the current working directory up to the filesystem root and returns the
    first ``config.ini`` it finds.

    Raises:
        FileNotFoundError: If no configuration file exists on the way up.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return the populated parser.

    Args:
        config_path (Path): Path to the configuration file. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Raw configuration data. Missing sections are
            reported later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If the file does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (usually the
    directory holding ``config.ini``), falling back to the working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative data file paths.

    Returns:
        ConfigSettings: Settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_seller = parser.get("Defaults", "DefaultSeller")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_seller_id=default_seller,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If one of the expected sheets is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    workbook = openpyxl.load_workbook(data_file)
    missing = [sheet.value for sheet in SHEET_COLUMNS if sheet.value not in workbook.sheetnames]
    if missing:
        raise KeyError(f"Workbook {data_file} is missing sheets: {', '.join(missing)}")
    return workbook


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Write the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, dropping unsaved in-memory edits."""

    return open_workbook(data_file)


def iter_sheet_rows(workbook: Workbook, sheet: SheetName) -> Iterable[tuple[Any, ...]]:
    """Yield raw value tuples of ``sheet``, skipping the header and blank rows."""

    worksheet = workbook[sheet.value]
    for raw in worksheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def load_collection(workbook: Workbook, key: SheetName) -> List[Any]:
    """Load every record of a collection in sheet order.

    ``SheetName.SALES`` joins the ``SaleItems`` sheet so each returned
    :class:`SaleRow` carries its lines. ``SheetName.SALE_ITEMS`` is not a
    collection on its own and is rejected.

    Raises:
        KeyError: If ``key`` is not a loadable collection.
    """

    if key is SheetName.SALES:
        return _load_sales(workbook)
    deserializer = _DESERIALIZERS.get(key)
    if deserializer is None:
        raise KeyError(f"Not a collection: {key.value}")
    return [deserializer(raw) for raw in iter_sheet_rows(workbook, key)]


def save_collection(workbook: Workbook, key: SheetName, rows: Sequence[Any]) -> None:
    """Replace the whole content of a collection sheet with ``rows``.

    Header rows and formatting are kept; only data rows are rewritten.
    Saving sales also rewrites the ``SaleItems`` sheet.

    Raises:
        KeyError: If ``key`` is not a writable collection.
    """

    if key is SheetName.SALES:
        _rewrite_sheet(workbook, SheetName.SALES, [serialize_sale(row) for row in rows])
        _rewrite_sheet(
            workbook,
            SheetName.SALE_ITEMS,
            [line for row in rows for line in serialize_sale_items(row)],
        )
        log.debug("Saved %d sales to workbook", len(rows))
        return
    serializer = _SERIALIZERS.get(key)
    if serializer is None:
        raise KeyError(f"Not a collection: {key.value}")
    _rewrite_sheet(workbook, key, [serializer(row) for row in rows])
    log.debug("Saved %d rows to sheet '%s'", len(rows), key.value)


def _rewrite_sheet(workbook: Workbook, sheet: SheetName, values: Sequence[Sequence[object]]) -> None:
    worksheet = workbook[sheet.value]
    previous_last_row = worksheet.max_row
    for row_index, row in enumerate(values, start=2):
        for column_index, value in enumerate(row, start=1):
            worksheet.cell(row=row_index, column=column_index).value = value
    first_stale = len(values) + 2
    if previous_last_row >= first_stale:
        worksheet.delete_rows(first_stale, previous_last_row - first_stale + 1)


def _load_sales(workbook: Workbook) -> List[SaleRow]:
    lines: "OrderedDict[str, list[tuple[int, SaleItemRow]]]" = OrderedDict()
    for raw in iter_sheet_rows(workbook, SheetName.SALE_ITEMS):
        sale_id, line_no, item = deserialize_sale_item(raw)
        lines.setdefault(sale_id, []).append((line_no, item))

    sales: List[SaleRow] = []
    for raw in iter_sheet_rows(workbook, SheetName.SALES):
        sale = deserialize_sale(raw)
        ordered = sorted(lines.get(sale.sale_id, []), key=lambda pair: pair[0])
        sales.append(replace(sale, items=tuple(item for _, item in ordered)))
    return sales


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {raw!r}") from exc


def _to_int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    return int(Decimal(str(raw)))


def parse_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "sim", "on"}
    return bool(raw)


def _to_str(raw: object) -> str:
    return "" if raw is None else str(raw)


def _to_opt_str(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _pad(raw_row: Sequence[object], width: int) -> tuple[object, ...]:
    values = tuple(raw_row[:width])
    return values + (None,) * (width - len(values))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product in ``Products`` column order."""

    return [
        record.product_id,
        record.name,
        record.category,
        record.quantity,
        record.purchase_price,
        record.sale_price,
        record.barcode,
        record.image_url,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Build a :class:`ProductRow` from raw cells.

    Identifiers and barcodes are forced to ``str`` because Excel turns
    numeric-looking barcodes into numbers.
    """

    product_id, name, category, quantity, purchase, sale, barcode, image_url = _pad(raw_row, 8)
    return ProductRow(
        product_id=str(product_id),
        name=_to_str(name),
        category=_to_str(category),
        quantity=_to_int(quantity),
        purchase_price=_to_decimal(purchase),
        sale_price=_to_decimal(sale),
        barcode=_to_str(barcode),
        image_url=_to_opt_str(image_url),
    )


def serialize_customer(record: CustomerRow) -> list[object]:
    """Arrange a customer in ``Customers`` column order."""

    return [
        record.customer_id,
        record.name,
        record.nickname,
        record.phone,
        record.address,
        record.sales_count,
        record.total_spent,
    ]


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    customer_id, name, nickname, phone, address, sales_count, total_spent = _pad(raw_row, 7)
    return CustomerRow(
        customer_id=str(customer_id),
        name=_to_str(name),
        nickname=_to_str(nickname),
        phone=_to_str(phone),
        address=_to_str(address),
        sales_count=_to_int(sales_count),
        total_spent=_to_decimal(total_spent),
    )


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange a sale header in ``Sales`` column order (lines excluded)."""

    return [
        record.sale_id,
        record.date_iso,
        record.status,
        record.customer_id,
        record.seller_id,
        record.seller_name,
        record.subtotal,
        record.discount,
        record.total,
        record.edited_at_iso,
    ]


def serialize_sale_items(record: SaleRow) -> list[list[object]]:
    """Arrange the lines of a sale in ``SaleItems`` column order."""

    return [
        [
            record.sale_id,
            line_no,
            item.product_id,
            item.product_name,
            item.quantity,
            item.unit_price,
            item.total_price,
        ]
        for line_no, item in enumerate(record.items, start=1)
    ]


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Build a :class:`SaleRow` header; lines are attached by the caller.

    Rows written before the status column existed default to ``completed``.
    """

    (
        sale_id,
        date_iso,
        status,
        customer_id,
        seller_id,
        seller_name,
        subtotal,
        discount,
        total,
        edited_at,
    ) = _pad(raw_row, 10)
    return SaleRow(
        sale_id=str(sale_id),
        date_iso=_to_str(date_iso),
        status=_to_opt_str(status) or SaleStatus.COMPLETED.value,
        items=(),
        subtotal=_to_decimal(subtotal),
        discount=_to_decimal(discount, "0"),
        total=_to_decimal(total),
        customer_id=_to_opt_str(customer_id),
        seller_id=_to_opt_str(seller_id),
        seller_name=_to_opt_str(seller_name),
        edited_at_iso=_to_opt_str(edited_at),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> tuple[str, int, SaleItemRow]:
    """Return ``(sale_id, line_no, item)`` for one ``SaleItems`` row."""

    sale_id, line_no, product_id, product_name, quantity, unit_price, total_price = _pad(raw_row, 7)
    item = SaleItemRow(
        product_id=str(product_id),
        product_name=_to_str(product_name),
        quantity=_to_int(quantity),
        unit_price=_to_decimal(unit_price),
        total_price=_to_decimal(total_price),
    )
    return str(sale_id), _to_int(line_no), item


def serialize_user(record: UserRow) -> list[object]:
    """Arrange a user in ``Users`` column order; permissions become a sorted CSV."""

    return [
        record.user_id,
        record.name,
        record.username,
        record.password,
        record.email,
        record.role,
        record.created_at_iso,
        ",".join(sorted(record.permissions)),
    ]


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    user_id, name, username, password, email, role, created_at, permissions = _pad(raw_row, 8)
    granted = frozenset(
        token.strip() for token in _to_str(permissions).split(",") if token.strip()
    )
    return UserRow(
        user_id=str(user_id),
        name=_to_str(name),
        username=_to_str(username),
        password=_to_str(password),
        role=_to_str(role),
        created_at_iso=_to_str(created_at),
        email=_to_opt_str(email),
        permissions=granted,
    )


def serialize_setting(record: SettingRow) -> list[object]:
    return [record.section, record.key, record.value]


def deserialize_setting(raw_row: Sequence[object]) -> SettingRow:
    section, key, value = _pad(raw_row, 3)
    return SettingRow(section=_to_str(section), key=_to_str(key), value=_to_str(value))


def serialize_price_simulation(record: PriceSimulationRow) -> list[object]:
    return [
        record.simulation_id,
        record.created_at_iso,
        record.purchase_price,
        record.tax_rate,
        record.profit_margin,
        record.suggested_sales_price,
    ]


def deserialize_price_simulation(raw_row: Sequence[object]) -> PriceSimulationRow:
    simulation_id, created_at, purchase, tax_rate, margin, suggested = _pad(raw_row, 6)
    return PriceSimulationRow(
        simulation_id=str(simulation_id),
        created_at_iso=_to_str(created_at),
        purchase_price=_to_decimal(purchase),
        tax_rate=_to_decimal(tax_rate, "0"),
        profit_margin=_to_decimal(margin, "0"),
        suggested_sales_price=_to_decimal(suggested),
    )


_SERIALIZERS = {
    SheetName.PRODUCTS: serialize_product,
    SheetName.CUSTOMERS: serialize_customer,
    SheetName.USERS: serialize_user,
    SheetName.SETTINGS: serialize_setting,
    SheetName.PRICE_SIMULATIONS: serialize_price_simulation,
}

_DESERIALIZERS = {
    SheetName.PRODUCTS: deserialize_product,
    SheetName.CUSTOMERS: deserialize_customer,
    SheetName.USERS: deserialize_user,
    SheetName.SETTINGS: deserialize_setting,
    SheetName.PRICE_SIMULATIONS: deserialize_price_simulation,
}


__all__ = [
    "CONFIG_FILE_NAME",
    "SHEET_COLUMNS",
    "ConfigSettings",
    "ProductRow",
    "CustomerRow",
    "SaleItemRow",
    "SaleRow",
    "UserRow",
    "SettingRow",
    "PriceSimulationRow",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "refresh_workbook",
    "iter_sheet_rows",
    "load_collection",
    "save_collection",
    "parse_bool",
]
