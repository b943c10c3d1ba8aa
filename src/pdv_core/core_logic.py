"""Business logic layer for the POS core.

This module owns every rule that changes more than one entity at a time:
committing a cart into a sale, cancelling a sale and rewriting a sale's
lines. Each of those runs under the runtime context lock, stages the next
version of every touched row in a :class:`~pdv_core.store.ChangeSet` and
swaps it into the store in one step. The remaining helpers cover product,
customer and user maintenance, invoice ingestion, the pricing calculator and
read-only reports.
"""

from __future__ import annotations

import hmac
import threading
from collections import Counter, OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .cart import Cart, compute_totals, quantize_money, validate_discount, with_quantity
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ROLE_DEFAULT_PERMISSIONS,
    PagePermission,
    SaleStatus,
    SheetName,
    UserRole,
)
from .data_manager import (
    CustomerRow,
    PriceSimulationRow,
    ProductRow,
    SaleItemRow,
    SaleRow,
    UserRow,
)
from .errors import (
    AlreadyCancelledError,
    AuthenticationError,
    BusinessRuleViolation,
    CustomerNotFoundError,
    DiscountNotAllowedError,
    EmptyCartError,
    MissingReferenceError,
    OutOfStockError,
    ProductNotFoundError,
    SaleNotFoundError,
    UserNotFoundError,
)
from .integrations import InvoiceExtraction
from .policy import Policy, with_setting
from .store import ChangeSet, EntityStore


INVOICE_MARKUP = Decimal("1.5")


@dataclass(frozen=True)
class Diagnostic:
    """A reference that an engine could not resolve and skipped."""

    kind: str
    reference_id: str
    operation: str


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, workbook and entity store shared by the BLL.

    ``lock`` is the single-writer boundary around every mutating call.
    ``diagnostics`` accumulates the references skipped by the engines.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: Optional[EntityStore] = None
    lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    diagnostics: List[Diagnostic] = field(default_factory=list, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.store is None:
            object.__setattr__(self, "store", EntityStore(self.workbook))


@dataclass(frozen=True)
class Seller:
    """Who rang up a sale."""

    seller_id: str
    seller_name: str


@dataclass(frozen=True)
class IngestResult:
    updated: List[ProductRow]
    created: List[ProductRow]


@dataclass(frozen=True)
class SalesSummary:
    completed_count: int
    cancelled_count: int
    revenue: Decimal
    cost: Decimal
    profit: Decimal
    revenue_by_seller: Mapping[str, Decimal]


@dataclass(frozen=True)
class AggregateMismatch:
    customer_id: str
    expected_sales_count: int
    actual_sales_count: int
    expected_total_spent: Decimal
    actual_total_spent: Decimal


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Build a sortable identifier ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    Microseconds are included so that ids generated within the same second
    stay distinct; callers that need a guaranteed-unique id in a collection
    use :func:`_unique_id`.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _unique_id(prefix: str, when: datetime, exists: Callable[[str], bool]) -> str:
    candidate = generate_id(prefix=prefix, when=when)
    while exists(candidate):
        when = when + timedelta(microseconds=1)
        candidate = generate_id(prefix=prefix, when=when)
    return candidate


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load ``config.ini`` and the workbook it points at.

    Args:
        config_path (Path | None): Optional explicit configuration file. When
            omitted the data layer searches upwards from the working
            directory.

    Returns:
        RuntimeContext: Context with an empty entity store that loads
            collections on first use.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options or sheets are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Reject configurations written for another workbook layout.

    Raises:
        RuntimeError: If ``SchemaVersion`` differs from
            :data:`~pdv_core.constants.EXPECTED_SCHEMA_VERSION`.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook to the configured data file."""

    with context.lock:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved changes.

    Returns:
        RuntimeContext: A new context with a fresh workbook, store and lock.

    Raises:
        FileNotFoundError: If the workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def current_policy(context: RuntimeContext) -> Policy:
    return context.store.policy()


def set_setting(context: RuntimeContext, section: str, key: str, value: str) -> Policy:
    """Change one setting and save the ``Settings`` sheet.

    Raises:
        ValueError: If ``value`` does not convert to the setting's type.
    """

    with context.lock:
        policy = with_setting(context.store.policy(), section, key, value)
        context.store.replace_policy(policy)
    log.info("Setting '%s.%s' changed to %r", section, key, value)
    return policy


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Raise ``ValueError`` unless ``quantity`` is strictly positive."""

    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Raise ``ValueError`` if ``amount`` is negative."""

    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def lookup_or_skip(
    context: RuntimeContext,
    kind: str,
    reference_id: str,
    finder: Callable[[str], Optional[Any]],
    *,
    operation: str,
) -> Optional[Any]:
    """Resolve a reference or record a :class:`Diagnostic` and return ``None``.

    Engines use this for references that historical sales may still carry
    after the referenced product or customer was deleted. A miss never
    raises; it is logged and appended to ``context.diagnostics``.
    """

    found = finder(reference_id)
    if found is None:
        log.warning("Skipping unknown %s '%s' during %s", kind, reference_id, operation)
        context.diagnostics.append(Diagnostic(kind=kind, reference_id=reference_id, operation=operation))
    return found


def _stage_stock_delta(
    context: RuntimeContext,
    changes: ChangeSet,
    product_id: str,
    delta: int,
    *,
    operation: str,
) -> None:
    current = changes.staged(SheetName.PRODUCTS, product_id) or lookup_or_skip(
        context, "product", product_id, context.store.find_product, operation=operation
    )
    if current is None:
        return
    changes.stage(SheetName.PRODUCTS, replace(current, quantity=current.quantity + delta))


def _stage_customer_delta(
    context: RuntimeContext,
    changes: ChangeSet,
    customer_id: str,
    count_delta: int,
    spent_delta: Decimal,
    *,
    operation: str,
) -> None:
    current = changes.staged(SheetName.CUSTOMERS, customer_id) or lookup_or_skip(
        context, "customer", customer_id, context.store.find_customer, operation=operation
    )
    if current is None:
        return
    changes.stage(
        SheetName.CUSTOMERS,
        replace(
            current,
            sales_count=current.sales_count + count_delta,
            total_spent=current.total_spent + spent_delta,
        ),
    )


# ---------------------------------------------------------------------------
# Cart and sale engines
# ---------------------------------------------------------------------------


def new_cart(context: RuntimeContext) -> Cart:
    """Return an empty cart wired to the live product stock and current policy."""

    return Cart(context.store.policy(), products=context.store.find_product)


def edit_cart(context: RuntimeContext, sale_id: str) -> Cart:
    """Seed an edit-in-place cart from a committed sale.

    Raises:
        SaleNotFoundError: If ``sale_id`` is unknown.
        AlreadyCancelledError: If the sale was cancelled.
    """

    sale = context.store.get_sale(sale_id)
    if sale.is_cancelled:
        raise AlreadyCancelledError(f"Sale '{sale_id}' is cancelled and cannot be edited")
    return Cart.for_sale(sale, context.store.policy(), products=context.store.find_product)


def seller_for(context: RuntimeContext, user_id: str) -> Seller:
    """Build a :class:`Seller` from a registered user.

    Raises:
        UserNotFoundError: If ``user_id`` is unknown.
    """

    user = context.store.get_user(user_id)
    return Seller(seller_id=user.user_id, seller_name=user.name)


def commit_sale(
    context: RuntimeContext,
    cart: Cart,
    *,
    seller: Optional[Seller] = None,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Turn a cart into a completed sale and apply its effects.

    Every line decrements its product's stock. When the cart names a
    customer that exists, the customer's ``sales_count`` grows by one and
    ``total_spent`` by the sale total. The seller is recorded only when
    ``vendas.associar_vendedor`` is enabled. Lines for unknown products and
    an unknown customer are skipped and reported in ``context.diagnostics``.

    All changes are staged first and applied in a single store update; the
    cart is cleared only after that update succeeds.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        cart (Cart): Draft to commit. Must not be an edit-in-place cart.
        seller (Seller | None): Who is ringing up the sale.
        timestamp (datetime | None): Commit time, defaulting to now (UTC).

    Returns:
        SaleRow: The committed sale, now at the head of the sales collection.

    Raises:
        EmptyCartError: If the cart has no lines. Nothing is changed.
        BusinessRuleViolation: If ``cart`` is editing an existing sale.
    """

    if cart.is_editing:
        raise BusinessRuleViolation(
            f"Cart is editing sale '{cart.editing_sale_id}'; save it with update_sale_from_cart"
        )
    if len(cart) == 0:
        log.warning("Refusing to commit an empty cart")
        raise EmptyCartError("Cannot complete a sale without items")

    with context.lock:
        policy = context.store.policy()
        moment = _resolve_timestamp(timestamp)
        sale_id = _unique_id("S", moment, lambda candidate: context.store.find_sale(candidate) is not None)
        totals = cart.compute_totals()

        attach_seller = seller is not None and policy.associate_seller
        sale = SaleRow(
            sale_id=sale_id,
            date_iso=moment.isoformat(),
            status=SaleStatus.COMPLETED.value,
            items=cart.lines,
            subtotal=totals.subtotal,
            discount=totals.discount,
            total=totals.total,
            customer_id=cart.customer_id,
            seller_id=seller.seller_id if attach_seller else None,
            seller_name=seller.seller_name if attach_seller else None,
        )

        changes = ChangeSet()
        for line in sale.items:
            _stage_stock_delta(context, changes, line.product_id, -line.quantity, operation="commit")
        if sale.customer_id:
            _stage_customer_delta(context, changes, sale.customer_id, 1, sale.total, operation="commit")
        changes.stage(SheetName.SALES, sale)
        context.store.apply(changes)
        cart.clear()

    log.info(
        "Committed sale '%s' (%d lines, subtotal=%s, discount=%s%%, total=%s)",
        sale.sale_id,
        len(sale.items),
        sale.subtotal,
        sale.discount,
        sale.total,
    )
    return sale


def cancel_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    """Cancel a completed sale, restocking its lines.

    The customer's ``sales_count`` and ``total_spent`` are reduced by one and
    the sale total; they are not clamped at zero. Cancellation is final.

    Returns:
        SaleRow: The sale with status ``cancelled``.

    Raises:
        SaleNotFoundError: If ``sale_id`` is unknown.
        AlreadyCancelledError: If the sale is already cancelled. Nothing is
            changed.
    """

    with context.lock:
        sale = context.store.find_sale(sale_id)
        if sale is None:
            log.warning("Cancel requested for unknown sale '%s'", sale_id)
            raise SaleNotFoundError(f"Unknown sale id: {sale_id}")
        if sale.is_cancelled:
            log.warning("Sale '%s' is already cancelled", sale_id)
            raise AlreadyCancelledError(f"Sale '{sale_id}' is already cancelled")

        changes = ChangeSet()
        for line in sale.items:
            _stage_stock_delta(context, changes, line.product_id, line.quantity, operation="cancel")
        if sale.customer_id:
            _stage_customer_delta(context, changes, sale.customer_id, -1, -sale.total, operation="cancel")
        cancelled = changes.stage(SheetName.SALES, replace(sale, status=SaleStatus.CANCELLED.value))
        context.store.apply(changes)

    log.info("Cancelled sale '%s' (total=%s)", sale_id, sale.total)
    return cancelled


def compute_stock_delta(
    old_items: Iterable[SaleItemRow],
    new_items: Iterable[SaleItemRow],
) -> Dict[str, int]:
    """Net stock change per product when a sale's lines go from old to new.

    Old quantities are given back (positive) and new quantities are taken
    (negative). Products whose net change is zero are omitted.
    """

    delta: Counter[str] = Counter()
    for item in old_items:
        delta[item.product_id] += item.quantity
    for item in new_items:
        delta[item.product_id] -= item.quantity
    return OrderedDict((product_id, change) for product_id, change in delta.items() if change != 0)


def update_sale(
    context: RuntimeContext,
    sale_id: str,
    new_items: Sequence[SaleItemRow],
    new_discount: Decimal,
    new_customer_id: Optional[str],
    *,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Rewrite a completed sale's lines, discount and customer.

    Stock moves only by the per-product difference between the old and new
    lines (see :func:`compute_stock_delta`), applied as one adjustment per
    product. Customer aggregates follow the sale: when the customer changes
    the old one loses the sale and the new one gains it; when it stays the
    same its ``total_spent`` moves by the change in total. The original
    ``date`` is kept and the edit time goes to ``edited_at_iso``.

    No stock admission check is made; edits may take stock negative.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        sale_id (str): Sale to rewrite.
        new_items (Sequence[SaleItemRow]): Replacement lines. Line totals are
            recomputed from quantity and unit price.
        new_discount (Decimal): Replacement discount percentage.
        new_customer_id (str | None): Replacement customer.
        timestamp (datetime | None): Edit time, defaulting to now (UTC).

    Returns:
        SaleRow: The rewritten sale.

    Raises:
        EmptyCartError: If ``new_items`` is empty.
        ValueError: If a line quantity is not positive.
        DiscountNotAllowedError: If the discount is out of range.
        SaleNotFoundError: If ``sale_id`` is unknown.
        AlreadyCancelledError: If the sale is cancelled.
    """

    if not new_items:
        raise EmptyCartError("A sale must keep at least one item")
    for item in new_items:
        require_positive_quantity(item.quantity)
    items = tuple(with_quantity(item, item.quantity) for item in new_items)
    customer_id = new_customer_id or None

    with context.lock:
        original = context.store.find_sale(sale_id)
        if original is None:
            log.warning("Edit requested for unknown sale '%s'", sale_id)
            raise SaleNotFoundError(f"Unknown sale id: {sale_id}")
        if original.is_cancelled:
            raise AlreadyCancelledError(f"Sale '{sale_id}' is cancelled and cannot be edited")

        discount = validate_discount(new_discount, context.store.policy())
        totals = compute_totals(items, discount)

        changes = ChangeSet()
        delta = compute_stock_delta(original.items, items)
        for product_id, change in delta.items():
            _stage_stock_delta(context, changes, product_id, change, operation="edit")

        if original.customer_id == customer_id:
            if customer_id and totals.total != original.total:
                _stage_customer_delta(
                    context, changes, customer_id, 0, totals.total - original.total, operation="edit"
                )
        else:
            if original.customer_id:
                _stage_customer_delta(
                    context, changes, original.customer_id, -1, -original.total, operation="edit"
                )
            if customer_id:
                _stage_customer_delta(context, changes, customer_id, 1, totals.total, operation="edit")

        updated = changes.stage(
            SheetName.SALES,
            replace(
                original,
                items=items,
                subtotal=totals.subtotal,
                discount=totals.discount,
                total=totals.total,
                customer_id=customer_id,
                edited_at_iso=_resolve_timestamp(timestamp).isoformat(),
            ),
        )
        context.store.apply(changes)

    log.info(
        "Edited sale '%s': %d stock adjustment(s), total %s -> %s",
        sale_id,
        len(delta),
        original.total,
        updated.total,
    )
    return updated


def update_sale_from_cart(context: RuntimeContext, cart: Cart, *, timestamp: Optional[datetime] = None) -> SaleRow:
    """Save an edit-in-place cart back onto its sale and clear it.

    Raises:
        BusinessRuleViolation: If ``cart`` is not editing a sale.
    """

    if not cart.is_editing:
        raise BusinessRuleViolation("Cart is not editing an existing sale")
    sale = update_sale(
        context,
        cart.editing_sale_id,
        cart.lines,
        cart.discount,
        cart.customer_id,
        timestamp=timestamp,
    )
    cart.clear()
    return sale


def list_sales(context: RuntimeContext, *, include_cancelled: bool = True) -> List[SaleRow]:
    """Return sales most-recent-first."""

    sales = context.store.list_sales()
    if include_cancelled:
        return sales
    return [sale for sale in sales if not sale.is_cancelled]


def get_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    return context.store.get_sale(sale_id)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

_PRODUCT_DETAIL_FIELDS = frozenset({"name", "category", "purchase_price", "sale_price", "barcode", "image_url"})


def list_products(context: RuntimeContext) -> List[ProductRow]:
    return context.store.list_products()


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    return context.store.get_product(product_id)


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    purchase_price: Decimal,
    sale_price: Decimal,
    quantity: int = 0,
    category: str = "",
    barcode: str = "",
    image_url: Optional[str] = None,
    product_id: Optional[str] = None,
) -> ProductRow:
    """Register a product.

    Raises:
        BusinessRuleViolation: If ``product_id`` is already taken.
        ValueError: If a price or the opening quantity is negative.
    """

    require_nonnegative_money(purchase_price)
    require_nonnegative_money(sale_price)
    if quantity < 0:
        raise ValueError("Opening quantity cannot be negative")

    with context.lock:
        if product_id is None:
            product_id = _unique_id("P", _resolve_timestamp(None), lambda c: context.store.find_product(c) is not None)
        elif context.store.find_product(product_id) is not None:
            raise BusinessRuleViolation(f"Product id '{product_id}' already exists")
        product = ProductRow(
            product_id=product_id,
            name=name,
            category=category,
            quantity=quantity,
            purchase_price=purchase_price,
            sale_price=sale_price,
            barcode=barcode,
            image_url=image_url,
        )
        context.store.put_product(product)
    log.info("Added product '%s' (%s)", product.product_id, product.name)
    return product


def update_product_details(context: RuntimeContext, product_id: str, **values: Any) -> ProductRow:
    """Change descriptive and price fields of a product.

    Stock is not editable here; use :func:`adjust_stock`.

    Raises:
        ProductNotFoundError: If ``product_id`` is unknown.
        ValueError: For unknown or non-editable fields, or negative prices.
    """

    unknown = set(values) - _PRODUCT_DETAIL_FIELDS
    if unknown:
        raise ValueError(f"Cannot update product field(s): {', '.join(sorted(unknown))}")
    for price_field in ("purchase_price", "sale_price"):
        if price_field in values:
            require_nonnegative_money(values[price_field])

    with context.lock:
        product = replace(context.store.get_product(product_id), **values)
        context.store.put_product(product)
    log.info("Updated product '%s': %s", product_id, ", ".join(sorted(values)))
    return product


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product. Sales that reference it keep their line snapshots."""

    with context.lock:
        context.store.get_product(product_id)
        context.store.delete_product(product_id)
    log.info("Deleted product '%s'", product_id)


def adjust_stock(context: RuntimeContext, product_id: str, delta: int) -> ProductRow:
    """Manually correct a product's stock by ``delta`` units.

    Raises:
        ProductNotFoundError: If ``product_id`` is unknown.
        OutOfStockError: If the result would be negative and the policy does
            not allow negative stock.
    """

    with context.lock:
        product = context.store.get_product(product_id)
        new_quantity = product.quantity + delta
        if new_quantity < 0 and not context.store.policy().allow_negative_stock:
            raise OutOfStockError(product_id, product.quantity, -delta)
        product = replace(product, quantity=new_quantity)
        context.store.put_product(product)
    log.info("Adjusted stock of '%s' by %+d to %d", product_id, delta, new_quantity)
    return product


def search_products(context: RuntimeContext, query: str) -> List[ProductRow]:
    """Products whose name contains ``query`` (any case) or whose barcode contains it."""

    needle = query.strip().lower()
    if not needle:
        return context.store.list_products()
    return [
        product
        for product in context.store.list_products()
        if needle in product.name.lower() or needle in product.barcode
    ]


def low_stock_products(context: RuntimeContext) -> List[ProductRow]:
    """Products at or below ``estoque.estoque_minimo_padrao``, lowest stock first."""

    threshold = context.store.policy().low_stock_threshold
    flagged = [product for product in context.store.list_products() if product.quantity <= threshold]
    return sorted(flagged, key=lambda product: product.quantity)


def apply_suggested_price(context: RuntimeContext, product_id: str, price: Decimal) -> ProductRow:
    """Set a product's sale price from the pricing calculator.

    Raises:
        BusinessRuleViolation: If ``price`` is below the purchase price and
            ``precificacao.permitir_venda_abaixo_custo`` is disabled.
    """

    product = context.store.get_product(product_id)
    policy = context.store.policy()
    if price < product.purchase_price and not policy.precificacao.permitir_venda_abaixo_custo:
        raise BusinessRuleViolation(
            f"Price {price} is below the purchase price {product.purchase_price} of '{product_id}'"
        )
    return update_product_details(context, product_id, sale_price=quantize_money(price))


def ingest_invoice(context: RuntimeContext, extraction: InvoiceExtraction) -> IngestResult:
    """Merge the products of a scanned supplier invoice into stock.

    Products are matched by name, ignoring case. A match gains the invoice
    quantity and takes the invoice purchase price; anything else becomes a
    new product priced at 1.5x its purchase price in category ``N/A``. Sales
    are not involved.

    Raises:
        ValueError: If an invoice line has a non-positive quantity or a
            negative price. Nothing is changed.
    """

    for entry in extraction.products:
        require_positive_quantity(entry.quantity)
        require_nonnegative_money(entry.purchase_price)

    with context.lock:
        by_name: Dict[str, ProductRow] = {
            product.name.lower(): product for product in context.store.list_products()
        }
        moment = _resolve_timestamp(None)
        changes = ChangeSet()
        updated: Dict[str, ProductRow] = OrderedDict()
        created: Dict[str, ProductRow] = OrderedDict()

        for entry in extraction.products:
            key = entry.name.lower()
            match = by_name.get(key)
            if match is not None:
                merged = replace(
                    match,
                    quantity=match.quantity + entry.quantity,
                    purchase_price=entry.purchase_price,
                )
                (created if match.product_id in created else updated)[match.product_id] = merged
            else:
                product_id = _unique_id(
                    "P",
                    moment,
                    lambda c: context.store.find_product(c) is not None or c in created,
                )
                merged = ProductRow(
                    product_id=product_id,
                    name=entry.name,
                    category="N/A",
                    quantity=entry.quantity,
                    purchase_price=entry.purchase_price,
                    sale_price=quantize_money(entry.purchase_price * INVOICE_MARKUP),
                    barcode=entry.barcode or "",
                )
                created[product_id] = merged
            by_name[key] = merged
            changes.stage(SheetName.PRODUCTS, merged)

        context.store.apply(changes)

    log.info(
        "Ingested invoice from '%s': %d product(s) updated, %d created",
        extraction.supplier or "unknown supplier",
        len(updated),
        len(created),
    )
    return IngestResult(updated=list(updated.values()), created=list(created.values()))


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

_CUSTOMER_DETAIL_FIELDS = frozenset({"name", "nickname", "phone", "address"})


def list_customers(context: RuntimeContext) -> List[CustomerRow]:
    return context.store.list_customers()


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    nickname: str = "",
    phone: str = "",
    address: str = "",
    customer_id: Optional[str] = None,
) -> CustomerRow:
    """Register a customer with zeroed sale aggregates.

    Raises:
        BusinessRuleViolation: If ``customer_id`` is already taken.
    """

    with context.lock:
        if customer_id is None:
            customer_id = _unique_id("C", _resolve_timestamp(None), lambda c: context.store.find_customer(c) is not None)
        elif context.store.find_customer(customer_id) is not None:
            raise BusinessRuleViolation(f"Customer id '{customer_id}' already exists")
        customer = CustomerRow(
            customer_id=customer_id,
            name=name,
            nickname=nickname,
            phone=phone,
            address=address,
        )
        context.store.put_customer(customer)
    log.info("Added customer '%s' (%s)", customer.customer_id, customer.name)
    return customer


def update_customer_details(context: RuntimeContext, customer_id: str, **values: Any) -> CustomerRow:
    """Change a customer's identity fields.

    ``sales_count`` and ``total_spent`` belong to the sale engines and are
    rejected here.

    Raises:
        CustomerNotFoundError: If ``customer_id`` is unknown.
        ValueError: For fields other than name, nickname, phone and address.
    """

    unknown = set(values) - _CUSTOMER_DETAIL_FIELDS
    if unknown:
        raise ValueError(f"Cannot update customer field(s): {', '.join(sorted(unknown))}")
    with context.lock:
        customer = replace(context.store.get_customer(customer_id), **values)
        context.store.put_customer(customer)
    log.info("Updated customer '%s': %s", customer_id, ", ".join(sorted(values)))
    return customer


def delete_customer(context: RuntimeContext, customer_id: str) -> None:
    with context.lock:
        context.store.get_customer(customer_id)
        context.store.delete_customer(customer_id)
    log.info("Deleted customer '%s'", customer_id)


def customer_sales(context: RuntimeContext, customer_id: str) -> List[SaleRow]:
    """Sales referencing ``customer_id``, most-recent-first, cancelled included."""

    return [sale for sale in context.store.list_sales() if sale.customer_id == customer_id]


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def estimate_sale_price(
    purchase_price: Decimal,
    tax_rate: Decimal,
    profit_margin: Decimal,
    *,
    round_to_99: bool = False,
) -> Decimal:
    """Local sale price estimate: ``purchase * (1 + tax) * (1 + margin)``.

    Rates are fractions (``Decimal("0.18")`` for 18%). With ``round_to_99``
    the price is raised to the next value ending in ``.99``.

    Raises:
        ValueError: If any input is negative.
    """

    for amount in (purchase_price, tax_rate, profit_margin):
        require_nonnegative_money(amount)
    price = quantize_money(purchase_price * (1 + tax_rate) * (1 + profit_margin))
    if round_to_99:
        candidate = price.to_integral_value(rounding=ROUND_FLOOR) + Decimal("0.99")
        if candidate < price:
            candidate += 1
        price = candidate
    return price


def record_price_simulation(
    context: RuntimeContext,
    *,
    purchase_price: Decimal,
    tax_rate: Decimal,
    profit_margin: Decimal,
    suggested_sales_price: Optional[Decimal] = None,
    timestamp: Optional[datetime] = None,
) -> PriceSimulationRow:
    """Append a pricing calculation to the simulation log.

    When ``suggested_sales_price`` is not supplied (for example by the
    external price suggestion service) it is computed with
    :func:`estimate_sale_price`, honouring ``precificacao.arredondar_precos``.
    """

    if suggested_sales_price is None:
        suggested_sales_price = estimate_sale_price(
            purchase_price,
            tax_rate,
            profit_margin,
            round_to_99=context.store.policy().precificacao.arredondar_precos,
        )
    require_nonnegative_money(suggested_sales_price)

    with context.lock:
        moment = _resolve_timestamp(timestamp)
        existing = {row.simulation_id for row in context.store.list_price_simulations()}
        simulation = PriceSimulationRow(
            simulation_id=_unique_id("PS", moment, existing.__contains__),
            created_at_iso=moment.isoformat(),
            purchase_price=purchase_price,
            tax_rate=tax_rate,
            profit_margin=profit_margin,
            suggested_sales_price=suggested_sales_price,
        )
        context.store.put_price_simulation(simulation)
    log.info(
        "Recorded price simulation '%s': cost %s -> suggested %s",
        simulation.simulation_id,
        purchase_price,
        suggested_sales_price,
    )
    return simulation


# ---------------------------------------------------------------------------
# Users and permissions
# ---------------------------------------------------------------------------


def default_permissions(role: str) -> frozenset[str]:
    """Pages granted to a built-in role; custom roles start with none."""

    try:
        pages = ROLE_DEFAULT_PERMISSIONS[UserRole(role)]
    except ValueError:
        return frozenset()
    return frozenset(page.value for page in pages)


def _validate_permissions(permissions: Iterable[str]) -> frozenset[str]:
    granted = frozenset(permissions)
    known = {page.value for page in PagePermission}
    unknown = granted - known
    if unknown:
        raise ValueError(f"Unknown page permission(s): {', '.join(sorted(unknown))}")
    return granted


def add_user(
    context: RuntimeContext,
    *,
    name: str,
    username: str,
    password: str,
    role: str,
    email: Optional[str] = None,
    permissions: Optional[Iterable[str]] = None,
    user_id: Optional[str] = None,
) -> UserRow:
    """Register a user.

    Permissions default to the role's built-in pages.

    Raises:
        BusinessRuleViolation: If the username or id is already taken.
        ValueError: If a permission name is unknown.
    """

    granted = default_permissions(role) if permissions is None else _validate_permissions(permissions)
    with context.lock:
        if any(user.username == username for user in context.store.list_users()):
            raise BusinessRuleViolation(f"Username '{username}' is already taken")
        moment = _resolve_timestamp(None)
        if user_id is None:
            user_id = _unique_id("U", moment, lambda c: context.store.find_user(c) is not None)
        elif context.store.find_user(user_id) is not None:
            raise BusinessRuleViolation(f"User id '{user_id}' already exists")
        user = UserRow(
            user_id=user_id,
            name=name,
            username=username,
            password=password,
            role=role,
            created_at_iso=moment.isoformat(),
            email=email,
            permissions=granted,
        )
        context.store.put_user(user)
    log.info("Added user '%s' (%s, role=%s)", user.user_id, username, role)
    return user


def update_user_permissions(context: RuntimeContext, user_id: str, permissions: Iterable[str]) -> UserRow:
    """Replace the set of pages a user may open.

    Raises:
        UserNotFoundError: If ``user_id`` is unknown.
        ValueError: If a permission name is unknown.
    """

    granted = _validate_permissions(permissions)
    with context.lock:
        user = replace(context.store.get_user(user_id), permissions=granted)
        context.store.put_user(user)
    log.info("Updated permissions of user '%s': %s", user_id, ", ".join(sorted(granted)) or "none")
    return user


def delete_user(context: RuntimeContext, user_id: str) -> None:
    with context.lock:
        context.store.get_user(user_id)
        context.store.delete_user(user_id)
    log.info("Deleted user '%s'", user_id)


def authenticate(context: RuntimeContext, username: str, password: str) -> UserRow:
    """Return the user matching ``username`` and ``password``.

    Raises:
        AuthenticationError: If no user matches.
    """

    for user in context.store.list_users():
        if user.username == username and hmac.compare_digest(
            user.password.encode("utf-8"), password.encode("utf-8")
        ):
            log.info("User '%s' signed in", username)
            return user
    log.warning("Failed sign-in for username '%s'", username)
    raise AuthenticationError("Invalid username or password")


def has_permission(user: UserRow, page: PagePermission) -> bool:
    return page.value in user.permissions


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def sales_summary(context: RuntimeContext) -> SalesSummary:
    """Revenue, cost and profit over completed sales.

    Cost uses each product's current purchase price; lines whose product no
    longer exists contribute no cost.
    """

    revenue = Decimal("0")
    cost = Decimal("0")
    by_seller: Dict[str, Decimal] = {}
    completed = cancelled = 0
    for sale in context.store.list_sales():
        if sale.is_cancelled:
            cancelled += 1
            continue
        completed += 1
        revenue += sale.total
        for line in sale.items:
            product = context.store.find_product(line.product_id)
            if product is not None:
                cost += product.purchase_price * line.quantity
        seller_key = sale.seller_name or sale.seller_id or "-"
        by_seller[seller_key] = by_seller.get(seller_key, Decimal("0")) + sale.total

    cost = quantize_money(cost)
    return SalesSummary(
        completed_count=completed,
        cancelled_count=cancelled,
        revenue=quantize_money(revenue),
        cost=cost,
        profit=quantize_money(revenue - cost),
        revenue_by_seller=by_seller,
    )


def verify_customer_aggregates(context: RuntimeContext) -> List[AggregateMismatch]:
    """Compare stored customer aggregates with the sale history.

    Returns one :class:`AggregateMismatch` per customer whose
    ``sales_count`` or ``total_spent`` differs from the values recomputed
    over its non-cancelled sales. An empty list means the store is consistent.
    """

    expected_count: Counter[str] = Counter()
    expected_spent: Dict[str, Decimal] = {}
    for sale in context.store.list_sales():
        if sale.is_cancelled or not sale.customer_id:
            continue
        expected_count[sale.customer_id] += 1
        expected_spent[sale.customer_id] = expected_spent.get(sale.customer_id, Decimal("0")) + sale.total

    mismatches: List[AggregateMismatch] = []
    for customer in context.store.list_customers():
        count = expected_count.get(customer.customer_id, 0)
        spent = expected_spent.get(customer.customer_id, Decimal("0"))
        if customer.sales_count != count or customer.total_spent != spent:
            mismatches.append(
                AggregateMismatch(
                    customer_id=customer.customer_id,
                    expected_sales_count=count,
                    actual_sales_count=customer.sales_count,
                    expected_total_spent=spent,
                    actual_total_spent=customer.total_spent,
                )
            )
    if mismatches:
        log.warning("Found %d customer(s) with inconsistent aggregates", len(mismatches))
    return mismatches


__all__ = [
    "AggregateMismatch",
    "AlreadyCancelledError",
    "AuthenticationError",
    "BusinessRuleViolation",
    "CustomerNotFoundError",
    "Diagnostic",
    "DiscountNotAllowedError",
    "EmptyCartError",
    "IngestResult",
    "MissingReferenceError",
    "OutOfStockError",
    "ProductNotFoundError",
    "RuntimeContext",
    "SaleNotFoundError",
    "SalesSummary",
    "Seller",
    "UserNotFoundError",
    "add_customer",
    "add_product",
    "add_user",
    "adjust_stock",
    "apply_suggested_price",
    "authenticate",
    "cancel_sale",
    "commit_sale",
    "compute_stock_delta",
    "current_policy",
    "customer_sales",
    "default_permissions",
    "delete_customer",
    "delete_product",
    "delete_user",
    "edit_cart",
    "ensure_schema_version",
    "estimate_sale_price",
    "generate_id",
    "get_product",
    "get_sale",
    "has_permission",
    "ingest_invoice",
    "list_customers",
    "list_products",
    "list_sales",
    "load_runtime_context",
    "lookup_or_skip",
    "low_stock_products",
    "new_cart",
    "persist_context",
    "record_price_simulation",
    "refresh_context",
    "sales_summary",
    "search_products",
    "seller_for",
    "set_setting",
    "update_customer_details",
    "update_product_details",
    "update_sale",
    "update_sale_from_cart",
    "update_user_permissions",
    "verify_customer_aggregates",
]
