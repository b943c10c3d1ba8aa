"""Draft state of an in-progress sale.

A :class:`Cart` holds the lines, discount and customer of one transaction
until it is committed (or, when seeded from an existing sale, until the edit
is saved). It never touches the store: stock is only read, through the
``products`` lookup, to decide whether another unit may be added.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Sequence, Union

from . import log
from .data_manager import ProductRow, SaleItemRow, SaleRow
from .errors import DiscountNotAllowedError, OutOfStockError
from .policy import DEFAULT_POLICY, Policy


CENT = Decimal("0.01")
HUNDRED = Decimal("100")

ProductLookup = Callable[[str], Optional[ProductRow]]


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents, half up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def line_for(product: ProductRow, quantity: int) -> SaleItemRow:
    """Snapshot ``product`` name and sale price into a new line."""
    return SaleItemRow(
        product_id=product.product_id,
        product_name=product.name,
        quantity=quantity,
        unit_price=product.sale_price,
        total_price=quantize_money(product.sale_price * quantity),
    )


def with_quantity(line: SaleItemRow, quantity: int) -> SaleItemRow:
    return replace(line, quantity=quantity, total_price=quantize_money(line.unit_price * quantity))


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal
    discount: Decimal
    total: Decimal


def compute_totals(lines: Sequence[SaleItemRow], discount: Decimal) -> CartTotals:
    """``subtotal`` is the sum of line totals; ``total`` applies the percentage discount."""

    subtotal = quantize_money(sum((line.total_price for line in lines), Decimal("0")))
    total = quantize_money(subtotal * (1 - Decimal(discount) / HUNDRED))
    return CartTotals(subtotal=subtotal, discount=Decimal(discount), total=total)


def validate_discount(percent: Union[Decimal, int, float, str], policy: Policy) -> Decimal:
    """Return ``percent`` as a Decimal or raise :class:`DiscountNotAllowedError`.

    Discounts must lie in ``[0, 100]``. A positive
    ``vendas.desconto_maximo_percentual`` caps them further.
    """

    value = Decimal(str(percent))
    if value < 0 or value > HUNDRED:
        raise DiscountNotAllowedError(f"Discount must be between 0 and 100, got {value}")
    ceiling = policy.max_discount_percent
    if ceiling > 0 and value > ceiling:
        raise DiscountNotAllowedError(f"Discount {value}% exceeds the {ceiling}% maximum")
    return value


class Cart:
    """Mutable draft of a sale.

    Args:
        policy: Settings consulted for the stock admission check and the
            discount ceiling.
        products: Lookup returning the live product row for an id. When an
            admission check needs stock and neither this lookup nor an
            explicit product is available the product counts as out of stock.
        editing_sale_id: Set for an edit-in-place session; such sessions skip
            the stock admission check.
    """

    def __init__(
        self,
        policy: Policy = DEFAULT_POLICY,
        *,
        products: Optional[ProductLookup] = None,
        editing_sale_id: Optional[str] = None,
    ) -> None:
        self.policy = policy
        self._products = products
        self.editing_sale_id = editing_sale_id
        self._lines: List[SaleItemRow] = []
        self.discount = Decimal("0")
        self.customer_id: Optional[str] = None

    @classmethod
    def for_sale(
        cls,
        sale: SaleRow,
        policy: Policy = DEFAULT_POLICY,
        *,
        products: Optional[ProductLookup] = None,
    ) -> "Cart":
        """Seed an edit-in-place session from a committed sale."""

        cart = cls(policy, products=products, editing_sale_id=sale.sale_id)
        cart._lines = list(sale.items)
        cart.discount = sale.discount
        cart.customer_id = sale.customer_id
        return cart

    @property
    def is_editing(self) -> bool:
        return self.editing_sale_id is not None

    @property
    def lines(self) -> tuple[SaleItemRow, ...]:
        return tuple(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def held_quantity(self, product_id: str) -> int:
        return sum(line.quantity for line in self._lines if line.product_id == product_id)

    def _index_of(self, product_id: str) -> Optional[int]:
        for index, line in enumerate(self._lines):
            if line.product_id == product_id:
                return index
        return None

    def _admit(self, product_id: str, extra: int, product: Optional[ProductRow]) -> None:
        if self.is_editing or self.policy.allow_negative_stock:
            return
        live = self._products(product_id) if self._products is not None else None
        if live is None:
            live = product
        available = live.quantity if live is not None else 0
        requested = self.held_quantity(product_id) + extra
        if requested > available:
            log.warning(
                "Cart admission refused for product '%s': %d in stock, %d requested",
                product_id,
                available,
                requested,
            )
            raise OutOfStockError(product_id, available, requested)

    def add_line(self, product: ProductRow, qty: int = 1) -> SaleItemRow:
        """Add ``qty`` units of ``product``, merging into an existing line.

        Raises:
            ValueError: If ``qty`` is not positive.
            OutOfStockError: If stock does not cover the units already held
                plus ``qty``. The cart is left unchanged.
        """

        if qty <= 0:
            raise ValueError("Quantity must be greater than zero")
        self._admit(product.product_id, qty, product)

        index = self._index_of(product.product_id)
        if index is None:
            line = line_for(product, qty)
            self._lines.append(line)
        else:
            line = with_quantity(self._lines[index], self._lines[index].quantity + qty)
            self._lines[index] = line
        return line

    def adjust_line_quantity(
        self,
        product_id: str,
        delta: int,
        *,
        product: Optional[ProductRow] = None,
    ) -> Optional[SaleItemRow]:
        """Change a line by ``delta`` units; the line is dropped when it reaches zero.

        Returns the updated line, or ``None`` when the line was removed or
        does not exist.

        Raises:
            OutOfStockError: When ``delta`` is positive and stock does not
                cover it. The cart is left unchanged.
        """

        index = self._index_of(product_id)
        if index is None:
            return None
        if delta > 0:
            self._admit(product_id, delta, product)

        new_quantity = self._lines[index].quantity + delta
        if new_quantity <= 0:
            del self._lines[index]
            return None
        line = with_quantity(self._lines[index], new_quantity)
        self._lines[index] = line
        return line

    def remove_line(self, product_id: str) -> None:
        self._lines = [line for line in self._lines if line.product_id != product_id]

    def set_discount(self, percent: Union[Decimal, int, float, str]) -> None:
        """Replace the discount percentage.

        Raises:
            DiscountNotAllowedError: Outside ``[0, 100]`` or above the
                configured maximum.
        """

        self.discount = validate_discount(percent, self.policy)

    def set_customer(self, customer_id: Optional[str]) -> None:
        self.customer_id = customer_id or None

    def compute_totals(self) -> CartTotals:
        return compute_totals(self._lines, self.discount)

    def clear(self) -> None:
        self._lines = []
        self.discount = Decimal("0")
        self.customer_id = None


__all__ = [
    "Cart",
    "CartTotals",
    "compute_totals",
    "line_for",
    "quantize_money",
    "validate_discount",
    "with_quantity",
]
