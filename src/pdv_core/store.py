"""In-memory entity store backed by the master workbook.

Each collection is loaded from the workbook the first time it is needed and
then served from memory. Writes go through :class:`ChangeSet`: callers stage
the next version of every row they touch and :meth:`EntityStore.apply` swaps
the whole set in and saves the touched collections back to the workbook. A
failure while building a change set therefore never leaves the store half
updated.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from operator import attrgetter
from typing import Any, Callable, Dict, List, Optional, Set

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import SheetName
from .data_manager import CustomerRow, PriceSimulationRow, ProductRow, SaleRow, UserRow
from .errors import CustomerNotFoundError, ProductNotFoundError, SaleNotFoundError, UserNotFoundError
from .policy import Policy, policy_from_rows, policy_to_rows


_ROW_KEYS: Dict[SheetName, Callable[[Any], str]] = {
    SheetName.PRODUCTS: attrgetter("product_id"),
    SheetName.CUSTOMERS: attrgetter("customer_id"),
    SheetName.SALES: attrgetter("sale_id"),
    SheetName.USERS: attrgetter("user_id"),
    SheetName.PRICE_SIMULATIONS: attrgetter("simulation_id"),
}

# Collections whose new rows go to the head so reads are most-recent-first.
_HEAD_INSERT = frozenset({SheetName.SALES, SheetName.PRICE_SIMULATIONS})


@dataclass
class ChangeSet:
    """Rows staged for one atomic store update."""

    upserts: Dict[SheetName, "OrderedDict[str, Any]"] = field(default_factory=dict)
    deletions: Dict[SheetName, Set[str]] = field(default_factory=dict)

    def stage(self, key: SheetName, row: Any) -> Any:
        row_id = _ROW_KEYS[key](row)
        self.upserts.setdefault(key, OrderedDict())[row_id] = row
        self.deletions.get(key, set()).discard(row_id)
        return row

    def delete(self, key: SheetName, row_id: str) -> None:
        self.deletions.setdefault(key, set()).add(row_id)
        self.upserts.get(key, {}).pop(row_id, None)

    def staged(self, key: SheetName, row_id: str) -> Optional[Any]:
        return self.upserts.get(key, {}).get(row_id)

    @property
    def touched(self) -> List[SheetName]:
        names = set(self.upserts) | {key for key, ids in self.deletions.items() if ids}
        return [key for key in _ROW_KEYS if key in names]

    def __bool__(self) -> bool:
        return bool(self.touched)


class EntityStore:
    """Authoritative collections of products, customers, sales, users and settings."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._buckets: Dict[SheetName, "OrderedDict[str, Any]"] = {}
        self._policy: Optional[Policy] = None

    # -- loading -----------------------------------------------------------

    def _bucket(self, key: SheetName) -> "OrderedDict[str, Any]":
        bucket = self._buckets.get(key)
        if bucket is None:
            rows = data_manager.load_collection(self.workbook, key)
            bucket = OrderedDict((_ROW_KEYS[key](row), row) for row in rows)
            self._buckets[key] = bucket
            log.debug("Loaded %d rows into '%s' bucket", len(bucket), key.value)
        return bucket

    def invalidate(self) -> None:
        """Forget every loaded collection; the next read reloads from the workbook."""

        self._buckets.clear()
        self._policy = None

    # -- reads -------------------------------------------------------------

    def list_products(self) -> List[ProductRow]:
        return list(self._bucket(SheetName.PRODUCTS).values())

    def list_customers(self) -> List[CustomerRow]:
        return list(self._bucket(SheetName.CUSTOMERS).values())

    def list_sales(self) -> List[SaleRow]:
        """Return sales most-recent-first."""
        return list(self._bucket(SheetName.SALES).values())

    def list_users(self) -> List[UserRow]:
        return list(self._bucket(SheetName.USERS).values())

    def list_price_simulations(self) -> List[PriceSimulationRow]:
        return list(self._bucket(SheetName.PRICE_SIMULATIONS).values())

    def find_product(self, product_id: str) -> Optional[ProductRow]:
        return self._bucket(SheetName.PRODUCTS).get(product_id)

    def find_customer(self, customer_id: str) -> Optional[CustomerRow]:
        return self._bucket(SheetName.CUSTOMERS).get(customer_id)

    def find_sale(self, sale_id: str) -> Optional[SaleRow]:
        return self._bucket(SheetName.SALES).get(sale_id)

    def find_user(self, user_id: str) -> Optional[UserRow]:
        return self._bucket(SheetName.USERS).get(user_id)

    def get_product(self, product_id: str) -> ProductRow:
        product = self.find_product(product_id)
        if product is None:
            raise ProductNotFoundError(f"Unknown product id: {product_id}")
        return product

    def get_customer(self, customer_id: str) -> CustomerRow:
        customer = self.find_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(f"Unknown customer id: {customer_id}")
        return customer

    def get_sale(self, sale_id: str) -> SaleRow:
        sale = self.find_sale(sale_id)
        if sale is None:
            raise SaleNotFoundError(f"Unknown sale id: {sale_id}")
        return sale

    def get_user(self, user_id: str) -> UserRow:
        user = self.find_user(user_id)
        if user is None:
            raise UserNotFoundError(f"Unknown user id: {user_id}")
        return user

    def policy(self) -> Policy:
        if self._policy is None:
            rows = data_manager.load_collection(self.workbook, SheetName.SETTINGS)
            self._policy = policy_from_rows(rows)
        return self._policy

    # -- writes ------------------------------------------------------------

    def apply(self, changes: ChangeSet) -> None:
        """Swap a staged change set into the store and save touched collections.

        New buckets are built and written to the workbook before any of them
        replaces the live one.
        """

        if not changes:
            return

        rebuilt: Dict[SheetName, "OrderedDict[str, Any]"] = {}
        for key in changes.touched:
            current = self._bucket(key)
            staged = changes.upserts.get(key, OrderedDict())
            removed = changes.deletions.get(key, set())
            fresh = OrderedDict(
                (row_id, row) for row_id, row in staged.items() if row_id not in current
            )
            merged: "OrderedDict[str, Any]" = OrderedDict()
            if key in _HEAD_INSERT:
                merged.update(reversed(list(fresh.items())))
            for row_id, row in current.items():
                if row_id in removed:
                    continue
                merged[row_id] = staged.get(row_id, row)
            if key not in _HEAD_INSERT:
                merged.update(fresh)
            rebuilt[key] = merged

        written: List[SheetName] = []
        try:
            for key, bucket in rebuilt.items():
                data_manager.save_collection(self.workbook, key, list(bucket.values()))
                written.append(key)
        except Exception:
            # put back the sheets already rewritten so workbook and store agree
            for key in written:
                data_manager.save_collection(self.workbook, key, list(self._buckets[key].values()))
            raise
        self._buckets.update(rebuilt)
        log.debug("Applied change set to: %s", ", ".join(key.value for key in rebuilt))

    def _put(self, key: SheetName, row: Any) -> Any:
        changes = ChangeSet()
        changes.stage(key, row)
        self.apply(changes)
        return row

    def _delete(self, key: SheetName, row_id: str) -> None:
        changes = ChangeSet()
        changes.delete(key, row_id)
        self.apply(changes)

    def put_product(self, product: ProductRow) -> ProductRow:
        return self._put(SheetName.PRODUCTS, product)

    def put_customer(self, customer: CustomerRow) -> CustomerRow:
        return self._put(SheetName.CUSTOMERS, customer)

    def put_user(self, user: UserRow) -> UserRow:
        return self._put(SheetName.USERS, user)

    def put_price_simulation(self, simulation: PriceSimulationRow) -> PriceSimulationRow:
        return self._put(SheetName.PRICE_SIMULATIONS, simulation)

    def delete_product(self, product_id: str) -> None:
        self._delete(SheetName.PRODUCTS, product_id)

    def delete_customer(self, customer_id: str) -> None:
        self._delete(SheetName.CUSTOMERS, customer_id)

    def delete_user(self, user_id: str) -> None:
        self._delete(SheetName.USERS, user_id)

    def replace_policy(self, policy: Policy) -> None:
        data_manager.save_collection(self.workbook, SheetName.SETTINGS, policy_to_rows(policy))
        self._policy = policy


__all__ = ["ChangeSet", "EntityStore"]
