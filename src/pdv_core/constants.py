"""Enumerations shared across the POS core.

The data access layer, the policy parser, the engines and the CLI all refer
to these values instead of repeating string literals.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version expected by this release.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class SaleStatus(str, Enum):
    """Lifecycle states of a committed sale."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SheetName(str, Enum):
    """Workbook sheets, one per persisted collection."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    USERS = "Users"
    SETTINGS = "Settings"
    PRICE_SIMULATIONS = "PriceSimulations"


class UserRole(str, Enum):
    """Built-in user roles. Custom role names are stored as plain text."""

    ADMIN = "admin"
    MANAGER = "gerente"
    SELLER = "vendedor"
    STOCKIST = "estoquista"


class PagePermission(str, Enum):
    """Pages a user may be allowed to open."""

    DASHBOARD = "dashboard"
    STOCK = "stock"
    SALES = "sales"
    CUSTOMERS = "customers"
    PRICING = "pricing"
    USERS = "users"
    SETTINGS_SYSTEM = "settings_system"
    SETTINGS_APPEARANCE = "settings_appearance"
    SETTINGS_PRICING = "settings_pricing"
    SETTINGS_STOCK = "settings_stock"
    SETTINGS_SALES = "settings_sales"
    SETTINGS_USERS = "settings_users"
    SETTINGS_BACKUP = "settings_backup"
    SETTINGS_INTEGRATIONS = "settings_integrations"
    SETTINGS_TEST = "settings_test"


ROLE_DEFAULT_PERMISSIONS: dict[UserRole, frozenset[PagePermission]] = {
    UserRole.ADMIN: frozenset(PagePermission),
    UserRole.MANAGER: frozenset(PagePermission) - {
        PagePermission.USERS,
        PagePermission.SETTINGS_SYSTEM,
        PagePermission.SETTINGS_USERS,
    },
    UserRole.SELLER: frozenset({
        PagePermission.DASHBOARD,
        PagePermission.SALES,
        PagePermission.CUSTOMERS,
    }),
    UserRole.STOCKIST: frozenset({
        PagePermission.DASHBOARD,
        PagePermission.STOCK,
        PagePermission.PRICING,
    }),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SaleStatus",
    "SheetName",
    "UserRole",
    "PagePermission",
    "ROLE_DEFAULT_PERMISSIONS",
]
