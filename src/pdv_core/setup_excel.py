"""Utility for initializing the POS master workbook.

The module doubles as a script (``python -m pdv_core.setup_excel``) and as a
library used by tests. It writes every sheet with a bold header row, seeds
the ``Settings`` sheet with the default policy and registers the default
administrator account.
"""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import PagePermission, SheetName, UserRole
from .data_manager import (
    CONFIG_FILE_NAME,
    SHEET_COLUMNS,
    ConfigSettings,
    UserRow,
    parse_settings,
    read_config,
    serialize_setting,
    serialize_user,
)
from .policy import DEFAULT_POLICY, Policy, policy_to_rows


DEFAULT_ADMIN_ID = "U-ADMIN"
DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_PASSWORD = "admin"


def default_admin(user_id: str = DEFAULT_ADMIN_ID, *, created_at_iso: Optional[str] = None) -> UserRow:
    """Administrator account written into a fresh workbook."""

    return UserRow(
        user_id=user_id,
        name="Administrador",
        username=DEFAULT_ADMIN_USERNAME,
        password=DEFAULT_ADMIN_PASSWORD,
        role=UserRole.ADMIN.value,
        created_at_iso=created_at_iso or datetime.now(UTC).isoformat(),
        permissions=frozenset(page.value for page in PagePermission),
    )


def load_settings(config_path: Path) -> ConfigSettings:
    """Read ``config.ini`` with relative paths anchored at its directory."""

    config_path = config_path.expanduser().resolve()
    parser = read_config(config_path)
    return parse_settings(parser, base_path=config_path.parent)


def create_master_workbook(
    destination: Path,
    *,
    admin_id: str = DEFAULT_ADMIN_ID,
    policy: Policy = DEFAULT_POLICY,
    sheet_columns: Mapping[SheetName, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always creates a default "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name.value)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if SheetName.SETTINGS in sheet_columns:
        settings_sheet = workbook[SheetName.SETTINGS.value]
        for row in policy_to_rows(policy):
            settings_sheet.append(serialize_setting(row))

    if SheetName.USERS in sheet_columns:
        workbook[SheetName.USERS.value].append(serialize_user(default_admin(admin_id)))

    workbook.save(destination)
    log.info("Created master workbook at '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile``; ``DefaultSeller`` becomes the admin id."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        admin_id=settings.default_seller_id,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the POS master workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``pdv-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- POS Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
