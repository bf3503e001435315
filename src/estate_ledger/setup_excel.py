"""Bootstrap an empty estate workbook.

Usable as the ``estate-ledger-setup`` script or imported by tests. Sheet
headers come from :data:`estate_ledger.data_manager.SHEET_COLUMNS` and the
configuration is parsed by the data layer, so the bootstrap and the engine
read ``config.ini`` the same way.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from pathlib import Path
from typing import Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font, PatternFill
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, SEQUENCE_COUNTER, SheetName

HEADER_FONT = Font(bold=True)
HEADER_FILL = PatternFill(fill_type="solid", start_color="DDEBF7", end_color="DDEBF7")


def _write_header(worksheet, columns: Sequence[str]) -> None:
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index, value=column_name)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
    worksheet.freeze_panes = "A2"


def build_master_workbook(
    sheet_columns: Mapping[SheetName, Sequence[str]] = data_manager.SHEET_COLUMNS,
) -> Workbook:
    """Return an in-memory workbook with one headed sheet per entry.

    The ``Counters`` sheet starts with the creation sequence at zero; reference
    counters are added lazily the first time a prefix is issued.
    """

    workbook = openpyxl.Workbook()
    default_sheet = workbook.active
    for sheet_name, columns in sheet_columns.items():
        _write_header(workbook.create_sheet(title=sheet_name.value), columns)
    if default_sheet is not None:
        workbook.remove(default_sheet)

    if SheetName.COUNTERS in sheet_columns:
        workbook[SheetName.COUNTERS.value].append([SEQUENCE_COUNTER, 0])
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[SheetName, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write a fresh workbook to ``destination``.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)
    data_manager.save_workbook(build_master_workbook(sheet_columns), destination)
    log.info("Created estate workbook '%s' (%d sheets)", destination, len(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``.

    Raises:
        ValueError: If the configured schema version is not the one this
            release writes.
    """

    config_path = config_path.expanduser().resolve()
    settings = data_manager.parse_settings(
        data_manager.read_config(config_path), base_path=config_path.parent
    )
    if settings.schema_version != EXPECTED_SCHEMA_VERSION:
        raise ValueError(
            f"config.ini declares schema {settings.schema_version}, "
            f"this release writes {EXPECTED_SCHEMA_VERSION}"
        )
    log.info("Bootstrapping workbook for '%s'", settings.company_name)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="estate-ledger-setup", description="Create an empty estate ledger workbook"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(data_manager.CONFIG_FILE_NAME),
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument("--force", action="store_true", help="Replace an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        output_path = run_from_config(args.config, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}\nRun with --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError, ValueError, configparser.Error) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"Created estate workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
