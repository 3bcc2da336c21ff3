"""Utility for initializing the Repair Desk master workbook.

The module doubles as a script (``repair-desk-setup``) and as a library used by
tests or other tooling, so the workbook bootstrap stays identical regardless
of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_CLOSED_STAGE_NAME, SheetName

# (StageID, StageName, Position, Color); the last entry is the terminal stage
# and takes its name from the configured closed-stage label.
DEFAULT_STAGES: Sequence[tuple[str, str, int, str]] = (
    ("ST1", "New", 1, "blue"),
    ("ST2", "Waiting for parts", 2, "orange"),
    ("ST3", "In progress", 3, "purple"),
    ("ST4", "Ready (notified)", 4, "green"),
    ("ST5", DEFAULT_CLOSED_STAGE_NAME, 5, "gray"),
)

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def build_master_workbook(
    *,
    closed_stage_name: str = DEFAULT_CLOSED_STAGE_NAME,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    stage_template: Sequence[tuple[str, str, int, str]] = DEFAULT_STAGES,
) -> Workbook:
    """Return an in-memory workbook with every sheet, header and default stage."""

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    stages_sheet = workbook[SheetName.STAGES.value]
    last_index = len(stage_template) - 1
    for index, (stage_id, name, position, color) in enumerate(stage_template):
        if index == last_index:
            name = closed_stage_name
        stages_sheet.append([stage_id, name, position, color])

    return workbook


def create_master_workbook(
    destination: Path,
    *,
    closed_stage_name: str = DEFAULT_CLOSED_STAGE_NAME,
    stage_template: Sequence[tuple[str, str, int, str]] = DEFAULT_STAGES,
    overwrite: bool = False,
) -> Path:
    """Create the Repair Desk master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook = build_master_workbook(closed_stage_name=closed_stage_name, stage_template=stage_template)
    workbook.save(destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini`` using its closed-stage label."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(
        settings.data_file,
        closed_stage_name=settings.closed_stage_name,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the Repair Desk data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Repair Desk Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
