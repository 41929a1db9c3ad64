"""
Workbook mirror of closed time entries.

One sheet per month (``YYYY-MM``), a header row, then one row per entry
keyed by the entry id in column A. Writing the same entry twice updates its
row instead of appending a second one.
"""

import datetime
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.worksheet.worksheet import Worksheet

logger = logging.getLogger(__name__)

HEADER = [
    "Entry ID",
    "Date",
    "Team",
    "Project",
    "Issue",
    "Issue Description",
    "Comment",
    "Hours",
    "Assignee",
    "Start",
    "End",
]


def monthly_sheet_name(day: datetime.date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


class WorkbookMirror:
    """
    Keeps an .xlsx file in sync with closed entries.

    The workbook is loaded and saved on every call; the mirror is written
    rarely (once per closed entry) and the file stays small.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Workbook:
        if self.path.exists():
            return load_workbook(self.path)
        workbook = Workbook()
        # Drop the default empty sheet, monthly sheets are created on demand
        workbook.remove(workbook.active)
        return workbook

    def _save(self, workbook: Workbook) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(self.path)

    @staticmethod
    def _ensure_sheet(workbook: Workbook, name: str) -> Worksheet:
        if name in workbook.sheetnames:
            return workbook[name]

        sheet = workbook.create_sheet(title=name)
        sheet.append(HEADER)
        for cell in sheet[1]:
            cell.font = Font(bold=True, color="FFFFFF")
            cell.fill = PatternFill("solid", fgColor="4472C4")
        sheet.freeze_panes = "A2"
        logger.info(f"Created sheet {name}")
        return sheet

    @staticmethod
    def _row_index(sheet: Worksheet, entry_id: str) -> Optional[int]:
        # Row 1 is the header
        for row_idx in range(2, sheet.max_row + 1):
            if sheet.cell(row=row_idx, column=1).value == entry_id:
                return row_idx
        return None

    def find_row(self, entry_id: str) -> Optional[Tuple[str, List]]:
        """Return (sheet name, row values) for an entry, if mirrored"""
        if not self.path.exists():
            return None
        workbook = load_workbook(self.path, read_only=True)
        try:
            for sheet in workbook.worksheets:
                for values in sheet.iter_rows(min_row=2, values_only=True):
                    if values and values[0] == entry_id:
                        return sheet.title, list(values)
            return None
        finally:
            workbook.close()

    def upsert_row(self, day: datetime.date, values: Sequence) -> str:
        """
        Write the row for ``values[0]`` (the entry id) on the sheet for ``day``.

        Returns "updated" or "appended".
        """
        entry_id = values[0]
        workbook = self._load()
        target = self._ensure_sheet(workbook, monthly_sheet_name(day))

        # An edit may have moved the entry to another month
        for sheet in workbook.worksheets:
            if sheet.title == target.title:
                continue
            stale = self._row_index(sheet, entry_id)
            if stale is not None:
                sheet.delete_rows(stale)

        row_idx = self._row_index(target, entry_id)
        if row_idx is None:
            target.append(list(values))
            outcome = "appended"
        else:
            for col_idx, value in enumerate(values, start=1):
                target.cell(row=row_idx, column=col_idx, value=value)
            outcome = "updated"

        self._save(workbook)
        return outcome

    def delete_row(self, entry_id: str) -> bool:
        """Remove the entry's row wherever it is. Returns False if not found."""
        if not self.path.exists():
            return False
        workbook = self._load()
        removed = False
        for sheet in workbook.worksheets:
            row_idx = self._row_index(sheet, entry_id)
            if row_idx is not None:
                sheet.delete_rows(row_idx)
                removed = True
        if removed:
            self._save(workbook)
        return removed

    def row_count(self, day: datetime.date) -> int:
        """Number of data rows on the sheet for ``day``'s month"""
        if not self.path.exists():
            return 0
        workbook = load_workbook(self.path, read_only=True)
        try:
            name = monthly_sheet_name(day)
            if name not in workbook.sheetnames:
                return 0
            return sum(
                1 for values in workbook[name].iter_rows(min_row=2, values_only=True)
                if values and values[0] is not None
            )
        finally:
            workbook.close()
