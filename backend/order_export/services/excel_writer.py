"""
Excel Writer: bounded-memory, multi-sheet .xlsx rendering of orders.

Rows are rendered through the ordered column declarations and held in a
small window; when the window fills they are flushed to an xlsxwriter
workbook running in constant_memory mode, which streams each row to a
temp file on disk. Memory use therefore does not grow with the export.

Sheets are capped at max_rows_per_sheet data rows. Overflow continues on
"<base>_2", "<base>_3", ... with the header row repeated.

Usage:
    with ExcelExportWriter(max_rows_per_sheet=...) as writer:
        for order in orders:
            writer.write_row(order)
        writer.finalize(sink)

Leaving the with-block on any path releases the workbook and its scratch
files, whether or not finalize() ran.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Sequence, Tuple

import xlsxwriter

from order_export.core.constants import (
    AMOUNT_NUM_FORMAT,
    ELLIPSIS,
    HEADER_FORMAT,
    STREAM_BUFFER_SIZE,
    XLSX_MAX_CELL_LENGTH,
    XLSX_MAX_DATA_ROWS,
)
from order_export.core.exceptions import WriterClosedError
from order_export.schemas.order import Order
from order_export.services.columns import ORDER_COLUMNS, CellValue, ExportColumn

logger = logging.getLogger(__name__)


@dataclass
class SheetState:
    """Current sheet index (1-based) and its data-row count; header is row 0."""

    index: int = 0
    row_count: int = 0


def truncate_text(value: str, max_length: int) -> str:
    """Cap a cell at max_length characters, the last three being an ellipsis."""
    if len(value) <= max_length:
        return value
    return value[: max_length - len(ELLIPSIS)] + ELLIPSIS


class ExcelExportWriter:
    def __init__(
        self,
        columns: Sequence[ExportColumn] = ORDER_COLUMNS,
        max_rows_per_sheet: int = 1_000_000,
        window_rows: int = 100,
        max_cell_length: int = XLSX_MAX_CELL_LENGTH,
        sheet_name: str = "Orders",
        scratch_dir: Optional[str] = None,
    ):
        if not 1 <= max_rows_per_sheet <= XLSX_MAX_DATA_ROWS:
            raise ValueError(f"max_rows_per_sheet must be between 1 and {XLSX_MAX_DATA_ROWS}")
        if window_rows < 1:
            raise ValueError("window_rows must be at least 1")
        if not len(ELLIPSIS) < max_cell_length <= XLSX_MAX_CELL_LENGTH:
            raise ValueError(
                f"max_cell_length must be greater than {len(ELLIPSIS)} and at most {XLSX_MAX_CELL_LENGTH}"
            )

        self.columns: Tuple[ExportColumn, ...] = tuple(columns)
        self.max_rows_per_sheet = max_rows_per_sheet
        self.window_rows = window_rows
        self.max_cell_length = max_cell_length
        self.sheet_name = sheet_name
        self._scratch_parent = scratch_dir

        self.state = SheetState()
        self.rows_written = 0
        self.sheets: List[Tuple[str, int]] = []

        self._scratch_dir: Optional[str] = None
        self._path: Optional[str] = None
        self._workbook = None
        self._worksheet = None
        self._header_format = None
        self._amount_format = None
        self._window: List[Tuple[int, List[CellValue]]] = []
        self._workbook_closed = False
        self._released = False

    def __enter__(self) -> "ExcelExportWriter":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ── lifecycle ──

    def open(self) -> None:
        """Allocate the scratch directory and workbook, then open the first sheet."""
        if self._workbook is not None:
            return
        if self._released:
            raise WriterClosedError("Writer has already been released.")

        self._scratch_dir = tempfile.mkdtemp(prefix="order_export_", dir=self._scratch_parent)
        self._path = os.path.join(self._scratch_dir, "export.xlsx")
        try:
            self._workbook = xlsxwriter.Workbook(
                self._path,
                {
                    "constant_memory": True,
                    "tmpdir": self._scratch_dir,
                    "strings_to_numbers": False,
                    "strings_to_formulas": False,
                    "strings_to_urls": False,
                },
            )
            self._header_format = self._workbook.add_format(HEADER_FORMAT)
            self._amount_format = self._workbook.add_format({"num_format": AMOUNT_NUM_FORMAT})
            self.create_sheet(self.sheet_name)
        except Exception:
            self.close()
            raise

    def create_sheet(self, name: str) -> None:
        """Start a new sheet and write the header row immediately."""
        self._ensure_writable()
        # Rows still in the window belong to the sheet being left
        self._flush_window()
        if self.state.index:
            self.sheets.append((self._worksheet.name, self.state.row_count))

        worksheet = self._workbook.add_worksheet(name)
        for col_idx, column in enumerate(self.columns):
            worksheet.set_column(col_idx, col_idx, column.width)
            worksheet.write_string(0, col_idx, column.header, self._header_format)
        worksheet.freeze_panes(1, 0)

        self._worksheet = worksheet
        self.state = SheetState(index=self.state.index + 1, row_count=0)
        if self.state.index > 1:
            logger.info(f"Created new sheet: {name}")

    def write_row(self, order: Order) -> None:
        self._ensure_writable()
        if self.state.row_count >= self.max_rows_per_sheet:
            self.create_sheet(f"{self.sheet_name}_{self.state.index + 1}")

        values = [column.render(order) for column in self.columns]
        self.state.row_count += 1
        self._window.append((self.state.row_count, values))
        self.rows_written += 1

        if len(self._window) >= self.window_rows:
            self._flush_window()

    def finalize(self, sink: BinaryIO) -> int:
        """
        Flush everything, assemble the workbook and copy it into sink.
        Releases all writer resources whether or not it succeeds.
        Returns the number of bytes written to sink.
        """
        self._ensure_writable()
        try:
            self._flush_window()
            self.sheets.append((self._worksheet.name, self.state.row_count))
            self._close_workbook()

            size = os.path.getsize(self._path)
            with open(self._path, "rb") as fh:
                shutil.copyfileobj(fh, sink, STREAM_BUFFER_SIZE)
            sink.flush()
            return size
        finally:
            self.close()

    def close(self) -> None:
        """Release the workbook and scratch files. Safe to call repeatedly."""
        if self._released:
            return
        self._released = True
        self._window = []
        try:
            if self._workbook is not None and not self._workbook_closed:
                try:
                    self._close_workbook()
                except Exception as e:
                    # The export is already being abandoned; the original error wins
                    logger.warning(f"Failed to close abandoned workbook {self._path}: {e}")
        finally:
            if self._scratch_dir:
                shutil.rmtree(self._scratch_dir, ignore_errors=True)
            self._workbook = None
            self._worksheet = None

    # ── internals ──

    def _ensure_writable(self) -> None:
        if self._released or self._workbook_closed:
            raise WriterClosedError("Writer has already been finalized or released.")
        if self._workbook is None:
            self.open()

    def _close_workbook(self) -> None:
        self._workbook_closed = True
        self._workbook.close()

    def _flush_window(self) -> None:
        if not self._window:
            return
        worksheet = self._worksheet
        for row_idx, values in self._window:
            for col_idx, value in enumerate(values):
                self._write_cell(worksheet, row_idx, col_idx, self.columns[col_idx], value)
        self._window = []

    def _write_cell(self, worksheet, row_idx: int, col_idx: int, column: ExportColumn, value: CellValue) -> None:
        if value is None:
            # Absent optionals are empty text, never a null marker
            worksheet.write_string(row_idx, col_idx, "")
        elif column.kind == "amount":
            worksheet.write_number(row_idx, col_idx, value, self._amount_format)
        elif column.kind == "integer":
            worksheet.write_number(row_idx, col_idx, value)
        else:
            worksheet.write_string(row_idx, col_idx, truncate_text(str(value), self.max_cell_length))
