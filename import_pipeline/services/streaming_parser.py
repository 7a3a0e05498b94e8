"""
Streaming parser for CSV and Excel import files.

Rows are produced one at a time from the uploaded bytes: CSV is decoded
incrementally with the csv module and workbooks are read with openpyxl in
read-only mode, so memory stays flat regardless of file size. The parser
finds the header row, maps header cells to canonical fields through the
table type's alias table, and yields a ParsedRow per data row.
"""
import csv
import io
import os
import re
import zipfile
from typing import Any, Dict, Iterator, List, Optional, Sequence

import openpyxl
import structlog
from openpyxl.utils.exceptions import InvalidFileException

from import_pipeline.exceptions import FileParseError, HeaderNotFoundError
from import_pipeline.models.job import ParsedRow
from import_pipeline.table_types import (
    CanonicalField, FieldKind, TableSpec, TableType, field_kind, field_label, field_max_length,
    get_table_spec,
)
from import_pipeline.utils.headers import cell_to_text, sanitize_text
from import_pipeline.utils.numeric import parse_decimal, parse_int

logger = structlog.get_logger(__name__)

HEADER_SCAN_ROWS = 20
MIN_HEADER_MATCHES = 2

CSV_EXTENSIONS = {".csv", ".txt"}
EXCEL_EXTENSIONS = {".xlsx", ".xlsm"}
SUPPORTED_EXTENSIONS = CSV_EXTENSIONS | EXCEL_EXTENSIONS

CSV_DELIMITERS = ",;\t"
SNIFF_SAMPLE_BYTES = 64 * 1024

# "Untuk Nomor TO|Seq: 2508-091  -01", "No. TO: TO-001"
_TO_NUMBER_LABEL = re.compile(
    r"\b(?:untuk\s+)?(?:nomor|no\.?)\s*to\b(?:\s*\|\s*seq)?\s*:?\s*(.*)$",
    re.IGNORECASE,
)

# Lower bound and fallback for integer fields when a cell is unreadable
_INTEGER_RULES = {
    CanonicalField.QTY: (1, 1),
    CanonicalField.QTY_SYSTEM: (0, 0),
    CanonicalField.QTY_ACTUAL: (0, 0),
}


def file_extension(file_name: str) -> str:
    return os.path.splitext(file_name or "")[1].lower()


class StreamingParser:
    """
    Parse one import file for one table type.

    ``parse()`` may be called more than once; each call re-reads the file
    from the start. After the header is found, ``header_row`` holds its
    1-based position and ``preamble`` holds any values extracted from the
    rows above it. Text cells longer than their target column are cut to
    fit and counted in ``truncated_cells``.
    """

    def __init__(
        self,
        file_bytes: bytes,
        file_name: str,
        table_type: "TableType | str",
        header_scan_rows: int = HEADER_SCAN_ROWS,
    ):
        self.file_bytes = file_bytes
        self.file_name = file_name
        self.spec: TableSpec = get_table_spec(table_type)
        self.header_scan_rows = header_scan_rows
        self.extension = file_extension(file_name)

        self.header_row: Optional[int] = None
        self.column_map: Dict[int, CanonicalField] = {}
        self.preamble: Dict[CanonicalField, str] = {}
        self.truncated_cells = 0

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def parse(self) -> Iterator[ParsedRow]:
        """
        Yield parsed data rows in file order.

        row_number counts from the header: the first line below it is 1.
        Skipped blank and footer rows keep their slot, so numbers always
        point back at the same line of the file.

        Raises:
            FileParseError: If the file cannot be decoded
            HeaderNotFoundError: If no header row is found in the scan window
        """
        self.header_row = None
        self.column_map = {}
        self.preamble = {}
        self.truncated_cells = 0

        skipped = 0
        for position, cells in enumerate(self._iter_raw_rows(), start=1):
            if self.header_row is None:
                if position > self.header_scan_rows:
                    break
                column_map = self._match_header(cells)
                if len(column_map) >= MIN_HEADER_MATCHES:
                    self.header_row = position
                    self.column_map = column_map
                    logger.debug(
                        "header_detected",
                        file_name=self.file_name,
                        row=position,
                        columns=[c.value for c in column_map.values()],
                    )
                else:
                    self._scan_preamble(cells)
                continue

            row = self._process_row(cells, position - self.header_row)
            if row is None:
                skipped += 1
                continue
            yield row

        if self.header_row is None:
            raise HeaderNotFoundError(
                self.spec.table_type.value,
                self.spec.expected_columns(),
                self.header_scan_rows,
            )

        logger.debug(
            "parse_finished",
            file_name=self.file_name,
            skipped_rows=skipped,
            truncated_cells=self.truncated_cells,
        )

    def close(self) -> None:
        """Drop the file contents. parse() cannot be called afterwards."""
        self.file_bytes = None

    # =========================================================================
    # RAW ROW SOURCES
    # =========================================================================

    def _iter_raw_rows(self) -> Iterator[Sequence[Any]]:
        if self.extension in EXCEL_EXTENSIONS:
            return self._iter_excel_rows()
        return self._iter_csv_rows()

    def _sniff_delimiter(self) -> str:
        sample = self.file_bytes[:SNIFF_SAMPLE_BYTES].decode("utf-8-sig", errors="replace")
        try:
            return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
        except csv.Error:
            return ","

    def _iter_csv_rows(self) -> Iterator[List[str]]:
        delimiter = self._sniff_delimiter()
        stream = io.TextIOWrapper(
            io.BytesIO(self.file_bytes),
            encoding="utf-8-sig",
            errors="replace",
            newline="",
        )
        reader = csv.reader(stream, delimiter=delimiter)
        try:
            for record in reader:
                yield record
        except csv.Error as e:
            raise FileParseError(
                f"Malformed CSV in {self.file_name!r} near line {reader.line_num}: {e}"
            )
        finally:
            stream.close()

    def _iter_excel_rows(self) -> Iterator[Sequence[Any]]:
        try:
            wb = openpyxl.load_workbook(io.BytesIO(self.file_bytes), read_only=True, data_only=True)
        except InvalidFileException as e:
            raise FileParseError(f"Invalid Excel file format: {e}")
        except zipfile.BadZipFile:
            raise FileParseError(
                "Excel file appears to be corrupted (invalid zip structure). "
                "Please re-export from Excel or convert to CSV."
            )
        except (KeyError, OSError, ValueError) as e:
            raise FileParseError(f"Failed to open Excel file: {type(e).__name__}: {e}")

        try:
            if not wb.worksheets:
                raise FileParseError("Excel file has no worksheets")
            ws = wb.worksheets[0]
            for cells in ws.iter_rows(values_only=True):
                yield cells
        finally:
            wb.close()

    # =========================================================================
    # HEADER AND PREAMBLE
    # =========================================================================

    def _match_header(self, cells: Sequence[Any]) -> Dict[int, CanonicalField]:
        column_map: Dict[int, CanonicalField] = {}
        for index, cell in enumerate(cells):
            canonical = self.spec.resolve_alias(cell)
            if canonical is not None and canonical not in column_map.values():
                column_map[index] = canonical
        return column_map

    def _looks_like_header(self, cells: Sequence[Any]) -> bool:
        matches = 0
        for index, canonical in self.column_map.items():
            if index < len(cells) and self.spec.resolve_alias(cells[index]) == canonical:
                matches += 1
        return matches >= MIN_HEADER_MATCHES

    def _scan_preamble(self, cells: Sequence[Any]) -> None:
        if CanonicalField.TO_NUMBER not in self.spec.staging_fields:
            return
        if CanonicalField.TO_NUMBER in self.preamble:
            return

        texts = [cell_to_text(c) for c in cells]
        for index, text in enumerate(texts):
            if not text:
                continue
            match = _TO_NUMBER_LABEL.search(text)
            if not match:
                continue
            value = match.group(1).strip()
            if not value:
                # Label and value in separate cells
                value = next((t for t in texts[index + 1:] if t), "")
            value = sanitize_text(re.sub(r"\s+", "", value), field_max_length(CanonicalField.TO_NUMBER))
            if value:
                self.preamble[CanonicalField.TO_NUMBER] = value
                logger.info("preamble_to_number_found", file_name=self.file_name, to_number=value)
                return

    # =========================================================================
    # ROW PROCESSING
    # =========================================================================

    def _process_row(self, cells: Sequence[Any], row_number: int) -> Optional[ParsedRow]:
        raw: Dict[CanonicalField, Any] = {}
        for index, canonical in self.column_map.items():
            if index >= len(cells):
                continue
            value = cells[index]
            if cell_to_text(value) is not None:
                raw[canonical] = value

        # Blank lines and footers with nothing under a mapped column
        if not raw:
            return None
        # Headers repeated after page breaks
        if self._looks_like_header(cells):
            return None

        data: Dict[CanonicalField, str] = {}
        for canonical, value in raw.items():
            converted = self._convert(canonical, value)
            if converted is not None:
                data[canonical] = converted

        for canonical, default in self.spec.defaults.items():
            data.setdefault(canonical, default)
        for canonical, value in self.preamble.items():
            data.setdefault(canonical, value)

        errors: List[str] = []
        if not any(data.get(f) for f in self.spec.identifying_fields):
            labels = ", ".join(field_label(f) for f in self.spec.identifying_fields)
            errors.append(f"Row {row_number}: Missing required identifier: {labels}")

        return ParsedRow(row_number=row_number, data=data, is_valid=not errors, errors=errors)

    def _convert(self, canonical: CanonicalField, value: Any) -> Optional[str]:
        kind = field_kind(canonical)
        if kind == FieldKind.INTEGER:
            minimum, default = _INTEGER_RULES.get(canonical, (None, None))
            number = parse_int(value, default=default, minimum=minimum)
            return None if number is None else str(number)
        if kind == FieldKind.DECIMAL:
            price = parse_decimal(value)
            return None if price is None else str(price)
        text = cell_to_text(value)
        sanitized = sanitize_text(text, field_max_length(canonical))
        if sanitized != text:
            self.truncated_cells += 1
        return sanitized
