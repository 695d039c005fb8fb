"""Static upload adapter: one-shot XLSX or CSV snapshots.

Uses openpyxl to read .xlsx files (read-only, cached formula values) and
polars to split CSV text.  Parsing is best-effort; anything that is not one
of the two accepted containers is rejected before a parser ever sees it.
"""

from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import Any

import polars as pl

from dataport.errors import SourceFormatError
from dataport.sources.base import FetchResult, RawRow, UploadStore

ACCEPTED_EXTENSIONS = (".xlsx", ".csv")

_OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


def sniff_format(data: bytes, filename: str) -> str:
    """Identify the container format of an upload.

    The filename extension must be one of :data:`ACCEPTED_EXTENSIONS` and the
    content must match it: an XLSX upload must be a zip package holding
    ``xl/workbook.xml``; a CSV upload must be UTF-8 text.

    Args:
        data: Raw upload bytes.
        filename: Original filename.

    Returns:
        ``"xlsx"`` or ``"csv"``.

    Raises:
        SourceFormatError: If the upload is empty, of another format, or its
            content does not match its extension.
    """
    if not data:
        raise SourceFormatError("Uploaded file is empty")

    ext = Path(filename).suffix.lower()
    if data.startswith(_OLE2_MAGIC) or ext == ".xls":
        raise SourceFormatError(
            "Legacy .xls workbooks are not supported; re-save the file as .xlsx"
        )
    if ext not in ACCEPTED_EXTENSIONS:
        raise SourceFormatError(
            f"Unsupported file type {ext or filename!r}: only .xlsx and .csv files are accepted"
        )

    if ext == ".xlsx":
        if not zipfile.is_zipfile(io.BytesIO(data)):
            raise SourceFormatError(f"{filename!r} is not a valid .xlsx package")
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            if "xl/workbook.xml" not in zf.namelist():
                raise SourceFormatError(f"{filename!r} is a zip file but not an .xlsx workbook")
        return "xlsx"

    if b"\x00" in data[:8192]:
        raise SourceFormatError(f"{filename!r} does not look like a text CSV file")
    try:
        data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise SourceFormatError(f"{filename!r} is not UTF-8 encoded text") from exc
    return "csv"


def _split_header(table: list[RawRow]) -> tuple[list[Any], list[RawRow]]:
    """Use the first non-empty row as the header row."""
    for idx, row in enumerate(table):
        if any(v is not None and str(v).strip() for v in row):
            return list(row), table[idx + 1:]
    return [], []


def read_xlsx_table(
    data: bytes,
    sheet: str | None = None,
    *,
    max_rows: int,
    max_cols: int,
) -> FetchResult:
    """Read one worksheet of an XLSX workbook as headers + positional rows.

    Args:
        data: Raw .xlsx bytes.
        sheet: Worksheet title; the first worksheet when None.
        max_rows: Maximum data rows to keep.
        max_cols: Maximum columns to keep.

    Returns:
        The fetch result, with truncation warnings.

    Raises:
        SourceFormatError: If openpyxl cannot read the workbook or the named
            sheet does not exist.
    """
    import openpyxl
    from openpyxl.utils.exceptions import InvalidFileException

    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise SourceFormatError(f"Could not read workbook: {exc}") from exc

    try:
        if sheet is not None:
            if sheet not in wb.sheetnames:
                raise SourceFormatError(
                    f"Sheet {sheet!r} not found. Available: {wb.sheetnames}"
                )
            ws = wb[sheet]
        else:
            if not wb.worksheets:
                raise SourceFormatError("Workbook contains no worksheets")
            ws = wb.worksheets[0]
        table = [list(r) for r in ws.iter_rows(values_only=True)]
        sheet_name = ws.title
    finally:
        wb.close()

    headers, rows = _split_header(table)
    return _apply_limits(headers, rows, max_rows, max_cols, label=f"Sheet {sheet_name!r}")


def read_csv_table(data: bytes, *, max_rows: int, max_cols: int) -> FetchResult:
    """Read CSV text as headers + positional string rows.

    No type inference is done here; every cell comes back as a string or
    None so that column typing stays with the inferencer.
    """
    try:
        df = pl.read_csv(
            io.BytesIO(data),
            has_header=False,
            infer_schema=False,
            truncate_ragged_lines=True,
            encoding="utf8-lossy",
        )
    except pl.exceptions.NoDataError:
        return FetchResult(headers=[], rows=[])
    except pl.exceptions.PolarsError as exc:
        raise SourceFormatError(f"Could not parse CSV: {exc}") from exc

    table = [list(r) for r in df.rows()]
    if table and isinstance(table[0][0], str):
        table[0][0] = table[0][0].lstrip("\ufeff")
    headers, rows = _split_header(table)
    return _apply_limits(headers, rows, max_rows, max_cols, label="CSV")


def _apply_limits(
    headers: list[Any],
    rows: list[RawRow],
    max_rows: int,
    max_cols: int,
    *,
    label: str,
) -> FetchResult:
    warnings: list[str] = []
    # Trailing blank header cells carry no column
    while headers and (headers[-1] is None or not str(headers[-1]).strip()):
        headers = headers[:-1]
    if len(headers) > max_cols:
        warnings.append(f"{label}: truncated from {len(headers)} to {max_cols} columns")
        headers = headers[:max_cols]
        rows = [r[:max_cols] for r in rows]
    if len(rows) > max_rows:
        warnings.append(f"{label}: truncated from {len(rows)} to {max_rows} rows")
        rows = rows[:max_rows]
    width = len(headers)
    rows = [_trim_trailing(r, width) for r in rows]
    return FetchResult(headers=headers, rows=rows, warnings=warnings)


def _trim_trailing(row: RawRow, width: int) -> RawRow:
    """Drop empty cells beyond the header width (openpyxl pads to max_column)."""
    if len(row) <= width:
        return row
    end = len(row)
    while end > width and (row[end - 1] is None or row[end - 1] == ""):
        end -= 1
    return row[:end]


class StaticUploadAdapter:
    """Reads an immutable uploaded artifact.

    Re-invoking :meth:`fetch_rows` returns the same rows for as long as the
    upload handle refers to the same bytes.
    """

    def __init__(
        self,
        uploads: UploadStore,
        handle: str,
        filename: str,
        sheet: str | None = None,
        *,
        max_rows: int = 100_000,
        max_cols: int = 200,
    ) -> None:
        self.uploads = uploads
        self.handle = handle
        self.filename = filename
        self.sheet = sheet
        self.max_rows = max_rows
        self.max_cols = max_cols

    def fetch_rows(self) -> FetchResult:
        data = self.uploads.read(self.handle)
        fmt = sniff_format(data, self.filename)
        if fmt == "xlsx":
            return read_xlsx_table(
                data, self.sheet, max_rows=self.max_rows, max_cols=self.max_cols
            )
        return read_csv_table(data, max_rows=self.max_rows, max_cols=self.max_cols)
