from __future__ import annotations

import csv
import io
import logging
from typing import Callable, Iterable, Sequence, Union

import pandas as pd

from settings import ColumnConfig

DELIMITER_CANDIDATES = ("\t", ",", ";")
CSV_SUFFIXES = (".csv",)
SPREADSHEET_SUFFIXES = (".xlsx", ".xls")
UPLOAD_ACCEPT = ".csv,.xlsx,.xls"
TEXT_ENCODINGS = ("utf-8-sig", "cp1252")

RANGE_MISSING_MESSAGE = "Bitte wählen Sie erst den Zeitraum aus."
UNSUPPORTED_FORMAT_MESSAGE = "Nicht unterstütztes Dateiformat. Bitte laden Sie eine CSV- oder Excel-Datei hoch."
CSV_ERROR_PREFIX = "Fehler beim Verarbeiten der CSV-Datei: "
READ_ERROR_PREFIX = "Fehler beim Lesen der Datei: "

Row = dict[str, str]
ContentSource = Union[bytes, Callable[[], bytes]]

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Base class for upload problems that are shown to the user as-is."""


class DateRangeMissingError(IngestionError):
    def __init__(self) -> None:
        super().__init__(RANGE_MISSING_MESSAGE)


class UnsupportedFormatError(IngestionError):
    def __init__(self, filename: str | None = None) -> None:
        super().__init__(UNSUPPORTED_FORMAT_MESSAGE)
        self.filename = filename


class CsvParseError(IngestionError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"{CSV_ERROR_PREFIX}{detail}")
        self.detail = detail


class FileReadError(IngestionError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"{READ_ERROR_PREFIX}{detail}")
        self.detail = detail


def normalize_text(value: object) -> str:
    if value is None:
        return ""
    if not isinstance(value, str) and pd.isna(value):
        return ""
    return str(value).strip()


def decode_text(content: bytes) -> str:
    for encoding in TEXT_ENCODINGS[:-1]:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            logger.debug("Content is not %s, trying next encoding", encoding)
    return content.decode(TEXT_ENCODINGS[-1], errors="replace")


def frame_to_rows(df: pd.DataFrame) -> list[Row]:
    df = df.fillna("")
    headers = [normalize_text(col) for col in df.columns]
    rows: list[Row] = []
    for values in df.itertuples(index=False, name=None):
        rows.append({header: normalize_text(value) for header, value in zip(headers, values)})
    return rows


def parse_csv_text(text: str, delimiter: str) -> list[Row]:
    try:
        df = pd.read_csv(
            io.StringIO(text),
            sep=delimiter,
            header=0,
            index_col=False,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
        )
    except pd.errors.EmptyDataError:
        return []
    return frame_to_rows(df)


def count_overflowing_rows(text: str, delimiter: str) -> int:
    """Rows with non-empty cells beyond the header width; the parser drops those cells."""
    width = None
    overflowing = 0
    for cells in csv.reader(io.StringIO(text), delimiter=delimiter):
        if not cells:
            continue
        if width is None:
            width = len(cells)
            continue
        if any(cell.strip() for cell in cells[width:]):
            overflowing += 1
    return overflowing


def _log_dropped_cells(text: str, delimiter: str) -> None:
    overflowing = count_overflowing_rows(text, delimiter)
    if overflowing:
        logger.warning(
            "%d rows have more cells than the header for delimiter %r; extra cells were dropped",
            overflowing,
            delimiter,
        )


def has_required_headers(rows: Sequence[Row], required_headers: Iterable[str]) -> bool:
    if not rows:
        return False
    first_row = rows[0]
    return all(normalize_text(first_row.get(header)) for header in required_headers)


def parse_csv_with_cascade(
    text: str,
    required_headers: Iterable[str],
    delimiters: Sequence[str] = DELIMITER_CANDIDATES,
) -> list[Row]:
    """Parse CSV text with the first delimiter whose first row carries the required headers.

    Candidates are tried in order. When none matches, the result of the last
    candidate is returned as it is, even if the required columns are missing.
    A parser error on an earlier candidate only rejects that candidate; on the
    last candidate it is reported as ``CsvParseError``.
    """
    if not delimiters:
        raise ValueError("At least one delimiter candidate is required")

    required = list(required_headers)
    last_index = len(delimiters) - 1
    for index, delimiter in enumerate(delimiters):
        is_last = index == last_index
        try:
            rows = parse_csv_text(text, delimiter)
        except (pd.errors.ParserError, csv.Error) as exc:
            if is_last:
                raise CsvParseError(str(exc)) from exc
            logger.debug("Delimiter %r rejected by parser: %s", delimiter, exc)
            continue

        if has_required_headers(rows, required):
            logger.info("CSV parsed with delimiter %r: %d rows", delimiter, len(rows))
            _log_dropped_cells(text, delimiter)
            return rows
        if is_last:
            logger.info(
                "No delimiter matched headers %s, using %r result with %d rows",
                ", ".join(required),
                delimiter,
                len(rows),
            )
            _log_dropped_cells(text, delimiter)
            return rows
        logger.debug("Delimiter %r did not yield headers %s", delimiter, ", ".join(required))
    return []


def read_spreadsheet(content: bytes) -> list[Row]:
    df = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=str, keep_default_na=False)
    rows = frame_to_rows(df)
    logger.info("Spreadsheet parsed from first sheet: %d rows", len(rows))
    return rows


def is_csv_name(filename: str) -> bool:
    return filename.lower().endswith(CSV_SUFFIXES)


def is_spreadsheet_name(filename: str) -> bool:
    return filename.lower().endswith(SPREADSHEET_SUFFIXES)


def _load_content(source: ContentSource) -> bytes:
    if callable(source):
        return source()
    return source


def read_rows(filename: str | None, source: ContentSource, columns: ColumnConfig | None = None) -> list[Row]:
    columns = columns or ColumnConfig()
    name = filename or ""
    if is_csv_name(name):
        return parse_csv_with_cascade(decode_text(_load_content(source)), columns.required_headers)
    if is_spreadsheet_name(name):
        return read_spreadsheet(_load_content(source))
    raise UnsupportedFormatError(name)


def process_upload(
    filename: str | None,
    source: ContentSource,
    start_date: str | None,
    end_date: str | None,
    on_rows: Callable[[list[Row]], None],
    on_error: Callable[[str], None],
    columns: ColumnConfig | None = None,
) -> None:
    """Read one uploaded file and hand the rows to ``on_rows``.

    Every failure is reported through ``on_error`` as a user-facing message and
    nothing is raised. Exactly one of the two callbacks is invoked.
    """
    try:
        if not start_date or not end_date:
            raise DateRangeMissingError()
        rows = read_rows(filename, source, columns)
    except IngestionError as exc:
        logger.warning("Upload %r rejected: %s", filename, exc)
        on_error(str(exc))
        return
    except Exception as exc:  # noqa: BLE001
        logger.exception("Upload %r could not be read", filename)
        on_error(str(FileReadError(str(exc))))
        return
    on_rows(rows)
