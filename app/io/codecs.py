"""Row codecs for export artifacts and uploaded import files.

Writers stream: rows are pulled from an iterator and written one at a time,
so a large export never sits in memory as a whole. Readers materialize the
file into a list of raw dict records and raise ParseError when the file
structure itself is broken (as opposed to a bad value in one row).
"""

import csv
import io
import json
import os
import zipfile
from datetime import date, datetime
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from app.jobs.models import ExportFormat

# Excel needs the BOM to open UTF-8 (Persian) text correctly
CSV_ENCODING = "utf-8-sig"

FILE_EXTENSIONS = {
    ExportFormat.CSV: "csv",
    ExportFormat.XLSX: "xlsx",
    ExportFormat.JSON: "json",
}

MEDIA_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ExportFormat.JSON: "application/json",
}


class ParseError(Exception):
    """The uploaded file cannot be read as a table of records."""


def format_for_filename(filename: str) -> Optional[ExportFormat]:
    ext = os.path.splitext(filename or "")[1].lower().lstrip(".")
    for fmt, known in FILE_EXTENSIONS.items():
        if ext == known:
            return fmt
    return None


def _cell(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def write_rows(
    fmt: ExportFormat,
    columns: Sequence[str],
    rows: Iterable[Dict[str, Any]],
    fileobj: BinaryIO,
) -> int:
    """Serialize rows to fileobj in the given format. Returns the row count."""
    if fmt == ExportFormat.CSV:
        return _write_csv(columns, rows, fileobj)
    if fmt == ExportFormat.JSON:
        return _write_json(columns, rows, fileobj)
    if fmt == ExportFormat.XLSX:
        return _write_xlsx(columns, rows, fileobj)
    raise ValueError(f"Unsupported format: {fmt}")


def _write_csv(columns, rows, fileobj) -> int:
    text = io.TextIOWrapper(fileobj, encoding=CSV_ENCODING, newline="", write_through=True)
    try:
        writer = csv.writer(text)
        writer.writerow(columns)
        count = 0
        for row in rows:
            writer.writerow(["" if row.get(c) is None else _cell(row.get(c)) for c in columns])
            count += 1
        text.flush()
        return count
    finally:
        # Leave the caller's binary file open
        text.detach()


def _write_json(columns, rows, fileobj) -> int:
    fileobj.write(b"[")
    count = 0
    for row in rows:
        record = {c: _cell(row.get(c)) for c in columns}
        prefix = b"\n  " if count == 0 else b",\n  "
        fileobj.write(prefix + json.dumps(record, ensure_ascii=False, default=str).encode("utf-8"))
        count += 1
    fileobj.write(b"\n]\n" if count else b"]\n")
    return count


def _write_xlsx(columns, rows, fileobj) -> int:
    workbook = Workbook(write_only=True)
    sheet = workbook.create_sheet("export")
    sheet.append(list(columns))
    count = 0
    for row in rows:
        sheet.append([_cell(row.get(c)) for c in columns])
        count += 1
    workbook.save(fileobj)
    return count


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def read_rows(path: str, fmt: ExportFormat = ExportFormat.CSV) -> List[Dict[Any, Any]]:
    """Parse an uploaded file into raw records, header row excluded."""
    if fmt == ExportFormat.CSV:
        return _read_csv(path)
    if fmt == ExportFormat.JSON:
        return _read_json(path)
    if fmt == ExportFormat.XLSX:
        return _read_xlsx(path)
    raise ParseError(f"Unsupported format: {fmt}")


def _check_header(header: Sequence[Any]) -> List[str]:
    names = [str(h).lstrip("\ufeff").strip().lower() if h is not None else "" for h in header]
    if not names or all(n == "" for n in names):
        raise ParseError("File has no header row")
    if any(n == "" for n in names):
        raise ParseError("Header row contains a blank column name")
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ParseError(f"Header row has duplicate columns: {', '.join(duplicates)}")
    return names


def _read_csv(path: str) -> List[Dict[Any, Any]]:
    try:
        with open(path, "r", encoding=CSV_ENCODING, newline="") as f:
            reader = csv.reader(f, strict=True)
            try:
                header = next(reader)
            except StopIteration:
                raise ParseError("File is empty")
            names = _check_header(header)
            records = []
            for values in reader:
                if not values or all(v.strip() == "" for v in values):
                    continue
                record: Dict[Any, Any] = dict(zip(names, values))
                for name in names[len(values):]:
                    record[name] = None
                if len(values) > len(names):
                    record[None] = values[len(names):]
                records.append(record)
            return records
    except UnicodeDecodeError as exc:
        raise ParseError(f"File is not valid UTF-8 text: {exc.reason}") from exc
    except csv.Error as exc:
        raise ParseError(f"Malformed CSV: {exc}") from exc


def _read_json(path: str) -> List[Dict[Any, Any]]:
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            data = json.load(f)
    except UnicodeDecodeError as exc:
        raise ParseError(f"File is not valid UTF-8 text: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed JSON: {exc.msg} at line {exc.lineno}") from exc
    if not isinstance(data, list):
        raise ParseError("JSON import must be an array of objects")
    # Non-object entries are row-level problems, reported by the validator
    return list(data)


def _read_xlsx(path: str) -> List[Dict[Any, Any]]:
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise ParseError(f"Unreadable workbook: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        rows = sheet.iter_rows(values_only=True)
        try:
            header = next(rows)
        except StopIteration:
            raise ParseError("Workbook is empty")
        names = _check_header(header)
        records = []
        for values in rows:
            if all(v is None or str(v).strip() == "" for v in values):
                continue
            record: Dict[Any, Any] = dict(zip(names, values))
            surplus = [v for v in values[len(names):] if v is not None]
            if surplus:
                record[None] = surplus
            records.append(record)
        return records
    finally:
        workbook.close()
