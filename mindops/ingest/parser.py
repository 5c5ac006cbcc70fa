"""
Tabular Parser

Turns uploaded spreadsheet bytes into row documents and sanitizes text
before it is stored or embedded.

Supported: .csv, .tsv (csv module) and .xlsx (openpyxl).
"""

import csv
import io
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, List, Optional

from ..common.errors import InputValidationError
from ..common.schemas import SourceType

logger = logging.getLogger("mindops.ingest.parser")

CELL_DELIMITER = " | "

SUPPORTED_EXTENSIONS = {
    ".csv": SourceType.CSV,
    ".tsv": SourceType.TSV,
    ".xlsx": SourceType.XLSX,
}

# Literal escape sequences left behind by exporters, e.g. "\u0000", "\x1f"
_UNICODE_ESCAPE = re.compile(r"\\u[0-9a-fA-F]{4}")
_HEX_ESCAPE = re.compile(r"\\x[0-9a-fA-F]{2}")
_SIMPLE_ESCAPE = re.compile(r"\\[rntbf]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_NON_CHARACTERS = re.compile("[\uFFFE\uFFFF]")
_SURROGATES = re.compile("[\uD800-\uDFFF]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class ParsedDocument:
    """One non-empty spreadsheet row"""
    content: str
    row_index: int
    sheet_name: Optional[str] = None


def sanitize_text(text: str) -> str:
    """Strip escapes, control characters and broken code points; collapse whitespace."""
    if not text:
        return ""
    text = _UNICODE_ESCAPE.sub("", text)
    text = _HEX_ESCAPE.sub("", text)
    text = _SIMPLE_ESCAPE.sub(" ", text)
    text = text.replace("\\", "")
    text = text.replace("\0", "")
    text = _CONTROL_CHARS.sub("", text)
    text = _NON_CHARACTERS.sub("", text)
    text = _SURROGATES.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def source_type_for(filename: str) -> SourceType:
    ext = PurePath(filename or "").suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise InputValidationError(
            f"Unsupported file type '{ext or filename}'. Supported: "
            + ", ".join(sorted(SUPPORTED_EXTENSIONS))
        )
    return SUPPORTED_EXTENSIONS[ext]


def _serialize_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _row_content(cells) -> str:
    values = [_serialize_cell(c) for c in cells]
    return CELL_DELIMITER.join(v for v in values if v)


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("Upload is not UTF-8, decoding as latin-1")
        return data.decode("latin-1")


def _parse_delimited(data: bytes, delimiter: str) -> List[ParsedDocument]:
    reader = csv.reader(io.StringIO(_decode(data)), delimiter=delimiter)
    documents = []
    try:
        for index, row in enumerate(reader):
            content = _row_content(row)
            if content:
                documents.append(ParsedDocument(content=content, row_index=index))
    except csv.Error as e:
        raise InputValidationError(f"Invalid delimited file at line {reader.line_num}: {e}") from e
    return documents


def _parse_xlsx(data: bytes) -> List[ParsedDocument]:
    from openpyxl import load_workbook

    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        raise InputValidationError(f"Invalid XLSX file: {e}") from e

    documents = []
    try:
        for ws in wb.worksheets:
            for index, row in enumerate(ws.iter_rows(values_only=True)):
                content = _row_content(row)
                if content:
                    documents.append(
                        ParsedDocument(content=content, row_index=index, sheet_name=ws.title)
                    )
    finally:
        wb.close()
    return documents


def parse_table(filename: str, data: bytes) -> List[ParsedDocument]:
    """
    Parse an uploaded file into row documents.

    Raises:
        InputValidationError: unsupported extension or no non-empty rows
    """
    source_type = source_type_for(filename)
    if not data:
        raise InputValidationError("Uploaded file is empty")

    if source_type == SourceType.XLSX:
        documents = _parse_xlsx(data)
    elif source_type == SourceType.TSV:
        documents = _parse_delimited(data, "\t")
    else:
        documents = _parse_delimited(data, ",")

    if not documents:
        raise InputValidationError(f"No content found in {filename}")

    logger.info("Parsed %d rows from %s", len(documents), filename)
    return documents
