import csv
import logging
from dataclasses import dataclass
from io import StringIO
from typing import List, Optional, Sequence

from bizdir.core.config import settings

logger = logging.getLogger(__name__)


class ImportInputError(ValueError):
    """Raised when an uploaded file cannot be turned into rows; no job is created."""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message if not detail else f"{message}: {detail}")


@dataclass
class ParsedCsv:
    headers: List[str]
    rows: List[List[str]]
    encoding: str

    @property
    def total_rows(self) -> int:
        return len(self.rows)


def decode_file_content(file_content: bytes, encodings: Optional[Sequence[str]] = None) -> tuple:
    """
    Decode upload bytes with the first encoding that accepts them.

    Returns:
        Tuple of (text, encoding_used)

    Raises:
        ImportInputError: If no configured encoding can decode the file
    """
    encodings = list(encodings or settings.csv_encodings)
    for encoding in encodings:
        try:
            return file_content.decode(encoding), encoding
        except (UnicodeDecodeError, LookupError):
            continue
    raise ImportInputError(
        "Invalid file content encoding",
        f"tried {', '.join(encodings)}",
    )


def parse_csv_upload(file_content: bytes, encodings: Optional[Sequence[str]] = None) -> ParsedCsv:
    """
    Parse an uploaded CSV into a header row and data rows.

    Cells are trimmed, blank lines are skipped and rows may have fewer or
    more cells than the header (extra cells are ignored by the mapper).

    Raises:
        ImportInputError: Empty file, undecodable bytes or malformed CSV
    """
    if not file_content:
        raise ImportInputError("CSV file is empty")

    text_content, encoding = decode_file_content(file_content, encodings)
    if "\x00" in text_content:
        raise ImportInputError("Failed to parse CSV file", "file contains NUL bytes; is it binary?")

    try:
        reader = csv.reader(StringIO(text_content, newline=""), strict=True)
        parsed = [
            [cell.strip() for cell in row]
            for row in reader
            if any(cell.strip() for cell in row)
        ]
    except csv.Error as exc:
        raise ImportInputError("Failed to parse CSV file", str(exc)) from exc

    if not parsed:
        raise ImportInputError("CSV file is empty")

    headers = parsed[0]
    rows = parsed[1:]
    if not any(headers):
        raise ImportInputError("Failed to parse CSV file", "header row has no column names")

    logger.info("Parsed CSV (%s) with %d data rows and columns: %s", encoding, len(rows), headers)
    return ParsedCsv(headers=headers, rows=rows, encoding=encoding)
