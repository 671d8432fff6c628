"""
Tabular Parser
Splits delimited text into rows of raw field strings. Knows nothing about orders.
"""
import csv
import io
from typing import List, Union

from services.errors import UndecodableInputError

DEFAULT_DELIMITER = ","


def decode_payload(content: Union[bytes, str]) -> str:
    """Decode an uploaded payload as UTF-8 (BOM tolerated)."""
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise UndecodableInputError(f"CSV payload is not valid UTF-8 text: {e}") from e


def _reader(text: str, delimiter: str):
    # strict=False: an unbalanced quote consumes to the end of input instead of raising
    return csv.reader(
        io.StringIO(text.replace("\x00", "")),
        delimiter=delimiter,
        quotechar='"',
        doublequote=True,
        strict=False,
    )


def parse_line(line: str, delimiter: str = DEFAULT_DELIMITER) -> List[str]:
    """Split one line into fields.

    Quoted fields may contain the delimiter; ``""`` inside quotes is a literal
    quote. Fields are returned untrimmed.
    """
    if line == "":
        return [""]
    for row in _reader(line, delimiter):
        return row
    return [""]


def parse_rows(text: str, delimiter: str = DEFAULT_DELIMITER) -> List[List[str]]:
    """Split a whole document into rows; blank lines are dropped.

    Quoted fields may span physical lines (Shopify notes columns do).
    """
    rows: List[List[str]] = []
    for row in _reader(text, delimiter):
        if not row or all(not cell.strip() for cell in row):
            continue
        rows.append(row)
    return rows
