"""CSV byte stream <-> rows of text fields."""

import csv
import io

from .errors import EmptyInput

CLEANED_FILENAME = "clean_leads_lists.csv"


def parse_csv(data: bytes, encoding: str = "utf-8-sig") -> tuple[list[str], list[list[str]]]:
    """Split an uploaded CSV into (header, data rows).

    Blank lines are dropped. A BOM written by spreadsheet exports is
    stripped by the default encoding.
    """
    try:
        text = data.decode(encoding)
    except UnicodeDecodeError:
        text = data.decode("latin-1")

    reader = csv.reader(io.StringIO(text, newline=""))
    rows = [row for row in reader if any(field.strip() for field in row)]
    if not rows:
        raise EmptyInput()
    return rows[0], rows[1:]


def write_csv(rows: list[list[str]]) -> bytes:
    """Serialize rows (header first) back into CSV bytes."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\r\n")
    writer.writerows(rows)
    return buf.getvalue().encode("utf-8")
