"""Source rows and the links CSV loader."""

import csv
from dataclasses import dataclass
from pathlib import Path

from uvify.errors import CsvFormatError

# Column names per number of QR placements.
LINK_COLUMNS = {
    1: ("links",),
    2: ("links1", "links2"),
}


@dataclass(frozen=True)
class SourceRow:
    """One record: its index in the source and one link slot per placement.

    A slot is a non-empty, trimmed string or ``None`` when the record has no
    link for that placement.
    """

    index: int
    links: tuple[str | None, ...]

    @property
    def primary_link(self) -> str | None:
        for link in self.links:
            if link:
                return link
        return None

    @classmethod
    def from_values(cls, index: int, values) -> "SourceRow | None":
        """Build a row from raw cell values, or ``None`` if no link is usable."""
        links = tuple((str(v).strip() or None) if v is not None else None for v in values)
        if not any(links):
            return None
        return cls(index=index, links=links)


def required_columns(qr_count: int) -> tuple[str, ...]:
    try:
        return LINK_COLUMNS[qr_count]
    except KeyError:
        raise ValueError(f"qr_count must be 1 or 2, got {qr_count}") from None


def load_rows_csv(csv_path: str | Path, qr_count: int = 1) -> list[SourceRow]:
    """Read link rows from a CSV file with a header line.

    One placement reads the ``links`` column, two placements read ``links1``
    and ``links2``. Cells are trimmed; rows without any usable link are
    dropped. Row indices count data lines from 0, including dropped ones.

    Raises:
        FileNotFoundError: If the CSV file doesn't exist.
        CsvFormatError: If the file cannot be decoded or a column is missing.
    """
    columns = required_columns(qr_count)
    path = Path(csv_path)
    if not path.exists():
        raise FileNotFoundError(f"CSV not found: {path}")

    rows: list[SourceRow] = []
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            fields = [str(h).strip() for h in (reader.fieldnames or []) if h is not None]
            missing = [c for c in columns if c not in fields]
            if missing:
                raise CsvFormatError(f"CSV must have column(s): {', '.join(columns)}")
            for index, record in enumerate(reader):
                record = {str(k).strip(): v for k, v in record.items() if k is not None}
                row = SourceRow.from_values(index, (record.get(c) for c in columns))
                if row is not None:
                    rows.append(row)
    except (UnicodeDecodeError, csv.Error) as e:
        raise CsvFormatError(f"Could not parse CSV '{path}': {e}") from e
    return rows
