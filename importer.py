"""Bulk import of albums from comma-separated text.

Each non-blank line is ``artist,title[,ignored...]``. There is no header row.
Lines with fewer than two fields are skipped; everything else is imported
as-is. All rows of one import share the owner and the release year given by
the caller, and are numbered after the owner's current highest local id in
file order. An import either lands completely or not at all.
"""
import io
import logging
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple

from album import Album
from catalog import Catalog

logger = logging.getLogger(__name__)


class ImportFormatError(ValueError):
    """The uploaded file could not be read as text."""


def parse_line(line: str) -> Optional[Tuple[str, str]]:
    """Return (artist, title) for an importable line, or None to skip it."""
    if not line or not line.strip():
        return None
    values = line.split(",")
    if len(values) < 2:
        return None
    return values[0].strip(), values[1].strip()


def read_rows(stream: BinaryIO, encoding: str = "utf-8-sig") -> Iterator[Tuple[str, str]]:
    """Yield parsed rows from a binary upload in file order."""
    text = io.TextIOWrapper(stream, encoding=encoding, newline=None)
    try:
        for line in text:
            row = parse_line(line.rstrip("\n"))
            if row is not None:
                yield row
    except UnicodeDecodeError as e:
        raise ImportFormatError(f"File is not valid {encoding} text: {e}") from e
    finally:
        # Leave the caller's stream open
        text.detach()


def import_albums(catalog: Catalog, rows: Iterable[Tuple[str, str]], owner: str, year: int) -> List[Album]:
    """Append the rows to `owner`'s collection and return the created albums."""
    if owner is None or not owner.strip():
        raise ValueError("Import owner cannot be empty.")
    pending = list(rows)
    albums = catalog.add_imported(owner, year, pending)
    logger.info(f"Imported {len(albums)} album(s) for {owner} (year {year})")
    return albums


def import_file(catalog: Catalog, stream: BinaryIO, owner: str, year: int) -> List[Album]:
    """Read an uploaded file and import it in one transaction."""
    return import_albums(catalog, read_rows(stream), owner, year)
