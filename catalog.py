import logging
import sqlite3
from typing import Iterable, List, Optional, Sequence, Tuple

from album import Album
from covers import CoverStorage, CoverUpload
from database import get_db_connection, initialize_database, write_transaction
from policy import can_modify, normalize_lent_to

logger = logging.getLogger(__name__)

OWNER_ALL = "ALL"
OWNER_BORROWED_BY_ME = "BORROWED_BY_ME"

_ALBUM_COLUMNS = "id, local_id, artist, title, release_year, owner, cover_file_name, lent_to"


class _Unset:
    """Marks an update field the caller did not supply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


class CatalogError(Exception):
    """A storage operation failed."""


class MissingIdentityError(CatalogError):
    pass


class AlbumNotFoundError(CatalogError):
    pass


class PermissionDeniedError(CatalogError):
    pass


class Catalog:
    """Per-owner album collections stored in SQLite."""

    def __init__(self, db_file: Optional[str] = None, covers: Optional[CoverStorage] = None,
                 admins: Iterable[str] = (), delete_replaced_covers: bool = False) -> None:
        self.db_file = db_file
        self.covers = covers
        self.admins = list(admins)
        self.delete_replaced_covers = delete_replaced_covers
        initialize_database(self.db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Queries ------------------------- #
    def list_albums(self, search: Optional[str] = None, owner: Optional[str] = None,
                    requester: Optional[str] = None) -> List[Album]:
        """List albums ordered by owner, then local id.

        `search` is a case-insensitive substring match on title or artist.
        `owner` is ALL (or blank) for everyone, BORROWED_BY_ME for albums lent
        to `requester`, or an exact owner name.
        """
        clauses: List[str] = []
        params: List[object] = []

        if search and search.strip():
            clauses.append("(instr(py_lower(title), ?) > 0 OR instr(py_lower(artist), ?) > 0)")
            needle = search.casefold()
            params.extend([needle, needle])

        if owner and owner.strip() and owner != OWNER_ALL:
            if owner == OWNER_BORROWED_BY_ME:
                if not requester:
                    raise MissingIdentityError("Listing borrowed albums requires a current user.")
                clauses.append("lent_to = ?")
                params.append(requester)
            else:
                clauses.append("owner = ?")
                params.append(owner)

        sql = f"SELECT {_ALBUM_COLUMNS} FROM albums"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY owner, local_id, id"

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
            return [Album.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_album(self, album_id: int) -> Optional[Album]:
        conn = self._connect()
        try:
            return self._fetch(conn, album_id)
        finally:
            conn.close()

    def count_albums(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM albums").fetchone()[0]
        finally:
            conn.close()

    @staticmethod
    def next_local_id(conn: sqlite3.Connection, owner: str) -> int:
        """Current per-owner maximum plus one, starting at 1."""
        row = conn.execute("SELECT MAX(local_id) FROM albums WHERE owner = ?", (owner,)).fetchone()
        return (row[0] or 0) + 1

    # ------------------------- Writes ------------------------- #
    def create_album(self, title: str, artist: str, release_year: int, owner: str,
                     cover: Optional[CoverUpload] = None, lent_to: Optional[str] = None) -> Album:
        """Add an album to `owner`'s collection and return it with its ids assigned."""
        for name, value in (("title", title), ("artist", artist), ("owner", owner)):
            if value is None or not value.strip():
                raise ValueError(f"Album {name} cannot be empty.")

        cover_file_name = self._store_cover(cover)
        album = Album(title=title, artist=artist, release_year=release_year, owner=owner,
                      cover_file_name=cover_file_name, lent_to=normalize_lent_to(lent_to))

        conn = self._connect()
        try:
            with write_transaction(conn):
                album.local_id = self.next_local_id(conn, owner)
                cursor = conn.execute(
                    "INSERT INTO albums (local_id, artist, title, release_year, owner, cover_file_name, lent_to) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (album.local_id, album.artist, album.title, album.release_year, album.owner,
                     album.cover_file_name, album.lent_to),
                )
                album.id = cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"Failed to create album for {owner}: {e}", exc_info=True)
            self._discard_cover(cover_file_name)
            raise CatalogError(str(e)) from e
        finally:
            conn.close()

        logger.info(f"Created album {album.id} (#{album.local_id}) for {owner}")
        return album

    def update_album(self, album_id: int, requester: Optional[str], *, release_year: int,
                     lent_to: Optional[str], title=UNSET, artist=UNSET,
                     cover: Optional[CoverUpload] = None) -> Album:
        """Update an album in place.

        Title and artist change only when supplied; release year and loan
        status are always overwritten. A new cover replaces the reference to
        the old one, whose file is kept unless `delete_replaced_covers` is set.
        The lookup, permission check and write share one write transaction.
        """
        if not requester:
            raise MissingIdentityError("The current user is required to update an album.")
        for name, value in (("title", title), ("artist", artist)):
            if value is not UNSET and (value is None or not value.strip()):
                raise ValueError(f"Album {name} cannot be empty.")

        new_cover = None
        conn = self._connect()
        try:
            with write_transaction(conn):
                album = self._fetch(conn, album_id)
                if album is None:
                    raise AlbumNotFoundError(f"Album {album_id} not found.")
                self._check_permission(album, requester, "update")

                previous_cover = album.cover_file_name
                if title is not UNSET:
                    album.title = title
                if artist is not UNSET:
                    album.artist = artist
                album.release_year = release_year
                album.lent_to = normalize_lent_to(lent_to)

                new_cover = self._store_cover(cover)
                if new_cover:
                    album.cover_file_name = new_cover

                cursor = conn.execute(
                    "UPDATE albums SET title = ?, artist = ?, release_year = ?, lent_to = ?, cover_file_name = ? "
                    "WHERE id = ?",
                    (album.title, album.artist, album.release_year, album.lent_to, album.cover_file_name, album_id),
                )
                if cursor.rowcount == 0:
                    raise AlbumNotFoundError(f"Album {album_id} not found.")
        except sqlite3.Error as e:
            logger.error(f"Failed to update album {album_id}: {e}", exc_info=True)
            self._discard_cover(new_cover)
            raise CatalogError(str(e)) from e
        except CatalogError:
            self._discard_cover(new_cover)
            raise
        finally:
            conn.close()

        if new_cover and previous_cover:
            if self.delete_replaced_covers:
                self.covers.delete(previous_cover)
            else:
                logger.info(f"Album {album_id} cover replaced; previous file {previous_cover} retained")

        logger.info(f"Album {album_id} updated by {requester}")
        return album

    def delete_album(self, album_id: int, requester: Optional[str]) -> Album:
        """Remove an album and, best effort, its cover file. Returns the removed album."""
        if not requester:
            raise MissingIdentityError("The current user is required to delete an album.")

        conn = self._connect()
        try:
            with write_transaction(conn):
                album = self._fetch(conn, album_id)
                if album is None:
                    raise AlbumNotFoundError(f"Album {album_id} not found.")
                self._check_permission(album, requester, "delete")
                conn.execute("DELETE FROM albums WHERE id = ?", (album_id,))
        except sqlite3.Error as e:
            logger.error(f"Failed to delete album {album_id}: {e}", exc_info=True)
            raise CatalogError(str(e)) from e
        finally:
            conn.close()

        if album.cover_file_name and self.covers is not None:
            self.covers.delete(album.cover_file_name)

        logger.info(f"Album {album_id} deleted by {requester}")
        return album

    def add_imported(self, owner: str, release_year: int, rows: Sequence[Tuple[str, str]]) -> List[Album]:
        """Insert (artist, title) rows for `owner` in one transaction, numbering them in order."""
        albums: List[Album] = []
        conn = self._connect()
        try:
            with write_transaction(conn):
                local_id = self.next_local_id(conn, owner) - 1
                for artist, title in rows:
                    local_id += 1
                    album = Album(title=title, artist=artist, release_year=release_year,
                                  owner=owner, local_id=local_id)
                    cursor = conn.execute(
                        "INSERT INTO albums (local_id, artist, title, release_year, owner, cover_file_name, lent_to) "
                        "VALUES (?, ?, ?, ?, ?, NULL, NULL)",
                        (album.local_id, album.artist, album.title, album.release_year, album.owner),
                    )
                    album.id = cursor.lastrowid
                    albums.append(album)
        except sqlite3.Error as e:
            logger.error(f"Import for {owner} rolled back: {e}", exc_info=True)
            raise CatalogError(str(e)) from e
        finally:
            conn.close()
        return albums

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _fetch(conn: sqlite3.Connection, album_id: int) -> Optional[Album]:
        row = conn.execute(f"SELECT {_ALBUM_COLUMNS} FROM albums WHERE id = ?", (album_id,)).fetchone()
        return Album.from_dict(dict(row)) if row else None

    def _check_permission(self, album: Album, requester: str, action: str) -> None:
        if not can_modify(album.owner, requester, self.admins):
            logger.warning(f"{requester} may not {action} album {album.id} owned by {album.owner}")
            raise PermissionDeniedError(f"Only {album.owner} or an admin can {action} this album.")

    def _store_cover(self, cover: Optional[CoverUpload]) -> Optional[str]:
        if cover is None or not cover.data:
            return None
        if self.covers is None:
            raise CatalogError("Cover storage is not configured.")
        try:
            return self.covers.save(cover)
        except OSError as e:
            raise CatalogError(f"Could not store cover image: {e}") from e

    def _discard_cover(self, file_name: Optional[str]) -> None:
        if file_name and self.covers is not None:
            self.covers.delete(file_name)

    def close(self) -> None:
        """Connections are opened per operation; nothing is held open."""
        return None
