"""SQLite persistence of image histories."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from ..exceptions import AmbiguousResultError, NotFoundError, StorageError
from ..models import (
    ImageEntry,
    ImageHistory,
    ImageHistoryEntry,
    layers_from_dict,
    layers_to_dict,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS image(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS image_history_entry(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    image_id INTEGER NOT NULL,
    hash TEXT NOT NULL,
    tags TEXT NOT NULL,
    contents TEXT NOT NULL,
    inspect_info TEXT NOT NULL,
    FOREIGN KEY(image_id) REFERENCES image(id)
);

CREATE INDEX IF NOT EXISTS idx_image_history_entry_image_id
    ON image_history_entry(image_id);

CREATE INDEX IF NOT EXISTS idx_image_name ON image(name);
"""

# errors raised while encoding entries or talking to sqlite
_BACKEND_ERRORS = (sqlite3.Error, TypeError, ValueError)


class HistoryStore:
    """Persists image histories in a SQLite database.

    Every mutation runs in a single transaction; a failure rolls back all of
    its statements and is raised as a StorageError.
    """

    def __init__(
        self, db_path: Union[str, Path], log: Optional[logging.Logger] = None
    ) -> None:
        self.db_path = str(db_path)
        self.log = log or logger
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                self.db_path, isolation_level=None, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}") from e
        self.migrate()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "HistoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def migrate(self) -> None:
        """Create the tables if they do not exist yet."""
        try:
            with self._lock:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to migrate database {self.db_path}: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _insert_entry(
        self,
        conn: sqlite3.Connection,
        image_id: int,
        digest: str,
        entry: ImageHistoryEntry,
    ) -> ImageHistoryEntry:
        cur = conn.execute(
            "INSERT INTO image_history_entry(image_id, hash, tags, contents, inspect_info) "
            "VALUES (?, ?, ?, ?, ?)",
            (image_id, digest, *_encode_entry(entry)),
        )
        return replace(entry, id=cur.lastrowid)

    def _update_entry(
        self,
        conn: sqlite3.Connection,
        entry_id: int,
        image_id: int,
        digest: str,
        entry: ImageHistoryEntry,
    ) -> ImageHistoryEntry:
        cur = conn.execute(
            "UPDATE image_history_entry SET image_id = ?, hash = ?, tags = ?, "
            "contents = ?, inspect_info = ? WHERE id = ?",
            (image_id, digest, *_encode_entry(entry), entry_id),
        )
        if cur.rowcount == 0:
            raise StorageError(f"No image history entry with id {entry_id}")
        return replace(entry, id=entry_id)

    def _delete_entry(self, conn: sqlite3.Connection, entry_id: int) -> None:
        cur = conn.execute("DELETE FROM image_history_entry WHERE id = ?", (entry_id,))
        if cur.rowcount == 0:
            raise StorageError(f"No image history entry with id {entry_id}")

    def _delete_image(self, conn: sqlite3.Connection, image_id: int) -> None:
        conn.execute("DELETE FROM image_history_entry WHERE image_id = ?", (image_id,))
        cur = conn.execute("DELETE FROM image WHERE id = ?", (image_id,))
        if cur.rowcount == 0:
            raise StorageError(f"No image with id {image_id}")

    def _read_entries(
        self, conn: sqlite3.Connection, image_id: int
    ) -> Dict[str, ImageHistoryEntry]:
        rows = conn.execute(
            "SELECT id, hash, tags, contents, inspect_info FROM image_history_entry "
            "WHERE image_id = ?",
            (image_id,),
        ).fetchall()
        return {row["hash"]: _decode_entry(row) for row in rows}

    def create(self, history: ImageHistory) -> ImageHistory:
        """Persist a new image history.

        Returns:
            The history with the identities assigned by the database

        Raises:
            StorageError: If the history has an id already or the insert fails
        """
        if history.id is not None:
            raise StorageError(
                f"Image history {history.name} is already persisted with id {history.id}"
            )
        try:
            with self._transaction() as conn:
                cur = conn.execute("INSERT INTO image(name) VALUES (?)", (history.name,))
                image_id = cur.lastrowid
                entries = {
                    digest: self._insert_entry(conn, image_id, digest, entry)
                    for digest, entry in history.history.items()
                }
        except _BACKEND_ERRORS as e:
            raise StorageError(
                f"Failed to create image history {history.name}: {e}"
            ) from e

        self.log.debug(f"Created image history {history.name} with id {image_id}")
        return ImageHistory(name=history.name, history=entries, id=image_id)

    def update(self, history: ImageHistory) -> ImageHistory:
        """Make the persisted history equal to ``history``.

        Entries are matched by digest: persisted only digests are deleted,
        shared digests are updated keeping their persisted id and new digests
        are inserted.

        Raises:
            StorageError: If the history has no id or the update fails
        """
        if history.id is None:
            raise StorageError(
                f"Image history {history.name} must be created before it can be updated"
            )
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE image SET name = ? WHERE id = ?", (history.name, history.id)
                )
                if cur.rowcount == 0:
                    raise StorageError(f"No image with id {history.id}")

                persisted = self._read_entries(conn, history.id)
                for digest, old in persisted.items():
                    if digest not in history.history:
                        self._delete_entry(conn, old.id)

                entries: Dict[str, ImageHistoryEntry] = {}
                for digest, entry in history.history.items():
                    old = persisted.get(digest)
                    if old is None:
                        entries[digest] = self._insert_entry(conn, history.id, digest, entry)
                    else:
                        entries[digest] = self._update_entry(
                            conn, old.id, history.id, digest, entry
                        )
        except _BACKEND_ERRORS as e:
            raise StorageError(
                f"Failed to update image history {history.name}: {e}"
            ) from e

        self.log.debug(f"Updated image history {history.name} with id {history.id}")
        return ImageHistory(name=history.name, history=entries, id=history.id)

    def delete_by_name(self, name: str) -> None:
        """Delete the only image history called ``name``.

        Raises:
            NotFoundError: If there is no image with that name
            AmbiguousResultError: If more than one image has that name
            StorageError: If the delete fails
        """
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT id FROM image WHERE name = ?", (name,)
                ).fetchall()
                if not rows:
                    raise NotFoundError(f"No image with name {name}")
                if len(rows) > 1:
                    raise AmbiguousResultError(
                        f"Found {len(rows)} images with name {name}"
                    )
                self._delete_image(conn, rows[0]["id"])
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete image history {name}: {e}") from e

    def delete(self, history: ImageHistory) -> None:
        """Delete a persisted image history and all of its entries.

        Raises:
            StorageError: If the history has no id or the delete fails
        """
        if history.id is None:
            raise StorageError(f"Image history {history.name} has not been persisted")
        try:
            with self._transaction() as conn:
                self._delete_image(conn, history.id)
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to delete image history {history.name}: {e}"
            ) from e

    def read(self, name: str) -> List[ImageHistory]:
        """All image histories called ``name``, possibly none."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT id, name FROM image WHERE name = ? ORDER BY id", (name,)
                ).fetchall()
                return [
                    ImageHistory(
                        name=row["name"],
                        history=self._read_entries(self._conn, row["id"]),
                        id=row["id"],
                    )
                    for row in rows
                ]
        except _BACKEND_ERRORS as e:
            raise StorageError(f"Failed to read image history {name}: {e}") from e

    def read_by_id(self, image_id: int) -> ImageHistory:
        """Read a single image history.

        Raises:
            NotFoundError: If there is no image with ``image_id``
            StorageError: If the read fails
        """
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT id, name FROM image WHERE id = ?", (image_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"No image with id {image_id}")
                return ImageHistory(
                    name=row["name"],
                    history=self._read_entries(self._conn, row["id"]),
                    id=row["id"],
                )
        except _BACKEND_ERRORS as e:
            raise StorageError(f"Failed to read image history {image_id}: {e}") from e

    def read_all(self) -> List[ImageEntry]:
        """Every persisted image without its history."""
        try:
            with self._lock:
                rows = self._conn.execute("SELECT id, name FROM image ORDER BY id").fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read images: {e}") from e
        return [ImageEntry(id=row["id"], name=row["name"]) for row in rows]


def _encode_entry(entry: ImageHistoryEntry):
    return (
        json.dumps(list(entry.tags)),
        json.dumps(layers_to_dict(entry.contents)),
        json.dumps(entry.inspect_info),
    )


def _decode_entry(row: sqlite3.Row) -> ImageHistoryEntry:
    return ImageHistoryEntry(
        tags=json.loads(row["tags"]),
        contents=layers_from_dict(json.loads(row["contents"])),
        inspect_info=json.loads(row["inspect_info"]),
        id=row["id"],
    )
