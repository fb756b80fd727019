"""
Local SQLite key-value store.

Every piece of persisted state (the shared identity list, the remembered session and one
snapshot per user) lives under a string key in a single ``store`` table. The schema is
verified when the store is opened and recreated if it is missing or damaged.
"""

import datetime
import enum
import json
import logging
import pathlib
import sqlite3
import threading
import time
from typing import Any, Optional, List, Union

from ..status import status

IDENTITY_LIST_KEY: str = 'identity_list'
SESSION_KEY: str = 'session'
DATA_KEY_PREFIX: str = 'data:'

STORE_SCHEMA = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'BLOB',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Store = 'store'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string.

    Returns:
        str: Current UTC date and time in ISO 8601 format.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def data_key(username: str) -> str:
    """Return the store key holding a user's snapshot."""
    return f'{DATA_KEY_PREFIX}{username}'


_id_lock = threading.Lock()
_last_id: int = 0


def new_id() -> int:
    """Return a record id based on the current time in milliseconds.

    Ids are strictly increasing within the process, even when several are created in
    the same millisecond.
    """
    global _last_id
    with _id_lock:
        _last_id = max(int(time.time() * 1000), _last_id + 1)
        return _last_id


class LocalStore:
    """Durable key-value storage for identities, sessions and snapshots.

    Args:
        path: Path of the SQLite database file.
    """

    def __init__(self, path: Union[str, pathlib.Path]) -> None:
        self.path = pathlib.Path(path)
        self._initialize_schema_if_needed()

    def _initialize_schema_if_needed(self) -> None:
        """
        Ensures the database file and the store table are valid.
        If the table is missing or has the wrong columns it is recreated.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            table_is_valid = False
            if self._table_exists_in_conn(conn, Table.Store.value):
                cursor = conn.execute(f"PRAGMA table_info({Table.Store.value})")
                current_columns = {row[1] for row in cursor.fetchall()}
                if set(STORE_SCHEMA.keys()) == current_columns:
                    table_is_valid = True
                else:
                    logging.warning(
                        f"Table '{Table.Store.value}' schema is invalid (columns: {current_columns}). "
                        f"Schema will be recreated."
                    )

            if not table_is_valid:
                logging.info(f"Creating '{Table.Store.value}' table in {self.path}.")
                conn.execute(f"DROP TABLE IF EXISTS {Table.Store.value}")
                cols_sql = ", ".join(f'"{name}" {typedef}' for name, typedef in STORE_SCHEMA.items())
                conn.execute(f"CREATE TABLE {Table.Store.value} ({cols_sql})")
                conn.commit()
            else:
                logging.debug("Existing local store schema is valid.")

        except sqlite3.Error as e:
            logging.error(f"SQLite error during schema initialization: {e}. Attempting recovery.", exc_info=True)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
                conn = None

            try:
                self.delete()
                self._initialize_schema_if_needed()
                logging.info("Local store forcefully recreated after an error.")
            except Exception as final_e:
                logging.critical(f"Failed to recover local store: {final_e}", exc_info=True)
                raise status.LocalStoreInvalidException(f"Unrecoverable store error: {final_e}") from final_e
        finally:
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logging.error(f"SQLite error while closing after schema init: {e}")

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the store database.

        Returns:
            sqlite3.Connection: Database connection object.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        return conn

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        """Check if a table exists using an existing connection."""
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    def get(self, key: str) -> Optional[bytes]:
        """Return the value stored under ``key``, or None if absent.

        Raises:
            status.LocalStoreInvalidException: If the database cannot be read.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(
                f"SELECT value FROM {Table.Store.value} WHERE key=?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise status.LocalStoreInvalidException(f'Failed to read "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

        if row is None:
            return None
        value = row[0]
        if isinstance(value, str):
            value = value.encode('utf-8')
        return bytes(value)

    def put(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Raises:
            status.LocalStoreInvalidException: If the database cannot be written.
        """
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f'Value must be bytes, got {type(value)}.')

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            conn.execute(
                f"INSERT OR REPLACE INTO {Table.Store.value} (key, value) VALUES (?, ?)",
                (key, sqlite3.Binary(value))
            )
            conn.commit()
        except sqlite3.Error as e:
            raise status.LocalStoreInvalidException(f'Failed to write "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def remove(self, key: str) -> None:
        """Delete ``key`` from the store. Removing a missing key is not an error."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            conn.execute(f"DELETE FROM {Table.Store.value} WHERE key=?", (key,))
            conn.commit()
        except sqlite3.Error as e:
            raise status.LocalStoreInvalidException(f'Failed to remove "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def keys(self) -> List[str]:
        """Return all stored keys, sorted."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            rows = conn.execute(f"SELECT key FROM {Table.Store.value} ORDER BY key").fetchall()
        except sqlite3.Error as e:
            raise status.LocalStoreInvalidException(f'Failed to list keys: {e}') from e
        finally:
            if conn:
                conn.close()
        return [r[0] for r in rows]

    def get_json(self, key: str, default: Any = None) -> Any:
        """Return the JSON value stored under ``key``.

        Values that are missing or cannot be parsed return ``default``.
        """
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logging.warning(f'Stored value for "{key}" is not valid JSON, ignoring it: {e}')
            return default

    def put_json(self, key: str, value: Any) -> None:
        """Serialize ``value`` as JSON and store it under ``key``."""
        self.put(key, json.dumps(value, ensure_ascii=False).encode('utf-8'))

    def delete(self) -> None:
        """Delete the database file, retrying on failure.

        Raises:
            status.LocalStoreInvalidException: If unable to remove the file after retries.
        """
        if not self.path.exists():
            logging.debug('No local store found to delete.')
            return

        max_attempts = 5
        wait_seconds = 0.5

        for attempt in range(1, max_attempts + 1):
            try:
                self.path.unlink()
                logging.info(f'Local store removed: {self.path}')
                return
            except OSError as ex:
                logging.error(f'Error removing local store (attempt {attempt}/{max_attempts}): {ex}')
                if attempt < max_attempts:
                    time.sleep(wait_seconds)

        raise status.LocalStoreInvalidException(
            f'Unable to remove local store at {self.path} after {max_attempts} attempts.'
        )
