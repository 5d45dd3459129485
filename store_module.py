import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "ocr_data.db"
TABLE_NAME = "ocr_data"


class StoreError(Exception):
    """Base class for failures of the local text store."""


class StorageUnavailable(StoreError):
    """Raised when the database file cannot be created or opened."""


class SchemaError(StoreError):
    """Raised when the text table cannot be created."""


class WriteError(StoreError):
    """Raised when a row cannot be inserted."""


class ReadError(StoreError):
    """Raised when rows cannot be read back."""


@dataclass(frozen=True)
class TextRow:
    id: int
    text: str

    def to_dict(self) -> dict:
        return {"id": self.id, "text": self.text}


class TextStore:
    """Single-table SQLite store for recognised text lines."""

    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self.path = str(path or DEFAULT_DB_PATH)
        self._conn: Optional[sqlite3.Connection] = None

    def __enter__(self) -> "TextStore":
        if self._conn is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "TextStore":
        try:
            conn = sqlite3.connect(self.path)
            # sqlite opens lazily; touch the file so bad paths fail here
            conn.execute("PRAGMA schema_version").fetchone()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open database {self.path}: {exc}") from exc
        self._conn = conn
        logger.info("Connected to the SQLite database at %s", self.path)
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Closed database %s", self.path)

    def ensure_schema(self) -> None:
        conn = self._require_connection()
        try:
            with conn:
                conn.execute(f"CREATE TABLE IF NOT EXISTS {TABLE_NAME} (id INTEGER PRIMARY KEY, text TEXT)")
        except sqlite3.Error as exc:
            raise SchemaError(f"Error creating table {TABLE_NAME}: {exc}") from exc
        logger.info('Table "%s" is ready', TABLE_NAME)

    def insert(self, text: str) -> int:
        conn = self._require_connection()
        try:
            with conn:
                cursor = conn.execute(f"INSERT INTO {TABLE_NAME} (text) VALUES (?)", (text,))
        except sqlite3.Error as exc:
            raise WriteError(f"Error inserting OCR text into database: {exc}") from exc
        return cursor.lastrowid

    def fetch_all(self) -> List[TextRow]:
        conn = self._require_connection()
        try:
            rows = conn.execute(f"SELECT id, text FROM {TABLE_NAME} ORDER BY id").fetchall()
        except sqlite3.Error as exc:
            raise ReadError(f"Error fetching data from database: {exc}") from exc
        return [TextRow(id=row_id, text=text) for row_id, text in rows]

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageUnavailable(f"Database {self.path} is not open")
        return self._conn


def connect_store(path: Union[str, Path, None] = None) -> TextStore:
    """Open (creating if needed) the store at ``path`` and make sure its table exists."""
    store = TextStore(path).open()
    try:
        store.ensure_schema()
    except SchemaError:
        store.close()
        raise
    return store
