# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
SQLite-vec entry store for retrieval experiments.

Each experiment run owns one store. By default the database lives in a
private temporary directory that is removed on close, at interpreter exit,
or when the run is interrupted.
"""

import atexit
import logging
import os
import shutil
import sqlite3
import tempfile
import weakref
from typing import Iterable, List, Optional, Sequence, Tuple

from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

# Import sqlite-vec with fallback
try:
    import sqlite_vec
    from sqlite_vec import serialize_float32

    SQLITE_VEC_AVAILABLE = True
except ImportError:
    SQLITE_VEC_AVAILABLE = False

from ..errors import StoreUnavailableError
from ..models import Entry, Relation
from .base import SearchStore

logger = logging.getLogger(__name__)

_OPEN_STORES: "weakref.WeakSet[EntryStore]" = weakref.WeakSet()

_ENTRY_COLUMNS = "e.id, e.content, e.entry_type, e.cluster_id, e.created_at"


def is_lock_error(exception: BaseException) -> bool:
    """True for transient SQLite lock contention."""
    if not isinstance(exception, sqlite3.OperationalError):
        return False
    message = str(exception).lower()
    return "locked" in message or "busy" in message


_write_retry = retry(
    retry=retry_if_exception(is_lock_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def close_all_stores() -> None:
    """Close every store still open in this process."""
    for store in list(_OPEN_STORES):
        store.close()


atexit.register(close_all_stores)


def _row_to_entry(row) -> Entry:
    return Entry(id=row[0], content=row[1], entry_type=row[2], cluster_id=row[3], created_at=row[4])


def _quote_term(term: str) -> str:
    return '"' + term.replace('"', '""') + '"'


class EntryStore(SearchStore):
    """
    Entries, FTS5 keyword index, vec0 cosine index and a relation table in one
    SQLite database.
    """

    def __init__(self, embedding_dimension: int = 768, db_path: Optional[str] = None):
        if not SQLITE_VEC_AVAILABLE:
            raise StoreUnavailableError("sqlite-vec is not installed. Install with: pip install sqlite-vec")

        self.embedding_dimension = embedding_dimension
        self._temp_dir: Optional[str] = None
        if db_path is None:
            self._temp_dir = tempfile.mkdtemp(prefix="retrieval-eval-")
            db_path = os.path.join(self._temp_dir, "experiment.db")
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

        try:
            self._connect()
            self._create_schema()
        except Exception:
            self.close()
            raise

        _OPEN_STORES.add(self)
        logger.info(f"Entry store ready at {self.db_path} (dim={embedding_dimension})")

    def _connect(self) -> None:
        self.conn = sqlite3.connect(self.db_path)
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA journal_mode=WAL")

        # Load sqlite-vec extension with proper error handling
        try:
            self.conn.enable_load_extension(True)
            sqlite_vec.load(self.conn)
            self.conn.enable_load_extension(False)
            logger.debug("sqlite-vec extension loaded successfully")
        except (AttributeError, sqlite3.Error) as e:
            raise StoreUnavailableError(
                f"Failed to load sqlite-vec extension: {e}. "
                "Python's sqlite3 module must be compiled with extension support."
            ) from e

    def _create_schema(self) -> None:
        with self.conn:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content TEXT NOT NULL,
                    entry_type TEXT NOT NULL DEFAULT 'note',
                    cluster_id INTEGER NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
            """)
            self.conn.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
                    content,
                    content='entries',
                    content_rowid='id',
                    tokenize='porter unicode61'
                )
            """)
            self.conn.execute("""
                CREATE TRIGGER IF NOT EXISTS entries_ai AFTER INSERT ON entries BEGIN
                    INSERT INTO entries_fts(rowid, content) VALUES (new.id, new.content);
                END
            """)
            self.conn.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS entries_vec USING vec0(
                    embedding FLOAT[{self.embedding_dimension}] distance_metric=cosine
                )
            """)
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS entities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE
                )
            """)
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS relations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_id INTEGER NOT NULL REFERENCES entities(id),
                    predicate TEXT NOT NULL,
                    object_id INTEGER NOT NULL REFERENCES entities(id),
                    source_entry_id INTEGER REFERENCES entries(id),
                    valid_until TEXT
                )
            """)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @_write_retry
    def insert_batch(self, entries: Sequence[Entry], embeddings: Sequence[Sequence[float]]) -> List[Entry]:
        if len(entries) != len(embeddings):
            raise ValueError(f"Got {len(embeddings)} embeddings for {len(entries)} entries")

        stored_ids = []
        with self.conn:
            for entry, embedding in zip(entries, embeddings):
                if len(embedding) != self.embedding_dimension:
                    raise ValueError(
                        f"Embedding has {len(embedding)} dimensions, store expects {self.embedding_dimension}"
                    )
                cursor = self.conn.execute(
                    "INSERT INTO entries (content, entry_type, cluster_id) VALUES (?, ?, ?)",
                    (entry.content, entry.entry_type, entry.cluster_id),
                )
                entry_id = cursor.lastrowid
                self.conn.execute(
                    "INSERT INTO entries_vec (rowid, embedding) VALUES (?, ?)",
                    (entry_id, serialize_float32(list(embedding))),
                )
                stored_ids.append(entry_id)

        by_id = {entry.id: entry for entry in self.get_entries(stored_ids)}
        return [by_id[entry_id] for entry_id in stored_ids]

    @_write_retry
    def add_relation(
        self, subject: str, predicate: str, obj: str, source_entry_id: Optional[int] = None
    ) -> Relation:
        with self.conn:
            for name in (subject, obj):
                self.conn.execute("INSERT OR IGNORE INTO entities (name) VALUES (?)", (name,))
            subject_id = self.conn.execute("SELECT id FROM entities WHERE name = ?", (subject,)).fetchone()[0]
            object_id = self.conn.execute("SELECT id FROM entities WHERE name = ?", (obj,)).fetchone()[0]
            cursor = self.conn.execute(
                "INSERT INTO relations (subject_id, predicate, object_id, source_entry_id) VALUES (?, ?, ?, ?)",
                (subject_id, predicate, object_id, source_entry_id),
            )
        return Relation(subject, predicate, obj, source_entry_id=source_entry_id, id=cursor.lastrowid)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def keyword_search(self, terms: Sequence[str], limit: int) -> List[Entry]:
        if not terms:
            return []
        match_expression = " OR ".join(_quote_term(term) for term in terms)
        try:
            rows = self.conn.execute(
                f"""
                SELECT {_ENTRY_COLUMNS}
                FROM entries e
                JOIN entries_fts f ON e.id = f.rowid
                WHERE entries_fts MATCH ?
                ORDER BY e.created_at DESC, e.id DESC
                LIMIT ?
                """,
                (match_expression, limit),
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Keyword search failed for {match_expression!r}: {e}")
            return []
        return [_row_to_entry(row) for row in rows]

    def vector_search(self, embedding: Sequence[float], limit: int) -> List[Tuple[Entry, float]]:
        try:
            rows = self.conn.execute(
                f"""
                SELECT {_ENTRY_COLUMNS}, v.distance
                FROM (
                    SELECT rowid, distance
                    FROM entries_vec
                    WHERE embedding MATCH ?
                    ORDER BY distance
                    LIMIT ?
                ) v
                JOIN entries e ON e.id = v.rowid
                ORDER BY v.distance, e.id
                """,
                (serialize_float32(list(embedding)), limit),
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Vector search failed: {e}")
            return []
        return [(_row_to_entry(row), float(row[5])) for row in rows]

    def scan_distances(self, embedding: Sequence[float]) -> List[Tuple[int, float, float]]:
        blob = serialize_float32(list(embedding))
        try:
            rows = self.conn.execute(
                """
                SELECT rowid,
                       vec_distance_cosine(embedding, ?) AS cosine_dist,
                       vec_distance_L2(embedding, ?) AS l2_dist
                FROM entries_vec
                ORDER BY cosine_dist, rowid
                """,
                (blob, blob),
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Distance scan failed: {e}")
            return []
        return [(row[0], float(row[1]), float(row[2])) for row in rows]

    def find_relations(self, terms: Iterable[str], limit: int) -> List[Relation]:
        patterns = [f"%{term.lower()}%" for term in terms if term]
        if not patterns:
            return []
        clause = " OR ".join(["lower(s.name) LIKE ? OR lower(o.name) LIKE ?"] * len(patterns))
        params: list = []
        for pattern in patterns:
            params.extend([pattern, pattern])
        params.append(limit)
        try:
            rows = self.conn.execute(
                f"""
                SELECT s.name, r.predicate, o.name, r.source_entry_id, r.id
                FROM relations r
                JOIN entities s ON r.subject_id = s.id
                JOIN entities o ON r.object_id = o.id
                WHERE r.valid_until IS NULL AND ({clause})
                ORDER BY r.id
                LIMIT ?
                """,
                params,
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Relation lookup failed: {e}")
            return []
        return [Relation(row[0], row[1], row[2], source_entry_id=row[3], id=row[4]) for row in rows]

    def get_entries(self, entry_ids: Optional[Iterable[int]] = None) -> List[Entry]:
        if entry_ids is None:
            rows = self.conn.execute(f"SELECT {_ENTRY_COLUMNS} FROM entries e ORDER BY e.id").fetchall()
            return [_row_to_entry(row) for row in rows]

        ids = list(entry_ids)
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        rows = self.conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM entries e WHERE e.id IN ({placeholders}) ORDER BY e.id", ids
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    def relation_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM relations WHERE valid_until IS NULL").fetchone()[0]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the connection and delete the temporary directory, if any."""
        if self.conn is not None:
            try:
                self.conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing store connection: {e}")
            self.conn = None
        if self._temp_dir is not None:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            logger.debug(f"Removed temporary store {self._temp_dir}")
            self._temp_dir = None
        _OPEN_STORES.discard(self)
