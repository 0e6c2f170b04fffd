"""
SQLite-backed local store for the checklist snapshot.

The store emulates the browser key/value storage the application was built
around: the snapshot lives under ``checklistApp`` with a legacy ``tasks``
mirror, boards under ``boards`` and the sign-out backup under
``dataBackup``. Sync metadata and the auth token have their own tables.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import ImportFormatError
from .merge import merge_records
from .models import (
    AuthToken,
    Collection,
    SnapshotDocument,
    coerce_records,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

APP_KEY = "checklistApp"
LEGACY_TASKS_KEY = "tasks"
BOARDS_KEY = "boards"
BACKUP_KEY = "dataBackup"

DEFAULT_CATEGORIES = [
    {"id": "work", "name": "Work", "emoji": "💼", "builtin": False},
    {"id": "home", "name": "Home", "emoji": "🏠", "builtin": False},
    {"id": "personal", "name": "Personal", "emoji": "👤", "builtin": False},
    {"id": "study", "name": "Study", "emoji": "📚", "builtin": False},
]

SnapshotListener = Callable[[SnapshotDocument, str], Any]


class LocalStore:
    """Durable local snapshot of categories, tasks and boards."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS auth_tokens (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        token_type TEXT DEFAULT 'Bearer',
        expires_at TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self._listeners: list[SnapshotListener] = []
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise
        try:
            yield conn
        finally:
            if conn:
                conn.close()

    # === Key/Value Operations ===

    def _get_item(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def _set_items(self, items: dict[str, str]) -> None:
        now = utc_now_iso()
        with self._get_connection() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                [(key, value, now) for key, value in items.items()],
            )
            conn.commit()

    def _get_json(self, key: str) -> Any:
        raw = self._get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Stored value for '{key}' is not valid JSON, ignoring it: {e}")
            return None

    # === Snapshot Operations ===

    def load(self) -> SnapshotDocument:
        """Read the snapshot, seeding default categories on first run."""
        app_data = self._get_json(APP_KEY)
        if not isinstance(app_data, dict):
            snapshot = SnapshotDocument(categories=[dict(c) for c in DEFAULT_CATEGORIES])
            self.save(snapshot)
            logger.info("Created local snapshot with default categories")
        else:
            snapshot = SnapshotDocument(
                categories=coerce_records(app_data.get("categories")),
                tasks=coerce_records(app_data.get("tasks")),
                boards=coerce_records(self._get_json(BOARDS_KEY)),
            )

        for collection in Collection:
            written_at = self.last_local_write(collection)
            if written_at is not None:
                snapshot.last_local_write_at[collection.value] = written_at
        snapshot.last_synced_hash = self.get_metadata("last_synced_hash")
        return snapshot

    def save(self, snapshot: SnapshotDocument) -> None:
        """Persist all collections of a snapshot."""
        self._set_items({
            APP_KEY: json.dumps({
                "categories": snapshot.categories,
                "tasks": snapshot.tasks,
            }),
            LEGACY_TASKS_KEY: json.dumps(snapshot.tasks),
            BOARDS_KEY: json.dumps(snapshot.boards),
        })

    def get_collection(self, collection: Collection) -> list[dict]:
        return self.load().get(collection)

    def replace_collection(
        self,
        collection: Collection,
        records: list[dict],
        local_write: bool = False,
    ) -> SnapshotDocument:
        """Replace one collection wholesale and persist."""
        snapshot = self.load()
        snapshot.set(collection, records)
        self.save(snapshot)
        if local_write:
            self.mark_local_write(collection)
        return snapshot

    def save_record(self, collection: Collection, record: dict) -> dict:
        """Insert or update a record by id, stamping ``updatedAt``."""
        if not record.get("id"):
            raise ValueError("record must have an 'id'")
        record = dict(record)
        record["updatedAt"] = utc_now_iso()

        records = self.get_collection(collection)
        for index, existing in enumerate(records):
            if existing.get("id") == record["id"]:
                records[index] = record
                break
        else:
            records.append(record)

        self.replace_collection(collection, records, local_write=True)
        return record

    def delete_record(self, collection: Collection, record_id: str) -> bool:
        """Delete a record. Deleting a category also deletes its tasks."""
        snapshot = self.load()
        records = snapshot.get(collection)
        remaining = [r for r in records if r.get("id") != record_id]
        if len(remaining) == len(records):
            return False
        snapshot.set(collection, remaining)

        touched = [collection]
        if collection is Collection.CATEGORIES:
            tasks = [t for t in snapshot.tasks if t.get("categoryId") != record_id]
            if len(tasks) != len(snapshot.tasks):
                snapshot.tasks = tasks
                touched.append(Collection.TASKS)

        self.save(snapshot)
        for c in touched:
            self.mark_local_write(c)
        return True

    # === Listeners ===

    def add_listener(self, listener: SnapshotListener) -> None:
        """Register a callback invoked with (snapshot, reason) on reload."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def reload(self, reason: str) -> SnapshotDocument:
        """Re-read the persisted snapshot and notify every listener."""
        snapshot = self.load()
        logger.debug(f"Reloading snapshot ({reason})")
        for listener in list(self._listeners):
            try:
                listener(snapshot, reason)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")
        return snapshot

    # === Metadata Operations ===

    def set_metadata(self, key: str, value: str) -> None:
        """Set a metadata value."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_metadata (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, value, utc_now_iso()),
            )
            conn.commit()

    def get_metadata(self, key: str) -> Optional[str]:
        """Get a metadata value."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM sync_metadata WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def mark_local_write(self, collection: Collection, at: Optional[float] = None) -> None:
        """Record the time of a locally originated write."""
        when = self.clock() if at is None else at
        self.set_metadata(f"last_local_write:{collection.value}", repr(when))

    def last_local_write(self, collection: Collection) -> Optional[float]:
        value = self.get_metadata(f"last_local_write:{collection.value}")
        return float(value) if value is not None else None

    @property
    def last_synced_hash(self) -> Optional[str]:
        return self.get_metadata("last_synced_hash")

    def record_sync(self, fingerprint: str) -> None:
        """Remember the fingerprint of data the cloud now holds."""
        self.set_metadata("last_synced_hash", fingerprint)
        self.set_metadata("last_synced_at", utc_now_iso())

    def clear_sync_state(self) -> None:
        """Forget the last pushed fingerprint so the next push always runs."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM sync_metadata WHERE key = 'last_synced_hash'")
            conn.commit()

    # === Backup / Restore ===

    def write_backup(self) -> dict:
        """Copy the current snapshot to the timestamped backup slot."""
        snapshot = self.load()
        backup = {
            "todos": snapshot.tasks,
            "categories": snapshot.categories,
            "boards": snapshot.boards,
            "timestamp": utc_now_iso(),
        }
        self._set_items({BACKUP_KEY: json.dumps(backup)})
        logger.info(f"Saved local data backup ({len(snapshot.tasks)} tasks)")
        return backup

    def read_backup(self) -> Optional[dict]:
        backup = self._get_json(BACKUP_KEY)
        return backup if isinstance(backup, dict) else None

    def restore_backup(self) -> Optional[SnapshotDocument]:
        """Merge the backup into the current snapshot (backup is the local side)."""
        backup = self.read_backup()
        if backup is None:
            return None

        snapshot = self.load()
        sources = {
            Collection.TASKS: backup.get("todos"),
            Collection.CATEGORIES: backup.get("categories"),
            Collection.BOARDS: backup.get("boards"),
        }
        for collection, data in sources.items():
            backed_up = coerce_records(data)
            if not backed_up:
                continue
            snapshot.set(collection, merge_records(backed_up, snapshot.get(collection)))
            self.mark_local_write(collection)

        self.save(snapshot)
        logger.info(f"Restored backup from {backup.get('timestamp')}")
        return snapshot

    def export_json(self) -> str:
        """Pretty-printed JSON of the full snapshot."""
        return json.dumps(self.load().to_dict(), indent=2, ensure_ascii=False)

    def import_json(self, text: str) -> SnapshotDocument:
        """Replace all local data with an exported document.

        Raises:
            ImportFormatError: the text is not a valid export; nothing is changed.
        """
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            raise ImportFormatError(f"Backup file is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise ImportFormatError("Backup file must contain a JSON object")
        for collection in Collection:
            value = data.get(collection.value, [])
            if not isinstance(value, (list, dict)):
                raise ImportFormatError(f"'{collection.value}' must be a list of records")

        snapshot = SnapshotDocument(
            categories=coerce_records(data.get("categories")),
            tasks=coerce_records(data.get("tasks")),
            boards=coerce_records(data.get("boards")),
        )
        self.save(snapshot)
        for collection in Collection:
            self.mark_local_write(collection)
        logger.info(
            f"Imported {len(snapshot.categories)} categories, "
            f"{len(snapshot.tasks)} tasks, {len(snapshot.boards)} boards"
        )
        return snapshot

    # === Auth Token Operations ===

    def save_token(self, token: AuthToken) -> None:
        """Store authentication token."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO auth_tokens
                (id, access_token, refresh_token, token_type, expires_at)
                VALUES (1, ?, ?, ?, ?)
                """,
                (
                    token.access_token,
                    token.refresh_token,
                    token.token_type,
                    token.expires_at.isoformat(),
                ),
            )
            conn.commit()

    def get_token(self) -> Optional[AuthToken]:
        """Get stored authentication token."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM auth_tokens WHERE id = 1").fetchone()

        if not row:
            return None

        expires_at = datetime.fromisoformat(row["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return AuthToken(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_type=row["token_type"],
            expires_at=expires_at,
        )

    def clear_token(self) -> None:
        """Clear stored authentication token."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM auth_tokens WHERE id = 1")
            conn.commit()
