import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Mapping, Optional

logger = logging.getLogger("uploadpath.metadata")

FILE_COLUMNS = (
    "name",
    "hash",
    "ext",
    "mime",
    "size",
    "url",
    "preview_url",
    "path",
    "folder_id",
    "folder_path",
    "formats",
)


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = dict(row)
    if "formats" in record:
        record["formats"] = json.loads(record["formats"]) if record["formats"] else None
    return record


class MetadataStore:
    """SQLite-backed media library metadata: folders, file records and users.

    Folder ``path`` values are the chain of ancestor ids (``/1/4/9``); file
    records copy their folder's path into ``folder_path`` so sibling files can
    be counted without joining.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.get_db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS folders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    parent_id INTEGER REFERENCES folders(id),
                    path TEXT,
                    created_by TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_folders_parent ON folders(parent_id, name)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_folders_path ON folders(path)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT,
                    hash TEXT NOT NULL,
                    ext TEXT,
                    mime TEXT,
                    size INTEGER,
                    url TEXT,
                    preview_url TEXT,
                    path TEXT,
                    folder_id INTEGER,
                    folder_path TEXT,
                    formats TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_files_hash ON files(hash)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_folder_path ON files(folder_path)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    document_id TEXT
                )
                """
            )
            conn.commit()

    # Folders

    def find_folder(self, folder_id: int) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT id, name, parent_id AS parent, path FROM folders WHERE id = ?",
                (folder_id,),
            ).fetchone()
        return _row_to_dict(row)

    def find_folder_by_path(self, folder_path: str) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT id, name, parent_id AS parent, path FROM folders WHERE path = ?",
                (folder_path,),
            ).fetchone()
        return _row_to_dict(row)

    def find_folder_by_name(self, name: str, parent: Optional[int]) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute(
                """
                SELECT id, name, parent_id AS parent, path FROM folders
                WHERE name = ? AND parent_id IS ?
                """,
                (name, parent),
            ).fetchone()
        return _row_to_dict(row)

    def create_folder(
        self, name: str, parent: Optional[int], user: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        created_by = str(user["id"]) if user and user.get("id") is not None else None
        with self.get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            parent_path = ""
            if parent is not None:
                parent_row = conn.execute(
                    "SELECT path FROM folders WHERE id = ?", (parent,)
                ).fetchone()
                if parent_row is None:
                    raise ValueError(f"Parent folder {parent} does not exist")
                parent_path = parent_row["path"] or ""
            cursor = conn.execute(
                """
                INSERT INTO folders (name, parent_id, created_by, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (name, parent, created_by, time.time()),
            )
            folder_id = cursor.lastrowid
            folder_path = f"{parent_path}/{folder_id}"
            conn.execute("UPDATE folders SET path = ? WHERE id = ?", (folder_path, folder_id))
            conn.commit()
        logger.info("folder_created folder_id=%s name=%s parent=%s", folder_id, name, parent)
        return {"id": folder_id, "name": name, "parent": parent, "path": folder_path}

    def count_child_folders(self, folder_id: int) -> int:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM folders WHERE parent_id = ?", (folder_id,)
            ).fetchone()
        return int(row["count"] or 0)

    def count_files_in_folder(self, folder_path: str, exclude_hash: Optional[str] = None) -> int:
        with self.get_db() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM files
                WHERE folder_path = ? AND hash IS NOT ?
                """,
                (folder_path, exclude_hash),
            ).fetchone()
        return int(row["count"] or 0)

    def delete_folder(self, folder_id: int) -> None:
        with self.get_db() as conn:
            conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
            conn.commit()
        logger.info("folder_deleted folder_id=%s", folder_id)

    # Files

    def find_file_by_hash(self, file_hash: str) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT * FROM files WHERE hash = ? ORDER BY id DESC LIMIT 1", (file_hash,)
            ).fetchone()
        return _row_to_dict(row)

    def get_file(self, file_id: int) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
        return _row_to_dict(row)

    def _file_values(self, record: Mapping[str, Any]) -> List[Any]:
        values = []
        for column in FILE_COLUMNS:
            value = record.get(column)
            if column == "formats" and value is not None:
                value = json.dumps(value)
            values.append(value)
        return values

    def insert_file(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        columns = ", ".join(FILE_COLUMNS)
        placeholders = ", ".join("?" for _ in FILE_COLUMNS)
        with self.get_db() as conn:
            cursor = conn.execute(
                f"INSERT INTO files ({columns}, created_at) VALUES ({placeholders}, ?)",
                (*self._file_values(record), time.time()),
            )
            file_id = cursor.lastrowid
            conn.commit()
        return self.get_file(file_id)

    def update_file(self, file_id: int, record: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        assignments = ", ".join(f"{column} = ?" for column in FILE_COLUMNS)
        with self.get_db() as conn:
            conn.execute(
                f"UPDATE files SET {assignments} WHERE id = ?",
                (*self._file_values(record), file_id),
            )
            conn.commit()
        return self.get_file(file_id)

    def list_files(
        self, *, limit: Optional[int] = None, offset: int = 0, folder_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM files"
        params: List[Any] = []
        if folder_id is not None:
            query += " WHERE folder_id = ?"
            params.append(folder_id)
        query += " ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([max(int(limit), 0), max(min(int(offset), 1_000_000), 0)])
        with self.get_db() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_dict(row) for row in rows]

    def count_files(self, folder_id: Optional[int] = None) -> int:
        with self.get_db() as conn:
            if folder_id is None:
                row = conn.execute("SELECT COUNT(*) AS count FROM files").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM files WHERE folder_id = ?", (folder_id,)
                ).fetchone()
        return int(row["count"] or 0)

    def delete_file(self, file_id: int) -> bool:
        with self.get_db() as conn:
            cursor = conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
            conn.commit()
        return cursor.rowcount > 0

    # Users

    def create_user(self, username: str, document_id: Optional[str] = None) -> Dict[str, Any]:
        with self.get_db() as conn:
            cursor = conn.execute(
                "INSERT INTO users (username, document_id) VALUES (?, ?)",
                (username, document_id),
            )
            user_id = cursor.lastrowid
            conn.commit()
        return {"id": user_id, "username": username, "document_id": document_id}

    def get_user(self, user_id: Any) -> Optional[Dict[str, Any]]:
        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_dict(row)
