"""
Ballistic Database Layer

SQLite persistence for users, connections, access tokens, projects, tags,
items, notifications and audit logs. Runs in WAL mode with a single
cross-thread connection guarded by an RLock; multi-statement writes use
explicit transactions so callers can re-read and write under one lock.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

ITEM_COLUMNS = (
    "id", "user_id", "assignee_id", "project_id", "title", "description",
    "assignee_notes", "status", "position", "scheduled_date", "due_date",
    "completed_at", "recurrence_rule", "recurrence_parent_id", "recurrence_strategy",
    "is_recurring_template", "is_recurring_instance", "created_at", "updated_at", "deleted_at",
)

# Columns an update may write; id, owner and timestamps are managed here
ITEM_WRITABLE = frozenset(ITEM_COLUMNS) - {"id", "user_id", "created_at", "updated_at"}

# Listing modes (who the caller is relative to the items returned)
LIST_MODES = ("mine", "visible", "assigned_to_me", "delegated")


def new_id() -> str:
    """Generate a new UUID4 string identifier."""
    return str(uuid.uuid4())


def _now_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _date_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _rows_to_dicts(cursor: sqlite3.Cursor, rows: Iterable[tuple]) -> List[Dict[str, Any]]:
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in rows]


def _load_json(text: Optional[str], default: Any) -> Any:
    if not text:
        return default
    try:
        value = json.loads(text)
    except (ValueError, TypeError):
        return default
    return value if isinstance(value, type(default)) else default


class BallisticDatabase:
    """
    SQLite database for the Ballistic task manager.

    Features:
    - WAL mode for concurrent read/write access
    - Thread-safe operations through a single RLock-guarded connection
    - Explicit transactions, joinable from nested calls
    - Soft delete for items and projects
    """

    def __init__(self, db_path: str):
        """
        Initialize the database and create the schema if needed.

        Args:
            db_path: Path to SQLite database file (":memory:" is accepted)
        """
        self.db_path = Path(db_path) if db_path != ":memory:" else None
        self._raw_path = db_path
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self) -> None:
        try:
            self._connection = sqlite3.connect(
                self._raw_path,
                isolation_level=None,  # Autocommit; transactions are explicit
                check_same_thread=False,
            )
            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self._raw_path}: {e}")

    def _create_schema(self) -> None:
        """Create tables and indexes."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                is_admin INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS connections (
                id TEXT PRIMARY KEY,
                requester_id TEXT NOT NULL,
                addressee_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'accepted', 'declined')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (requester_id, addressee_id),
                FOREIGN KEY (requester_id) REFERENCES users (id) ON DELETE CASCADE,
                FOREIGN KEY (addressee_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS access_tokens (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                token_hash TEXT NOT NULL UNIQUE,
                abilities TEXT NOT NULL DEFAULT '[]',
                last_used_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                color TEXT,
                archived_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                color TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (user_id, name),
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                assignee_id TEXT,
                project_id TEXT,
                title TEXT NOT NULL,
                description TEXT,
                assignee_notes TEXT,
                status TEXT NOT NULL DEFAULT 'todo'
                    CHECK (status IN ('todo', 'doing', 'done', 'wontdo')),
                position INTEGER NOT NULL DEFAULT 0,
                scheduled_date TEXT,
                due_date TEXT,
                completed_at TEXT,
                recurrence_rule TEXT,
                recurrence_parent_id TEXT,
                recurrence_strategy TEXT
                    CHECK (recurrence_strategy IS NULL OR recurrence_strategy IN ('expires', 'carry_over')),
                is_recurring_template INTEGER NOT NULL DEFAULT 0,
                is_recurring_instance INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT,
                CHECK (NOT (is_recurring_template = 1 AND is_recurring_instance = 1)),
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
                FOREIGN KEY (assignee_id) REFERENCES users (id) ON DELETE SET NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE SET NULL,
                FOREIGN KEY (recurrence_parent_id) REFERENCES items (id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS item_tags (
                item_id TEXT NOT NULL,
                tag_id TEXT NOT NULL,
                PRIMARY KEY (item_id, tag_id),
                FOREIGN KEY (item_id) REFERENCES items (id) ON DELETE CASCADE,
                FOREIGN KEY (tag_id) REFERENCES tags (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                data TEXT CHECK (data IS NULL OR json_valid(data)),
                read_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                action TEXT NOT NULL,
                resource_type TEXT,
                resource_id TEXT,
                status TEXT NOT NULL DEFAULT 'success' CHECK (status IN ('success', 'error')),
                metadata TEXT CHECK (metadata IS NULL OR json_valid(metadata)),
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_items_user_position ON items(user_id, position)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_items_assignee ON items(assignee_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_items_parent ON items(recurrence_parent_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_items_scheduled ON items(scheduled_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_user ON audit_logs(user_id, created_at)")

    @contextmanager
    def _transaction(self, immediate: bool = False):
        """
        Context manager for explicit transaction control.

        Joins the surrounding transaction when one is already open.
        """
        cursor = self._connection.cursor()
        if self._connection.in_transaction:
            yield cursor
            return
        try:
            cursor.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    @contextmanager
    def transaction(self):
        """
        Hold the connection lock and a write transaction for the whole block.

        Reads made through this object inside the block see the state that the
        block's writes will commit against.
        """
        with self._connection_lock:
            with self._transaction(immediate=True) as cursor:
                yield cursor

    def ping(self) -> bool:
        """Round-trip a trivial query; raises if the connection is unusable."""
        with self._connection_lock:
            self._connection.execute("SELECT 1").fetchone()
        return True

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, name: str, email: str, is_admin: bool = False) -> Dict[str, Any]:
        now = _now_str()
        user_id = new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO users (id, name, email, is_admin, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, name, email.lower(), int(is_admin), now, now))
        return self.get_user(user_id)

    def get_user(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not user_id:
            return None
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM users WHERE id = ?", (str(user_id),))
            row = cursor.fetchone()
            if not row:
                return None
            user = _rows_to_dicts(cursor, [row])[0]
        user["is_admin"] = bool(user["is_admin"])
        return user

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT id FROM users WHERE email = ?", (email.lower(),))
            row = cursor.fetchone()
        return self.get_user(row[0]) if row else None

    def list_users(self) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM users ORDER BY name")
            users = _rows_to_dicts(cursor, cursor.fetchall())
        for user in users:
            user["is_admin"] = bool(user["is_admin"])
        return users

    def search_users(self, search: Optional[str] = None, is_admin: Optional[bool] = None,
                     limit: int = 25, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """
        Page through users with their item, project and tag counts, newest first.

        Returns:
            (users on the page, total number of matching users)
        """
        conditions = []
        params: List[Any] = []
        if search:
            escaped = search.replace("!", "!!").replace("%", "!%").replace("_", "!_")
            pattern = f"%{escaped.lower()}%"
            conditions.append("(LOWER(name) LIKE ? ESCAPE '!' OR LOWER(email) LIKE ? ESCAPE '!')")
            params.extend([pattern, pattern])
        if is_admin is not None:
            conditions.append("is_admin = ?")
            params.append(int(is_admin))
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM users{where}", params)
            total = cursor.fetchone()[0]
            cursor.execute(f"""
                SELECT users.*,
                    (SELECT COUNT(*) FROM items WHERE items.user_id = users.id
                        AND items.deleted_at IS NULL AND items.is_recurring_template = 0) AS items_count,
                    (SELECT COUNT(*) FROM projects WHERE projects.user_id = users.id
                        AND projects.deleted_at IS NULL) AS projects_count,
                    (SELECT COUNT(*) FROM tags WHERE tags.user_id = users.id) AS tags_count
                FROM users{where}
                ORDER BY users.created_at DESC, users.name
                LIMIT ? OFFSET ?
            """, (*params, limit, offset))
            users = _rows_to_dicts(cursor, cursor.fetchall())
        for user in users:
            user["is_admin"] = bool(user["is_admin"])
        return users, total

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        columns = {k: v for k, v in changes.items() if k in ("name", "email", "is_admin")}
        if "email" in columns:
            columns["email"] = columns["email"].lower()
        if "is_admin" in columns:
            columns["is_admin"] = int(bool(columns["is_admin"]))
        if columns:
            assignments = ", ".join(f"{column} = ?" for column in columns)
            with self._connection_lock:
                cursor = self._connection.cursor()
                cursor.execute(
                    f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
                    (*columns.values(), _now_str(), user_id),
                )
        return self.get_user(user_id)

    def delete_user(self, user_id: str) -> bool:
        """Delete a user; owned rows cascade and assignments are cleared by the foreign keys."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    def get_user_counts(self, user_id: str) -> Dict[str, int]:
        """Counts shown on a user's profile."""
        queries = {
            "items": "SELECT COUNT(*) FROM items WHERE user_id = ? AND deleted_at IS NULL "
                     "AND is_recurring_template = 0",
            "assigned_items": "SELECT COUNT(*) FROM items WHERE assignee_id = ? AND user_id != assignee_id "
                              "AND deleted_at IS NULL",
            "projects": "SELECT COUNT(*) FROM projects WHERE user_id = ? AND deleted_at IS NULL "
                        "AND archived_at IS NULL",
            "tags": "SELECT COUNT(*) FROM tags WHERE user_id = ?",
            "connections": "SELECT COUNT(*) FROM connections WHERE (requester_id = ?1 OR addressee_id = ?1) "
                           "AND status = 'accepted'",
            "unread_notifications": "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read_at IS NULL",
        }
        counts = {}
        with self._connection_lock:
            cursor = self._connection.cursor()
            for name, query in queries.items():
                cursor.execute(query, (user_id,))
                counts[name] = cursor.fetchone()[0]
        return counts

    def reset_user_data(self, user_id: str) -> Dict[str, int]:
        """
        Remove everything a user owns or takes part in but keep the account.

        Returns:
            Number of rows removed (or unassigned) per kind
        """
        statements = (
            ("items", "DELETE FROM items WHERE user_id = ?", (user_id,)),
            ("assigned_items", "UPDATE items SET assignee_id = NULL WHERE assignee_id = ?", (user_id,)),
            ("projects", "DELETE FROM projects WHERE user_id = ?", (user_id,)),
            ("tags", "DELETE FROM tags WHERE user_id = ?", (user_id,)),
            ("notifications", "DELETE FROM notifications WHERE user_id = ?", (user_id,)),
            ("connections", "DELETE FROM connections WHERE requester_id = ? OR addressee_id = ?",
             (user_id, user_id)),
            ("tokens", "DELETE FROM access_tokens WHERE user_id = ?", (user_id,)),
        )
        removed = {}
        with self._connection_lock:
            with self._transaction(immediate=True) as cursor:
                for name, statement, params in statements:
                    cursor.execute(statement, params)
                    removed[name] = cursor.rowcount
        return removed

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def get_connection_between(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        """Connection between two users in either direction."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT * FROM connections
                WHERE (requester_id = ? AND addressee_id = ?)
                   OR (requester_id = ? AND addressee_id = ?)
                ORDER BY created_at DESC
                LIMIT 1
            """, (user_a, user_b, user_b, user_a))
            row = cursor.fetchone()
            return _rows_to_dicts(cursor, [row])[0] if row else None

    def get_connection(self, connection_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM connections WHERE id = ?", (connection_id,))
            row = cursor.fetchone()
            return _rows_to_dicts(cursor, [row])[0] if row else None

    def create_connection(self, requester_id: str, addressee_id: str,
                          status: str = "pending") -> Dict[str, Any]:
        now = _now_str()
        connection_id = new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO connections (id, requester_id, addressee_id, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (connection_id, requester_id, addressee_id, status, now, now))
        return self.get_connection(connection_id)

    def update_connection_status(self, connection_id: str, status: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE connections SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now_str(), connection_id),
            )
            return cursor.rowcount > 0

    def delete_connection(self, connection_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM connections WHERE id = ?", (connection_id,))
            return cursor.rowcount > 0

    def are_connected(self, user_a: str, user_b: str) -> bool:
        connection = self.get_connection_between(user_a, user_b)
        return connection is not None and connection["status"] == "accepted"

    def list_connections(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = """
            SELECT * FROM connections
            WHERE (requester_id = ? OR addressee_id = ?)
        """
        params: List[Any] = [user_id, user_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return _rows_to_dicts(cursor, cursor.fetchall())

    def list_connected_users(self, user_id: str) -> List[Dict[str, Any]]:
        """Users with an accepted connection to ``user_id``, by name."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT users.id, users.name, users.email
                FROM connections
                JOIN users ON users.id = CASE WHEN connections.requester_id = ?1
                                              THEN connections.addressee_id
                                              ELSE connections.requester_id END
                WHERE (connections.requester_id = ?1 OR connections.addressee_id = ?1)
                  AND connections.status = 'accepted'
                ORDER BY users.name
            """, (user_id,))
            return _rows_to_dicts(cursor, cursor.fetchall())

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def _token_from_row(self, token: Dict[str, Any]) -> Dict[str, Any]:
        token["abilities"] = _load_json(token.get("abilities"), [])
        return token

    def create_token(self, user_id: str, name: str, token_hash: str,
                     abilities: List[str]) -> Dict[str, Any]:
        token_id = new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO access_tokens (id, user_id, name, token_hash, abilities, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (token_id, user_id, name, token_hash, json.dumps(list(abilities)), _now_str()))
            cursor.execute("SELECT * FROM access_tokens WHERE id = ?", (token_id,))
            return self._token_from_row(_rows_to_dicts(cursor, cursor.fetchall())[0])

    def find_token_by_hash(self, token_hash: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM access_tokens WHERE token_hash = ?", (token_hash,))
            row = cursor.fetchone()
            return self._token_from_row(_rows_to_dicts(cursor, [row])[0]) if row else None

    def touch_token(self, token_id: str) -> None:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("UPDATE access_tokens SET last_used_at = ? WHERE id = ?", (_now_str(), token_id))

    def list_tokens(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM access_tokens"
        params: List[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC"
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return [self._token_from_row(t) for t in _rows_to_dicts(cursor, cursor.fetchall())]

    def set_token_abilities(self, token_id: str, abilities: List[str]) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE access_tokens SET abilities = ? WHERE id = ?",
                (json.dumps(list(abilities)), token_id),
            )
            return cursor.rowcount > 0

    def delete_token(self, user_id: str, token_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM access_tokens WHERE id = ? AND user_id = ?", (token_id, user_id))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, user_id: str, name: str, color: Optional[str] = None) -> Dict[str, Any]:
        now = _now_str()
        project_id = new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO projects (id, user_id, name, color, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (project_id, user_id, name, color, now, now))
        return self.get_project(project_id)

    def get_project(self, project_id: Optional[str], include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        if not project_id:
            return None
        query = "SELECT * FROM projects WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (str(project_id),))
            row = cursor.fetchone()
            return _rows_to_dicts(cursor, [row])[0] if row else None

    def list_projects(self, user_id: str, include_archived: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT * FROM projects WHERE user_id = ? AND deleted_at IS NULL"
        if not include_archived:
            query += " AND archived_at IS NULL"
        query += " ORDER BY name"
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (user_id,))
            return _rows_to_dicts(cursor, cursor.fetchall())

    def update_project(self, project_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        allowed = {k: v for k, v in changes.items() if k in ("name", "color", "archived_at")}
        if allowed:
            assignments = ", ".join(f"{column} = ?" for column in allowed)
            with self._connection_lock:
                cursor = self._connection.cursor()
                cursor.execute(
                    f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?",
                    (*allowed.values(), _now_str(), project_id),
                )
        return self.get_project(project_id)

    def soft_delete_project(self, project_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE projects SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_now_str(), project_id),
            )
            return cursor.rowcount > 0

    def restore_project(self, project_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("UPDATE projects SET deleted_at = NULL WHERE id = ?", (project_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def create_tag(self, user_id: str, name: str, color: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a tag.

        Raises:
            sqlite3.IntegrityError: the user already has a tag with this name
        """
        now = _now_str()
        tag_id = new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO tags (id, user_id, name, color, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (tag_id, user_id, name, color, now, now))
        return self.get_tag(tag_id)

    def get_tag(self, tag_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM tags WHERE id = ?", (tag_id,))
            row = cursor.fetchone()
            return _rows_to_dicts(cursor, [row])[0] if row else None

    def find_tag_by_name(self, user_id: str, name: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM tags WHERE user_id = ? AND name = ?", (user_id, name))
            row = cursor.fetchone()
            return _rows_to_dicts(cursor, [row])[0] if row else None

    def list_tags(self, user_id: str) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM tags WHERE user_id = ? ORDER BY name", (user_id,))
            return _rows_to_dicts(cursor, cursor.fetchall())

    def update_tag(self, tag_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        allowed = {k: v for k, v in changes.items() if k in ("name", "color")}
        if allowed:
            assignments = ", ".join(f"{column} = ?" for column in allowed)
            with self._connection_lock:
                cursor = self._connection.cursor()
                cursor.execute(
                    f"UPDATE tags SET {assignments}, updated_at = ? WHERE id = ?",
                    (*allowed.values(), _now_str(), tag_id),
                )
        return self.get_tag(tag_id)

    def delete_tag(self, tag_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
            return cursor.rowcount > 0

    def count_owned_tags(self, user_id: str, tag_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(tag_ids))
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"SELECT COUNT(*) FROM tags WHERE user_id = ? AND id IN ({placeholders})",
                (user_id, *ids),
            )
            return cursor.fetchone()[0]

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _item_from_row(self, item: Dict[str, Any]) -> Dict[str, Any]:
        item["is_recurring_template"] = bool(item["is_recurring_template"])
        item["is_recurring_instance"] = bool(item["is_recurring_instance"])
        return item

    def _attach_tags(self, cursor: sqlite3.Cursor, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not items:
            return items
        ids = [item["id"] for item in items]
        placeholders = ",".join("?" * len(ids))
        cursor.execute(f"""
            SELECT it.item_id, t.id, t.name, t.color
            FROM item_tags it JOIN tags t ON t.id = it.tag_id
            WHERE it.item_id IN ({placeholders})
            ORDER BY t.name
        """, ids)
        by_item: Dict[str, List[Dict[str, Any]]] = {}
        for item_id, tag_id, name, color in cursor.fetchall():
            by_item.setdefault(item_id, []).append({"id": tag_id, "name": name, "color": color})
        for item in items:
            item["tags"] = by_item.get(item["id"], [])
        return items

    def _set_item_tags(self, cursor: sqlite3.Cursor, item_id: str, tag_ids: Iterable[str]) -> None:
        cursor.execute("DELETE FROM item_tags WHERE item_id = ?", (item_id,))
        for tag_id in dict.fromkeys(tag_ids):
            cursor.execute("INSERT INTO item_tags (item_id, tag_id) VALUES (?, ?)", (item_id, tag_id))

    def create_item(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert an item row.

        Args:
            fields: Column values; must include user_id and title. ``tag_ids``
                    is accepted and written to item_tags.

        Returns:
            The stored item with tags
        """
        now = _now_str()
        row = {column: fields.get(column) for column in ITEM_COLUMNS}
        row["id"] = fields.get("id") or new_id()
        row["status"] = row["status"] or "todo"
        row["position"] = row["position"] or 0
        row["scheduled_date"] = _date_str(row["scheduled_date"])
        row["due_date"] = _date_str(row["due_date"])
        row["is_recurring_template"] = int(bool(row["is_recurring_template"]))
        row["is_recurring_instance"] = int(bool(row["is_recurring_instance"]))
        row["created_at"] = now
        row["updated_at"] = now

        columns = ", ".join(row)
        placeholders = ", ".join("?" * len(row))
        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(f"INSERT INTO items ({columns}) VALUES ({placeholders})", tuple(row.values()))
                if fields.get("tag_ids"):
                    self._set_item_tags(cursor, row["id"], fields["tag_ids"])
        return self.get_item(row["id"])

    def get_item(self, item_id: Optional[str], include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        if not item_id:
            return None
        query = "SELECT * FROM items WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (str(item_id),))
            row = cursor.fetchone()
            if not row:
                return None
            item = self._item_from_row(_rows_to_dicts(cursor, [row])[0])
            return self._attach_tags(cursor, [item])[0]

    def get_items_by_ids(self, item_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT * FROM items WHERE id IN ({placeholders}) AND deleted_at IS NULL", ids)
            return [self._item_from_row(i) for i in _rows_to_dicts(cursor, cursor.fetchall())]

    def update_item(self, item_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Write column changes (and ``tag_ids`` when present) to an item.

        Unknown keys are ignored; the authorization layer decides which keys
        may reach this method.
        """
        columns = {k: v for k, v in changes.items() if k in ITEM_WRITABLE}
        for key in ("scheduled_date", "due_date"):
            if key in columns:
                columns[key] = _date_str(columns[key])
        for key in ("is_recurring_template", "is_recurring_instance"):
            if key in columns:
                columns[key] = int(bool(columns[key]))

        with self._connection_lock:
            with self._transaction() as cursor:
                if columns:
                    assignments = ", ".join(f"{column} = ?" for column in columns)
                    cursor.execute(
                        f"UPDATE items SET {assignments}, updated_at = ? WHERE id = ?",
                        (*columns.values(), _now_str(), item_id),
                    )
                if changes.get("tag_ids") is not None:
                    self._set_item_tags(cursor, item_id, changes["tag_ids"])
        return self.get_item(item_id, include_deleted=True)

    def list_items(
        self,
        user_id: str,
        mode: str = "mine",
        include_completed: bool = False,
        scope: str = "active",
        today: Optional[date] = None,
        project_id: Optional[str] = None,
        status: Optional[List[str]] = None,
        tag_id: Optional[str] = None,
        search: Optional[str] = None,
        scheduled_date: Optional[str] = None,
        scheduled_from: Optional[str] = None,
        scheduled_to: Optional[str] = None,
        due_from: Optional[str] = None,
        due_to: Optional[str] = None,
        overdue: bool = False,
        include_templates: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        List items with filtering.

        Args:
            user_id: Caller
            mode: mine (owned, unassigned), visible (owned or assigned),
                  assigned_to_me (assigned by others), delegated (owned,
                  assigned to others)
            include_completed: Keep done/wontdo items (ignored when status is given)
            scope: active (unscheduled or scheduled up to today), planned
                   (scheduled after today) or all
            project_id: Project UUID, or "inbox" for items without a project
            status: Only these statuses
            search: Case-insensitive match on title or description

        Returns:
            Items ordered by position, newest first within a position
        """
        if mode not in LIST_MODES:
            raise ValueError(f"Invalid list mode '{mode}'. Must be one of: {', '.join(LIST_MODES)}")
        today_str = (today or date.today()).isoformat()

        conditions = ["deleted_at IS NULL"]
        params: List[Any] = []

        if mode == "assigned_to_me":
            conditions.append("assignee_id = ? AND user_id != ?")
            params.extend([user_id, user_id])
        elif mode == "delegated":
            conditions.append("user_id = ? AND assignee_id IS NOT NULL AND assignee_id != ?")
            params.extend([user_id, user_id])
        elif mode == "visible":
            conditions.append("(user_id = ? OR assignee_id = ?)")
            params.extend([user_id, user_id])
        else:
            conditions.append("user_id = ? AND assignee_id IS NULL")
            params.append(user_id)

        if not include_templates:
            conditions.append("is_recurring_template = 0")

        if status:
            placeholders = ",".join("?" * len(status))
            conditions.append(f"status IN ({placeholders})")
            params.extend(status)
        elif not include_completed:
            conditions.append("status NOT IN ('done', 'wontdo')")

        if scope == "active":
            conditions.append("(scheduled_date IS NULL OR scheduled_date <= ?)")
            params.append(today_str)
        elif scope == "planned":
            conditions.append("scheduled_date IS NOT NULL AND scheduled_date > ?")
            params.append(today_str)

        if project_id == "inbox":
            conditions.append("project_id IS NULL")
        elif project_id:
            conditions.append("project_id = ?")
            params.append(project_id)

        if tag_id:
            conditions.append("id IN (SELECT item_id FROM item_tags WHERE tag_id = ?)")
            params.append(tag_id)

        if search:
            escaped = search.replace("!", "!!").replace("%", "!%").replace("_", "!_")
            pattern = f"%{escaped.lower()}%"
            conditions.append("(LOWER(title) LIKE ? ESCAPE '!' OR LOWER(COALESCE(description, '')) LIKE ? ESCAPE '!')")
            params.extend([pattern, pattern])

        for column, op, value in (
            ("scheduled_date", "=", scheduled_date),
            ("scheduled_date", ">=", scheduled_from),
            ("scheduled_date", "<=", scheduled_to),
            ("due_date", ">=", due_from),
            ("due_date", "<=", due_to),
        ):
            if value:
                conditions.append(f"{column} {op} ?")
                params.append(_date_str(value))

        if overdue:
            conditions.append("due_date IS NOT NULL AND due_date < ? AND status NOT IN ('done', 'wontdo')")
            params.append(today_str)

        query = f"SELECT * FROM items WHERE {' AND '.join(conditions)} ORDER BY position ASC, created_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            items = [self._item_from_row(i) for i in _rows_to_dicts(cursor, cursor.fetchall())]
            return self._attach_tags(cursor, items)

    def soft_delete_item(self, item_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            now = _now_str()
            cursor.execute(
                "UPDATE items SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now, now, item_id),
            )
            return cursor.rowcount > 0

    def restore_item(self, item_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE items SET deleted_at = NULL, updated_at = ? WHERE id = ? AND deleted_at IS NOT NULL",
                (_now_str(), item_id),
            )
            return cursor.rowcount > 0

    def force_delete_item(self, item_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM items WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    def reorder_items(self, user_id: str, entries: List[Tuple[str, int]]) -> int:
        """
        Apply submitted positions to the user's items and renumber the rest after them.

        Items not owned by the user are skipped. Returns the number of
        submitted items updated.
        """
        submitted_ids = [item_id for item_id, _ in entries]
        placeholders = ",".join("?" * len(submitted_ids))
        updated = 0
        now = _now_str()

        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    f"SELECT id FROM items WHERE user_id = ? AND id IN ({placeholders})",
                    (user_id, *submitted_ids),
                )
                owned = {row[0] for row in cursor.fetchall()}

                max_position = -1
                for item_id, position in entries:
                    if item_id not in owned:
                        continue
                    cursor.execute(
                        "UPDATE items SET position = ?, updated_at = ? WHERE id = ?",
                        (position, now, item_id),
                    )
                    updated += 1
                    max_position = max(max_position, position)

                # Keep hidden (e.g. completed) items from sharing positions with the submitted range
                cursor.execute(
                    f"SELECT id FROM items WHERE user_id = ? AND id NOT IN ({placeholders}) ORDER BY position",
                    (user_id, *submitted_ids),
                )
                next_position = max_position + 1
                for (other_id,) in cursor.fetchall():
                    cursor.execute("UPDATE items SET position = ? WHERE id = ?", (next_position, other_id))
                    next_position += 1

        return updated

    def list_recurring_templates(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM items WHERE is_recurring_template = 1 AND deleted_at IS NULL"
        params: List[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return [self._item_from_row(i) for i in _rows_to_dicts(cursor, cursor.fetchall())]

    def list_instances(self, template_id: str, open_only: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT * FROM items WHERE recurrence_parent_id = ? AND deleted_at IS NULL"
        if open_only:
            query += " AND status IN ('todo', 'doing')"
        query += " ORDER BY scheduled_date"
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (template_id,))
            return [self._item_from_row(i) for i in _rows_to_dicts(cursor, cursor.fetchall())]

    def list_instance_dates(self, template_id: str) -> List[str]:
        """Scheduled dates of every instance of the template, deleted ones included."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT scheduled_date FROM items WHERE recurrence_parent_id = ? AND scheduled_date IS NOT NULL",
                (template_id,),
            )
            return [row[0] for row in cursor.fetchall()]

    def expire_overdue_instances(self, user_id: str, today: Optional[date] = None) -> int:
        """Mark the user's past-scheduled open instances using the expires strategy (or none) as wontdo."""
        today_str = (today or date.today()).isoformat()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                UPDATE items
                SET status = 'wontdo', updated_at = ?
                WHERE user_id = ?
                  AND (recurrence_strategy IS NULL OR recurrence_strategy = 'expires')
                  AND recurrence_parent_id IS NOT NULL
                  AND scheduled_date IS NOT NULL
                  AND scheduled_date < ?
                  AND status IN ('todo', 'doing')
                  AND deleted_at IS NULL
            """, (_now_str(), user_id, today_str))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notification_from_row(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        notification["data"] = _load_json(notification.get("data"), {})
        return notification

    def create_notification(self, user_id: str, type_: str, title: str, message: str,
                            data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        notification_id = new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO notifications (id, user_id, type, title, message, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (notification_id, user_id, type_, title, message, json.dumps(data or {}), _now_str()))
            cursor.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,))
            return self._notification_from_row(_rows_to_dicts(cursor, cursor.fetchall())[0])

    def list_notifications(self, user_id: str, unread_only: bool = False,
                           limit: int = 50) -> List[Dict[str, Any]]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND read_at IS NULL"
        query += " ORDER BY created_at DESC LIMIT ?"
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (user_id, limit))
            return [self._notification_from_row(n) for n in _rows_to_dicts(cursor, cursor.fetchall())]

    def count_unread_notifications(self, user_id: str) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read_at IS NULL", (user_id,))
            return cursor.fetchone()[0]

    def mark_notification_read(self, user_id: str, notification_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE notifications SET read_at = ? WHERE id = ? AND user_id = ? AND read_at IS NULL",
                (_now_str(), notification_id, user_id),
            )
            return cursor.rowcount > 0

    def mark_all_notifications_read(self, user_id: str) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE notifications SET read_at = ? WHERE user_id = ? AND read_at IS NULL",
                (_now_str(), user_id),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def add_audit_log(self, user_id: Optional[str], action: str, resource_type: Optional[str] = None,
                      resource_id: Optional[str] = None, status: str = "success",
                      metadata: Optional[Dict[str, Any]] = None) -> str:
        log_id = new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO audit_logs (id, user_id, action, resource_type, resource_id, status, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (log_id, user_id, action, resource_type, resource_id, status,
                  json.dumps(metadata or {}, default=str), _now_str()))
        return log_id

    def list_audit_logs(self, user_id: Optional[str] = None, action: Optional[str] = None,
                        limit: int = 100) -> List[Dict[str, Any]]:
        conditions = []
        params: List[Any] = []
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if action:
            conditions.append("action = ?")
            params.append(action)
        query = "SELECT * FROM audit_logs"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            logs = _rows_to_dicts(cursor, cursor.fetchall())
        for log in logs:
            log["metadata"] = _load_json(log.get("metadata"), {})
        return logs

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_daily_activity(self, user_id: str, start: str, end: str) -> Dict[str, Dict[str, int]]:
        """
        Items created and completed per day in the inclusive range [start, end].

        Days come from the UTC timestamps; days without activity are absent.
        """
        activity: Dict[str, Dict[str, int]] = {"created": {}, "completed": {}}
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT substr(created_at, 1, 10) AS day, COUNT(*) FROM items
                WHERE user_id = ? AND is_recurring_template = 0 AND substr(created_at, 1, 10) BETWEEN ? AND ?
                GROUP BY day
            """, (user_id, start, end))
            activity["created"] = dict(cursor.fetchall())
            cursor.execute("""
                SELECT substr(completed_at, 1, 10) AS day, COUNT(*) FROM items
                WHERE user_id = ? AND status = 'done' AND completed_at IS NOT NULL
                  AND substr(completed_at, 1, 10) BETWEEN ? AND ?
                GROUP BY day
            """, (user_id, start, end))
            activity["completed"] = dict(cursor.fetchall())
        return activity

    def get_completions_by_project(self, user_id: str, start: str, end: str) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT items.project_id, projects.name AS project_name, projects.color AS project_color,
                       COUNT(*) AS count
                FROM items LEFT JOIN projects ON projects.id = items.project_id
                WHERE items.user_id = ? AND items.status = 'done' AND items.completed_at IS NOT NULL
                  AND substr(items.completed_at, 1, 10) BETWEEN ? AND ?
                GROUP BY items.project_id
                ORDER BY count DESC, project_name
            """, (user_id, start, end))
            return _rows_to_dicts(cursor, cursor.fetchall())

    def list_completion_days(self, user_id: str, until: str) -> List[str]:
        """Distinct days with at least one completion, on or before ``until``, latest first."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT DISTINCT substr(completed_at, 1, 10) AS day FROM items
                WHERE user_id = ? AND status = 'done' AND completed_at IS NOT NULL
                  AND substr(completed_at, 1, 10) <= ?
                ORDER BY day DESC
            """, (user_id, until))
            return [row[0] for row in cursor.fetchall()]

    def get_item_counts(self, user_id: str, by: str) -> Dict[str, Dict[str, int]]:
        """
        Total and open item counts per project or per tag of a user.

        Args:
            by: "project" or "tag"
        """
        if by == "project":
            query = """
                SELECT project_id, COUNT(*), SUM(status IN ('todo', 'doing')) FROM items
                WHERE user_id = ? AND project_id IS NOT NULL AND deleted_at IS NULL AND is_recurring_template = 0
                GROUP BY project_id
            """
        elif by == "tag":
            query = """
                SELECT item_tags.tag_id, COUNT(*), SUM(items.status IN ('todo', 'doing'))
                FROM item_tags JOIN items ON items.id = item_tags.item_id
                WHERE items.user_id = ? AND items.deleted_at IS NULL AND items.is_recurring_template = 0
                GROUP BY item_tags.tag_id
            """
        else:
            raise ValueError(f"Cannot count items by '{by}'")
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (user_id,))
            return {key: {"total": total, "active": active or 0} for key, total, active in cursor.fetchall()}

    def list_project_items(self, project_id: str) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT * FROM items
                WHERE project_id = ? AND deleted_at IS NULL AND is_recurring_template = 0
                ORDER BY position ASC, created_at DESC
            """, (project_id,))
            items = [self._item_from_row(i) for i in _rows_to_dicts(cursor, cursor.fetchall())]
            return self._attach_tags(cursor, items)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def get_admin_stats(self) -> Dict[str, Any]:
        """Row counts for the admin dashboard."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            stats: Dict[str, Any] = {}
            for table in ("users", "projects", "tags", "access_tokens", "notifications", "audit_logs"):
                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                stats[table] = cursor.fetchone()[0]

            cursor.execute("SELECT status, COUNT(*) FROM items WHERE deleted_at IS NULL GROUP BY status")
            by_status = {row[0]: row[1] for row in cursor.fetchall()}
            stats["items"] = {
                "total": sum(by_status.values()),
                "by_status": {s: by_status.get(s, 0) for s in ("todo", "doing", "done", "wontdo")},
            }
            cursor.execute("SELECT COUNT(*) FROM items WHERE is_recurring_template = 1 AND deleted_at IS NULL")
            stats["recurring_templates"] = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM items WHERE assignee_id IS NOT NULL AND assignee_id != user_id "
                           "AND deleted_at IS NULL")
            stats["delegated_items"] = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM connections WHERE status = 'accepted'")
            stats["accepted_connections"] = cursor.fetchone()[0]
        return stats
