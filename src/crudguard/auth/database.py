"""
SQLite database for principals and role tables.

Thread-safe persistence collaborator for the auth core: principals,
principal->role grants and role->permission grants.
"""

import sqlite3
import threading
import time
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set, Tuple

from loguru import logger

from ..errors import ConflictError, NotFoundError
from ..log import log_database_operation
from .models import Principal, RolePermission

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Uniqueness only binds active principals
CREATE UNIQUE INDEX IF NOT EXISTS idx_users_username_active
    ON users(username) WHERE is_active = 1;
CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email_active
    ON users(email) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS user_roles (
    user_id INTEGER NOT NULL,
    role TEXT NOT NULL,
    assigned_at TEXT NOT NULL,
    PRIMARY KEY (user_id, role),
    FOREIGN KEY (user_id) REFERENCES users(id) ON UPDATE CASCADE ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS role_permissions (
    role TEXT NOT NULL,
    permission TEXT NOT NULL,
    PRIMARY KEY (role, permission)
);

CREATE INDEX IF NOT EXISTS idx_user_roles_user ON user_roles(user_id);
"""

USER_COLUMNS = (
    "id, username, email, password_hash, first_name, last_name, "
    "is_active, created_at, updated_at"
)
UPDATABLE_FIELDS = ("username", "email", "first_name", "last_name", "is_active")
SORTABLE_COLUMNS = ("id", "username", "email", "created_at")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserDatabase:
    """
    Thread-safe user database.

    Manages principals, role grants and role permissions using SQLite.
    All operations are protected by threading.RLock and open a short-lived
    connection, so one instance can be shared across worker threads.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._init_db()

    def connect(self) -> sqlite3.Connection:
        """Open a connection with foreign keys enforced and row access by name."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _init_db(self):
        """Create tables if they don't exist."""
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock, closing(self.connect()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()

        logger.info(f"User database initialized: {self.db_path}")

    def ping(self) -> None:
        """Round-trip a trivial query; raises sqlite3.Error on failure."""
        with self._lock, closing(self.connect()) as conn:
            conn.execute("SELECT 1").fetchone()

    # ========================================================================
    # Principal Operations
    # ========================================================================

    def create_principal(self, principal: Principal) -> int:
        """
        Insert a principal.

        Args:
            principal: Principal with a hashed password; principal_id is ignored

        Returns:
            Assigned principal id

        Raises:
            ConflictError: If the username or email is taken by an active principal
        """
        now = utcnow()
        started = time.perf_counter()
        with self._lock, closing(self.connect()) as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (username, email, password_hash, first_name, last_name,
                                       is_active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        principal.username,
                        principal.email,
                        principal.password_hash,
                        principal.first_name,
                        principal.last_name,
                        1 if principal.is_active else 0,
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                log_database_operation("insert", "users", _elapsed_ms(started), e)
                raise ConflictError(str(e), "Username or email already exists") from None

            principal.principal_id = cursor.lastrowid
            principal.created_at = now
            principal.updated_at = now

        log_database_operation("insert", "users", _elapsed_ms(started))
        logger.info(f"User created: {principal.username} ({principal.principal_id})")
        return principal.principal_id

    def find_principal_by_contact(self, email: str) -> Optional[Principal]:
        """
        Get a principal by contact address.

        Active principals win over deactivated ones sharing the address.

        Args:
            email: Contact address to search for

        Returns:
            Principal if found, None otherwise
        """
        with self._lock, closing(self.connect()) as conn:
            row = conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE email = ? "
                "ORDER BY is_active DESC, id DESC LIMIT 1",
                (email,),
            ).fetchone()

        return _principal_from_row(row) if row else None

    def get_principal(self, principal_id: int) -> Optional[Principal]:
        """
        Get a principal by id.

        Args:
            principal_id: Principal id

        Returns:
            Principal if found, None otherwise
        """
        with self._lock, closing(self.connect()) as conn:
            row = conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (principal_id,)
            ).fetchone()

        return _principal_from_row(row) if row else None

    def list_principals(
        self,
        limit: int,
        offset: int,
        sort: str = "id",
        order: str = "asc",
        active_only: bool = True,
    ) -> Tuple[List[Principal], int]:
        """
        Page through principals.

        Args:
            limit: Page size
            offset: Rows to skip
            sort: Column from SORTABLE_COLUMNS
            order: "asc" or "desc"
            active_only: Hide deactivated principals

        Returns:
            (principals, total matching count)
        """
        if sort not in SORTABLE_COLUMNS:
            raise ValueError(f"cannot sort users by {sort!r}")
        direction = "DESC" if order == "desc" else "ASC"
        where = "WHERE is_active = 1" if active_only else ""

        with self._lock, closing(self.connect()) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM users {where}").fetchone()[0]
            rows = conn.execute(
                f"SELECT {USER_COLUMNS} FROM users {where} "
                f"ORDER BY {sort} {direction} LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()

        return [_principal_from_row(row) for row in rows], total

    def update_principal(self, principal_id: int, **changes) -> Principal:
        """
        Update profile fields.

        Args:
            principal_id: Principal to update
            **changes: Subset of UPDATABLE_FIELDS

        Returns:
            Updated Principal

        Raises:
            NotFoundError: If the principal does not exist
            ConflictError: If the new username or email is taken
        """
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")

        assignments = [f"{name} = ?" for name in changes]
        params = [int(value) if isinstance(value, bool) else value for value in changes.values()]
        assignments.append("updated_at = ?")
        params.append(utcnow().isoformat())

        with self._lock, closing(self.connect()) as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE users SET {', '.join(assignments)} WHERE id = ?",
                    (*params, principal_id),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ConflictError(str(e), "Username or email already exists") from None

            if cursor.rowcount == 0:
                raise NotFoundError(f"user {principal_id} not found", "User not found")

        logger.info(f"User updated: {principal_id} ({', '.join(changes) or 'no fields'})")
        return self.get_principal(principal_id)

    def deactivate_principal(self, principal_id: int) -> Principal:
        """Logically delete a principal by clearing its active flag."""
        return self.update_principal(principal_id, is_active=False)

    def purge_principal(self, principal_id: int) -> bool:
        """
        Remove a principal row; its role grants cascade.

        Args:
            principal_id: Principal to remove

        Returns:
            True if a row was deleted
        """
        with self._lock, closing(self.connect()) as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (principal_id,))
            conn.commit()
            success = cursor.rowcount > 0

        if success:
            logger.info(f"User purged: {principal_id}")
        return success

    # ========================================================================
    # Role Operations
    # ========================================================================

    def insert_role_grant(self, principal_id: int, role: str) -> bool:
        """
        Grant a role to a principal.

        Returns:
            True if the grant is new, False if it already existed

        Raises:
            NotFoundError: If the principal does not exist
        """
        with self._lock, closing(self.connect()) as conn:
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO user_roles (user_id, role, assigned_at) VALUES (?, ?, ?)",
                    (principal_id, role, utcnow().isoformat()),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise NotFoundError(f"user {principal_id} not found", "User not found") from None
            return cursor.rowcount > 0

    def delete_role_grant(self, principal_id: int, role: str) -> bool:
        with self._lock, closing(self.connect()) as conn:
            cursor = conn.execute(
                "DELETE FROM user_roles WHERE user_id = ? AND role = ?", (principal_id, role)
            )
            conn.commit()
            return cursor.rowcount > 0

    def select_roles(self, principal_id: int) -> Set[str]:
        with self._lock, closing(self.connect()) as conn:
            rows = conn.execute(
                "SELECT role FROM user_roles WHERE user_id = ?", (principal_id,)
            ).fetchall()
        return {row["role"] for row in rows}

    def role_grant_exists(self, principal_id: int, role: str) -> bool:
        with self._lock, closing(self.connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM user_roles WHERE user_id = ? AND role = ? LIMIT 1",
                (principal_id, role),
            ).fetchone()
        return row is not None

    # ========================================================================
    # Permission Operations
    # ========================================================================

    def insert_role_permission(self, role: str, permission: str) -> bool:
        """
        Grant a permission to a role.

        Returns:
            True if the grant is new, False if it already existed
        """
        with self._lock, closing(self.connect()) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO role_permissions (role, permission) VALUES (?, ?)",
                (role, permission),
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete_role_permission(self, role: str, permission: str) -> bool:
        with self._lock, closing(self.connect()) as conn:
            cursor = conn.execute(
                "DELETE FROM role_permissions WHERE role = ? AND permission = ?",
                (role, permission),
            )
            conn.commit()
            return cursor.rowcount > 0

    def select_permissions(self, role: str) -> Set[str]:
        with self._lock, closing(self.connect()) as conn:
            rows = conn.execute(
                "SELECT permission FROM role_permissions WHERE role = ?", (role,)
            ).fetchall()
        return {row["permission"] for row in rows}

    def select_all_role_permissions(self) -> Set[RolePermission]:
        with self._lock, closing(self.connect()) as conn:
            rows = conn.execute("SELECT role, permission FROM role_permissions").fetchall()
        return {RolePermission(row["role"], row["permission"]) for row in rows}

    def principal_has_permission(self, principal_id: int, permission: str) -> bool:
        """
        Check whether any role of a principal grants a permission.

        One query, so the answer is internally consistent.
        """
        with self._lock, closing(self.connect()) as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM user_roles ur
                JOIN role_permissions rp ON rp.role = ur.role
                WHERE ur.user_id = ? AND rp.permission = ?
                LIMIT 1
                """,
                (principal_id, permission),
            ).fetchone()
        return row is not None


def _principal_from_row(row: sqlite3.Row) -> Principal:
    return Principal(
        principal_id=row["id"],
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        is_active=bool(row["is_active"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
