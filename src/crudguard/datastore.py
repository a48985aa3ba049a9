"""
VM datastore: host records kept for operators.

Rows are never removed; deletion flips ``del_yn`` to 'Y' and stamps
``del_dt`` in the same update. The host login secret is stored but never
returned by ``to_public``.
"""

from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from .auth.database import UserDatabase, utcnow
from .errors import NotFoundError

SCHEMA = """
CREATE TABLE IF NOT EXISTS vms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostname TEXT NOT NULL,
    host_user TEXT NOT NULL DEFAULT '',
    host_ip TEXT NOT NULL,
    host_pwd TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    del_yn TEXT NOT NULL DEFAULT 'N' CHECK (del_yn IN ('Y', 'N')),
    reg_dt TEXT NOT NULL,
    mod_dt TEXT NOT NULL,
    del_dt TEXT
);
"""

VM_COLUMNS = "id, hostname, host_user, host_ip, host_pwd, message, del_yn, reg_dt, mod_dt, del_dt"
UPDATABLE_FIELDS = frozenset({"hostname", "host_user", "host_ip", "host_pwd", "message"})


@dataclass
class VmRecord:
    """
    One host entry.

    Attributes:
        vm_id: Row id
        hostname: Host name
        host_user: Login user on the host
        host_ip: Host address
        host_pwd: Login secret on the host (never serialized)
        message: Free-form operator note
        deleted: True once soft-deleted
        registered_at: Insert time
        modified_at: Last update time
        deleted_at: Soft-delete time
    """
    vm_id: int
    hostname: str
    host_user: str
    host_ip: str
    host_pwd: str
    message: str
    deleted: bool
    registered_at: datetime
    modified_at: datetime
    deleted_at: Optional[datetime] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.vm_id,
            "hostname": self.hostname,
            "user": self.host_user,
            "ip": self.host_ip,
            "message": self.message,
            "created_at": self.registered_at.isoformat(),
            "updated_at": self.modified_at.isoformat(),
        }


class VmDatabase:
    """Thread-safe host storage on the user database file."""

    def __init__(self, users: UserDatabase):
        self.users = users
        with self.users.lock, closing(self.users.connect()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def insert(
        self,
        hostname: str,
        host_ip: str,
        host_user: str = "",
        host_pwd: str = "",
        message: str = "",
    ) -> VmRecord:
        now = utcnow().isoformat()
        with self.users.lock, closing(self.users.connect()) as conn:
            cursor = conn.execute(
                "INSERT INTO vms (hostname, host_user, host_ip, host_pwd, message, reg_dt, mod_dt) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (hostname, host_user, host_ip, host_pwd, message, now, now),
            )
            conn.commit()
            vm_id = cursor.lastrowid

        logger.info(f"VM registered: {vm_id} ({hostname})")
        return self.search(vm_id)

    def search(self, vm_id: int) -> VmRecord:
        """
        Fetch a live host entry.

        Raises:
            NotFoundError: If no live row has this id
        """
        with self.users.lock, closing(self.users.connect()) as conn:
            row = conn.execute(
                f"SELECT {VM_COLUMNS} FROM vms WHERE id = ? AND del_yn = 'N'", (vm_id,)
            ).fetchone()

        if row is None:
            raise NotFoundError(f"vm {vm_id} not found", "Data not found")
        return _vm_from_row(row)

    def list_all(self) -> List[VmRecord]:
        """Every live host entry, oldest first."""
        with self.users.lock, closing(self.users.connect()) as conn:
            rows = conn.execute(
                f"SELECT {VM_COLUMNS} FROM vms WHERE del_yn = 'N' ORDER BY id"
            ).fetchall()
        return [_vm_from_row(row) for row in rows]

    def update(self, vm_id: int, **changes) -> VmRecord:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        if not changes:
            return self.search(vm_id)

        assignments = [f"{name} = ?" for name in changes] + ["mod_dt = ?"]
        params = [*changes.values(), utcnow().isoformat(), vm_id]
        with self.users.lock, closing(self.users.connect()) as conn:
            cursor = conn.execute(
                f"UPDATE vms SET {', '.join(assignments)} WHERE id = ? AND del_yn = 'N'", params
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"vm {vm_id} not found", "Data not found")

        logger.info(f"VM updated: {vm_id} ({', '.join(sorted(changes))})")
        return self.search(vm_id)

    def delete(self, vm_id: int) -> None:
        """
        Soft-delete a host entry; the flag and timestamp change together.

        Raises:
            NotFoundError: If the row is missing or already deleted
        """
        with self.users.lock, closing(self.users.connect()) as conn:
            cursor = conn.execute(
                "UPDATE vms SET del_yn = 'Y', del_dt = ? WHERE id = ? AND del_yn = 'N'",
                (utcnow().isoformat(), vm_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"vm {vm_id} not found", "Data not found")

        logger.info(f"VM deleted: {vm_id}")


def _vm_from_row(row) -> VmRecord:
    return VmRecord(
        vm_id=row["id"],
        hostname=row["hostname"],
        host_user=row["host_user"],
        host_ip=row["host_ip"],
        host_pwd=row["host_pwd"],
        message=row["message"],
        deleted=row["del_yn"] == "Y",
        registered_at=datetime.fromisoformat(row["reg_dt"]),
        modified_at=datetime.fromisoformat(row["mod_dt"]),
        deleted_at=datetime.fromisoformat(row["del_dt"]) if row["del_dt"] else None,
    )
