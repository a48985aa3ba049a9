"""
Posts: records and SQLite persistence.

Shares the database file and lock of UserDatabase so author foreign keys
are enforced.
"""

import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .auth.database import UserDatabase, utcnow
from .errors import NotFoundError

SCHEMA = """
CREATE TABLE IF NOT EXISTS posts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    author_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    FOREIGN KEY (author_id) REFERENCES users(id) ON UPDATE CASCADE ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_id);
"""

POST_COLUMNS = "id, author_id, title, content, created_at, updated_at, deleted_at"
SORTABLE_COLUMNS = ("id", "title", "created_at", "updated_at")


@dataclass
class Post:
    post_id: int
    author_id: int
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.post_id,
            "author_id": self.author_id,
            "title": self.title,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class PostDatabase:
    """Thread-safe post storage on the user database file."""

    def __init__(self, users: UserDatabase):
        self.users = users
        with self.users.lock, closing(self.users.connect()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def create(self, author_id: int, title: str, content: str) -> Post:
        """
        Insert a post.

        Raises:
            NotFoundError: If the author does not exist
        """
        now = utcnow().isoformat()
        with self.users.lock, closing(self.users.connect()) as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO posts (author_id, title, content, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (author_id, title, content, now, now),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise NotFoundError(f"user {author_id} not found", "User not found") from None
            post_id = cursor.lastrowid

        logger.info(f"Post created: {post_id} by user {author_id}")
        return self.get(post_id)

    def get(self, post_id: int) -> Post:
        """
        Fetch a live post.

        Raises:
            NotFoundError: If the post is missing or soft-deleted
        """
        with self.users.lock, closing(self.users.connect()) as conn:
            row = conn.execute(
                f"SELECT {POST_COLUMNS} FROM posts WHERE id = ? AND deleted_at IS NULL",
                (post_id,),
            ).fetchone()

        if row is None:
            raise NotFoundError(f"post {post_id} not found", "Post not found")
        return _post_from_row(row)

    def owner_of(self, post_id: int) -> int:
        return self.get(post_id).author_id

    def list_posts(
        self,
        limit: int,
        offset: int,
        sort: str = "id",
        order: str = "asc",
        author_id: Optional[int] = None,
    ) -> Tuple[List[Post], int]:
        """Page through live posts, optionally by one author."""
        if sort not in SORTABLE_COLUMNS:
            raise ValueError(f"cannot sort posts by {sort!r}")
        direction = "DESC" if order == "desc" else "ASC"
        where, params = "WHERE deleted_at IS NULL", []
        if author_id is not None:
            where += " AND author_id = ?"
            params.append(author_id)

        with self.users.lock, closing(self.users.connect()) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM posts {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {POST_COLUMNS} FROM posts {where} "
                f"ORDER BY {sort} {direction} LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()

        return [_post_from_row(row) for row in rows], total

    def update(self, post_id: int, **changes) -> Post:
        unknown = set(changes) - {"title", "content"}
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        if not changes:
            return self.get(post_id)

        assignments = [f"{name} = ?" for name in changes] + ["updated_at = ?"]
        params = [*changes.values(), utcnow().isoformat(), post_id]
        with self.users.lock, closing(self.users.connect()) as conn:
            cursor = conn.execute(
                f"UPDATE posts SET {', '.join(assignments)} WHERE id = ? AND deleted_at IS NULL",
                params,
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"post {post_id} not found", "Post not found")

        return self.get(post_id)

    def soft_delete(self, post_id: int) -> None:
        """
        Mark a post deleted in one update.

        Raises:
            NotFoundError: If the post is missing or already deleted
        """
        with self.users.lock, closing(self.users.connect()) as conn:
            cursor = conn.execute(
                "UPDATE posts SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (utcnow().isoformat(), post_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"post {post_id} not found", "Post not found")

        logger.info(f"Post deleted: {post_id}")


def _post_from_row(row) -> Post:
    return Post(
        post_id=row["id"],
        author_id=row["author_id"],
        title=row["title"],
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        deleted_at=datetime.fromisoformat(row["deleted_at"]) if row["deleted_at"] else None,
    )
