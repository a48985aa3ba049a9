"""
Comments on posts: records and SQLite persistence.

A comment is only visible while both it and its post are live.
"""

import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .auth.database import utcnow
from .errors import NotFoundError
from .posts import PostDatabase

SCHEMA = """
CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id INTEGER NOT NULL,
    author_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    FOREIGN KEY (post_id) REFERENCES posts(id) ON UPDATE CASCADE ON DELETE CASCADE,
    FOREIGN KEY (author_id) REFERENCES users(id) ON UPDATE CASCADE ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(post_id);
"""

COMMENT_COLUMNS = "c.id, c.post_id, c.author_id, c.content, c.created_at, c.updated_at, c.deleted_at"
SORTABLE_COLUMNS = ("id", "created_at", "updated_at")

# Live comment on a live post
LIVE = "c.deleted_at IS NULL AND p.deleted_at IS NULL"
LIVE_POST = "SELECT id FROM posts WHERE deleted_at IS NULL"


@dataclass
class Comment:
    comment_id: int
    post_id: int
    author_id: int
    content: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.comment_id,
            "post_id": self.post_id,
            "author_id": self.author_id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class CommentDatabase:
    """Thread-safe comment storage on the user database file."""

    def __init__(self, posts: PostDatabase):
        self.users = posts.users
        with self.users.lock, closing(self.users.connect()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def create(self, post_id: int, author_id: int, content: str) -> Comment:
        """
        Attach a comment to a live post.

        Raises:
            NotFoundError: If the post is missing or deleted, or the author
                does not exist
        """
        now = utcnow().isoformat()
        with self.users.lock, closing(self.users.connect()) as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO comments (post_id, author_id, content, created_at, updated_at) "
                    f"SELECT ?, ?, ?, ?, ? WHERE ? IN ({LIVE_POST})",
                    (post_id, author_id, content, now, now, post_id),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise NotFoundError(f"user {author_id} not found", "User not found") from None
            if cursor.rowcount == 0:
                raise NotFoundError(f"post {post_id} not found", "Post not found")
            comment_id = cursor.lastrowid

        logger.info(f"Comment created: {comment_id} on post {post_id} by user {author_id}")
        return self.get(comment_id)

    def get(self, comment_id: int) -> Comment:
        """
        Fetch a live comment.

        Raises:
            NotFoundError: If the comment or its post is missing or deleted
        """
        with self.users.lock, closing(self.users.connect()) as conn:
            row = conn.execute(
                f"SELECT {COMMENT_COLUMNS} FROM comments c JOIN posts p ON p.id = c.post_id "
                f"WHERE c.id = ? AND {LIVE}",
                (comment_id,),
            ).fetchone()

        if row is None:
            raise NotFoundError(f"comment {comment_id} not found", "Comment not found")
        return _comment_from_row(row)

    def owner_of(self, comment_id: int) -> int:
        return self.get(comment_id).author_id

    def list_for_post(
        self,
        post_id: int,
        limit: int,
        offset: int,
        sort: str = "id",
        order: str = "asc",
    ) -> Tuple[List[Comment], int]:
        """
        Page through the live comments of a live post.

        Raises:
            NotFoundError: If the post is missing or deleted
        """
        if sort not in SORTABLE_COLUMNS:
            raise ValueError(f"cannot sort comments by {sort!r}")
        direction = "DESC" if order == "desc" else "ASC"

        with self.users.lock, closing(self.users.connect()) as conn:
            live_post = conn.execute(
                "SELECT 1 FROM posts WHERE id = ? AND deleted_at IS NULL", (post_id,)
            ).fetchone()
            if live_post is None:
                raise NotFoundError(f"post {post_id} not found", "Post not found")
            total = conn.execute(
                "SELECT COUNT(*) FROM comments WHERE post_id = ? AND deleted_at IS NULL",
                (post_id,),
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT {COMMENT_COLUMNS} FROM comments c JOIN posts p ON p.id = c.post_id "
                f"WHERE c.post_id = ? AND {LIVE} "
                f"ORDER BY c.{sort} {direction} LIMIT ? OFFSET ?",
                (post_id, limit, offset),
            ).fetchall()

        return [_comment_from_row(row) for row in rows], total

    def update(self, comment_id: int, content: str) -> Comment:
        with self.users.lock, closing(self.users.connect()) as conn:
            cursor = conn.execute(
                "UPDATE comments SET content = ?, updated_at = ? "
                f"WHERE id = ? AND deleted_at IS NULL AND post_id IN ({LIVE_POST})",
                (content, utcnow().isoformat(), comment_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"comment {comment_id} not found", "Comment not found")

        return self.get(comment_id)

    def soft_delete(self, comment_id: int) -> None:
        """
        Mark a comment deleted in one update.

        Raises:
            NotFoundError: If the comment is missing or already deleted
        """
        with self.users.lock, closing(self.users.connect()) as conn:
            cursor = conn.execute(
                "UPDATE comments SET deleted_at = ? "
                f"WHERE id = ? AND deleted_at IS NULL AND post_id IN ({LIVE_POST})",
                (utcnow().isoformat(), comment_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"comment {comment_id} not found", "Comment not found")

        logger.info(f"Comment deleted: {comment_id}")


def _comment_from_row(row) -> Comment:
    return Comment(
        comment_id=row["id"],
        post_id=row["post_id"],
        author_id=row["author_id"],
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        deleted_at=datetime.fromisoformat(row["deleted_at"]) if row["deleted_at"] else None,
    )
