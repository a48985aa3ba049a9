"""
Unit tests for post and comment storage and health reporting.
"""

import pytest

from crudguard.comments import CommentDatabase
from crudguard.errors import NotFoundError
from crudguard.health import HealthChecker, HealthStatus, Check, database_check
from crudguard.posts import PostDatabase

from conftest import PASSWORD


@pytest.fixture
def posts(db):
    return PostDatabase(db)


@pytest.fixture
def author(users):
    principal, _ = users.register("alice", "alice@example.com", PASSWORD)
    return principal.principal_id


class TestPostDatabase:
    """Test post persistence."""

    def test_create_and_get(self, posts, author):
        post = posts.create(author, "Hello", "World")

        fetched = posts.get(post.post_id)
        assert fetched.title == "Hello"
        assert fetched.author_id == author
        assert posts.owner_of(post.post_id) == author

    def test_unknown_author(self, posts):
        with pytest.raises(NotFoundError):
            posts.create(999, "Hello", "World")

    def test_update(self, posts, author):
        post = posts.create(author, "Hello", "World")

        updated = posts.update(post.post_id, title="Bye")

        assert updated.title == "Bye"
        assert updated.content == "World"

    def test_update_rejects_unknown_fields(self, posts, author):
        post = posts.create(author, "Hello", "World")

        with pytest.raises(ValueError):
            posts.update(post.post_id, author_id=1)

    def test_soft_delete(self, posts, author):
        post = posts.create(author, "Hello", "World")

        posts.soft_delete(post.post_id)

        with pytest.raises(NotFoundError):
            posts.get(post.post_id)
        with pytest.raises(NotFoundError):
            posts.soft_delete(post.post_id)
        assert posts.list_posts(10, 0) == ([], 0)

    def test_list_paging(self, posts, author):
        for i in range(5):
            posts.create(author, f"Post {i}", "")

        page, total = posts.list_posts(2, 2, sort="id", order="desc")

        assert total == 5
        assert [p.title for p in page] == ["Post 2", "Post 1"]


class TestCommentDatabase:
    """Test comment persistence."""

    @pytest.fixture
    def comments(self, posts):
        return CommentDatabase(posts)

    @pytest.fixture
    def post_id(self, posts, author):
        return posts.create(author, "Hello", "World").post_id

    def test_create_and_get(self, comments, post_id, author):
        comment = comments.create(post_id, author, "Nice")

        fetched = comments.get(comment.comment_id)
        assert fetched.content == "Nice"
        assert fetched.post_id == post_id
        assert comments.owner_of(comment.comment_id) == author

    def test_unknown_post(self, comments, author):
        with pytest.raises(NotFoundError) as exc:
            comments.create(999, author, "Nice")
        assert exc.value.public_message == "Post not found"

    def test_unknown_author(self, comments, post_id):
        with pytest.raises(NotFoundError) as exc:
            comments.create(post_id, 999, "Nice")
        assert exc.value.public_message == "User not found"

    def test_update_and_soft_delete(self, comments, post_id, author):
        comment = comments.create(post_id, author, "Nice")

        assert comments.update(comment.comment_id, "Edited").content == "Edited"

        comments.soft_delete(comment.comment_id)
        with pytest.raises(NotFoundError):
            comments.get(comment.comment_id)
        with pytest.raises(NotFoundError):
            comments.soft_delete(comment.comment_id)
        assert comments.list_for_post(post_id, 10, 0) == ([], 0)

    def test_deleted_post(self, comments, posts, post_id, author):
        comment = comments.create(post_id, author, "Nice")
        posts.soft_delete(post_id)

        with pytest.raises(NotFoundError):
            comments.get(comment.comment_id)
        with pytest.raises(NotFoundError):
            comments.update(comment.comment_id, "Edited")
        with pytest.raises(NotFoundError):
            comments.list_for_post(post_id, 10, 0)

    def test_list_paging(self, comments, post_id, author):
        for i in range(4):
            comments.create(post_id, author, f"Comment {i}")

        page, total = comments.list_for_post(post_id, 2, 0, order="desc")

        assert total == 4
        assert [c.content for c in page] == ["Comment 3", "Comment 2"]

    def test_list_rejects_unknown_sort(self, comments, post_id):
        with pytest.raises(ValueError):
            comments.list_for_post(post_id, 10, 0, sort="content")


class TestHealth:
    """Test check aggregation."""

    @pytest.mark.asyncio
    async def test_database_check(self, db):
        checker = HealthChecker("test")
        checker.add_check("database", database_check(db))

        report = await checker.get_health()

        assert report.status is HealthStatus.HEALTHY
        assert report.to_dict()["checks"]["database"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_worst_status_wins(self):
        async def degraded():
            return Check(HealthStatus.DEGRADED, "slow")

        async def broken():
            raise RuntimeError("boom")

        checker = HealthChecker("test")
        checker.add_check("slow", degraded)
        assert (await checker.get_health()).status is HealthStatus.DEGRADED

        checker.add_check("broken", broken)
        report = await checker.get_health()
        assert report.status is HealthStatus.UNHEALTHY
        assert report.checks["broken"].error == "RuntimeError"
