"""
Unit tests for request-body validation and pagination parsing.
"""

import pytest

from crudguard.errors import AuthInputError
from crudguard.pagination import Pagination, PageRequest, parse_pagination
from crudguard.schemas import (
    CommentCreateRequest,
    LoginRequest,
    PostUpdateRequest,
    RegisterRequest,
    UserUpdateRequest,
    VmCreateRequest,
    VmUpdateRequest,
    is_strong_password,
    parse_body,
)


class TestPasswordStrength:
    """Test the password policy check."""

    def test_strong(self):
        assert is_strong_password("Secret123!") is None

    def test_unicode_symbol_counts_as_special(self):
        assert is_strong_password("Secret123€") is None

    @pytest.mark.parametrize("password, missing", [
        ("Sh0rt!", "at least 8 characters"),
        ("secret123!", "an uppercase letter"),
        ("SECRET123!", "a lowercase letter"),
        ("SecretABC!", "a digit"),
        ("Secret1234", "a special character"),
    ])
    def test_weak(self, password, missing):
        assert missing in is_strong_password(password)


class TestParseBody:
    """Test model validation and error reporting."""

    def test_valid_register(self):
        body = parse_body(RegisterRequest, {
            "username": "  alice ",
            "email": "alice@example.com",
            "password": "Secret123!",
        })

        assert body.username == "alice"
        assert body.first_name == ""

    def test_all_failures_reported(self):
        with pytest.raises(AuthInputError) as exc:
            parse_body(RegisterRequest, {"username": "", "email": "x", "password": "Secret123!"})

        fields = exc.value.fields
        assert {"field": "username", "message": "This field is required"} in fields
        assert {"field": "email", "message": "Invalid email format"} in fields
        assert exc.value.to_body()["error"] == "Validation failed"

    def test_non_object_body(self):
        with pytest.raises(AuthInputError) as exc:
            parse_body(LoginRequest, ["email", "password"])
        assert exc.value.to_body() == {"error": "Invalid request body"}

    def test_type_error_reported(self):
        with pytest.raises(AuthInputError) as exc:
            parse_body(LoginRequest, {"email": ["a"], "password": "x"})
        assert exc.value.fields[0]["field"] == "email"

    def test_update_changes_only_supplied(self):
        body = parse_body(UserUpdateRequest, {"first_name": "Alice"})

        assert body.changes() == {"first_name": "Alice"}

    def test_blank_post_title_rejected(self):
        with pytest.raises(AuthInputError):
            parse_body(PostUpdateRequest, {"title": "   "})

    def test_comment_length(self):
        with pytest.raises(AuthInputError) as exc:
            parse_body(CommentCreateRequest, {"content": "x" * 2001})
        assert exc.value.fields == [{"field": "content", "message": "Maximum length is 2000 characters"}]

    def test_vm_columns(self):
        body = parse_body(VmCreateRequest, {"hostname": "web-01", "ip": "::1", "pwd": "hunter2"})

        assert body.columns() == {
            "hostname": "web-01",
            "host_ip": "::1",
            "host_user": "",
            "host_pwd": "hunter2",
            "message": "",
        }

    def test_vm_update_changes_by_column(self):
        body = parse_body(VmUpdateRequest, {"user": "ops", "message": None})

        assert body.changes() == {"host_user": "ops"}

    @pytest.mark.parametrize("ip", ["", "10.0.0.256", "web-01"])
    def test_vm_address_required_and_valid(self, ip):
        with pytest.raises(AuthInputError) as exc:
            parse_body(VmCreateRequest, {"hostname": "web-01", "ip": ip})
        assert exc.value.fields[0]["field"] == "ip"


class TestPagination:
    """Test query-string paging."""

    def test_defaults(self):
        page = parse_pagination({})

        assert page == PageRequest(1, 10, "id", "asc")
        assert page.offset == 0

    def test_values(self):
        page = parse_pagination(
            {"page": "3", "per_page": "20", "sort": "username", "order": "desc"},
            sortable=("id", "username"),
        )

        assert page == PageRequest(3, 20, "username", "desc")
        assert page.offset == 40

    @pytest.mark.parametrize("query", [
        {"page": "0"},
        {"page": "abc"},
        {"per_page": "101"},
        {"page": "2147483648"},
        {"page": "99999999999999999999"},
        {"per_page": "-5"},
        {"sort": "password_hash"},
        {"order": "sideways"},
    ])
    def test_bad_values_fall_back(self, query):
        assert parse_pagination(query) == PageRequest()

    def test_largest_page_accepted(self):
        page = parse_pagination({"page": "2147483647", "per_page": "100"})

        assert page.page == 2147483647
        assert page.offset < 2 ** 63

    def test_metadata(self):
        meta = Pagination.build(PageRequest(page=2, per_page=10), total=25).to_dict()

        assert meta["total_pages"] == 3
        assert meta["has_next"] is True
        assert meta["has_prev"] is True

    def test_empty(self):
        meta = Pagination.build(PageRequest(), total=0)

        assert meta.total_pages == 0
        assert not meta.has_next
