"""
Request-body models.

Each model trims its string fields, then runs a flat list of checks that
append to an error accumulator; all failures are reported together.
"""

import ipaddress
import re
import unicodedata
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from .auth.passwords import MAX_SECRET_BYTES
from .errors import AuthInputError

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")

Check = Callable[[Any], Optional[str]]
ModelT = TypeVar("ModelT", bound=BaseModel)


def is_present(value: Any) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return "This field is required"
    return None


def max_length(limit: int) -> Check:
    def check(value: Any) -> Optional[str]:
        if isinstance(value, str) and len(value) > limit:
            return f"Maximum length is {limit} characters"
        return None
    return check


def min_length(limit: int) -> Check:
    def check(value: Any) -> Optional[str]:
        if isinstance(value, str) and len(value) < limit:
            return f"Minimum length is {limit} characters"
        return None
    return check


def is_email_address(value: Any) -> Optional[str]:
    if value and not EMAIL_RE.match(value):
        return "Invalid email format"
    return None


def is_valid_username(value: Any) -> Optional[str]:
    if value and not USERNAME_RE.match(value):
        return "Username must be 3-20 characters, alphanumeric and underscores only"
    return None


def is_strong_password(value: Any) -> Optional[str]:
    if not value:
        return None
    problems = []
    if len(value) < 8:
        problems.append("at least 8 characters")
    if len(value.encode("utf-8")) > MAX_SECRET_BYTES:
        problems.append(f"at most {MAX_SECRET_BYTES} bytes")
    if not any(ch.isupper() for ch in value):
        problems.append("an uppercase letter")
    if not any(ch.islower() for ch in value):
        problems.append("a lowercase letter")
    if not any(ch.isdigit() for ch in value):
        problems.append("a digit")
    if not any(unicodedata.category(ch)[0] in ("P", "S") for ch in value):
        problems.append("a special character")
    if problems:
        return "Password must contain " + ", ".join(problems)
    return None


def is_ip_address(value: Any) -> Optional[str]:
    if value:
        try:
            ipaddress.ip_address(value)
        except ValueError:
            return "Invalid IP address"
    return None


class RequestModel(BaseModel):
    """Base for request bodies: strips strings, then runs CHECKS."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    # field name -> checks, evaluated in order; every failure is kept
    CHECKS: ClassVar[Dict[str, Tuple[Check, ...]]] = {}

    @model_validator(mode="after")
    def run_checks(self):
        errors: List[Dict[str, str]] = []
        for field, checks in self.CHECKS.items():
            value = getattr(self, field)
            for check in checks:
                message = check(value)
                if message:
                    errors.append({"field": field, "message": message})
        if errors:
            raise FieldErrors(errors)
        return self


class FieldErrors(ValueError):
    """Accumulated per-field failures raised from a model validator."""

    def __init__(self, errors: List[Dict[str, str]]):
        self.errors = errors
        super().__init__("; ".join(f"{e['field']}: {e['message']}" for e in errors))


class RegisterRequest(RequestModel):
    username: str = ""
    email: str = ""
    password: str = ""
    first_name: str = ""
    last_name: str = ""

    CHECKS = {
        "username": (is_present, is_valid_username),
        "email": (is_present, is_email_address, max_length(100)),
        "password": (is_present, is_strong_password),
        "first_name": (max_length(50),),
        "last_name": (max_length(50),),
    }


class LoginRequest(RequestModel):
    email: str = ""
    password: str = ""

    CHECKS = {
        "email": (is_present,),
        "password": (is_present,),
    }


class UserUpdateRequest(RequestModel):
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: Optional[bool] = None

    CHECKS = {
        "username": (is_valid_username,),
        "email": (is_email_address, max_length(100)),
        "first_name": (max_length(50),),
        "last_name": (max_length(50),),
    }

    def changes(self) -> Dict[str, Any]:
        """Fields the client actually supplied."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class RoleAssignmentRequest(RequestModel):
    role: str = ""

    CHECKS = {
        "role": (is_present, max_length(50)),
    }


class PostCreateRequest(RequestModel):
    title: str = ""
    content: str = ""

    CHECKS = {
        "title": (is_present, max_length(200)),
        "content": (max_length(10000),),
    }


class PostUpdateRequest(RequestModel):
    title: Optional[str] = None
    content: Optional[str] = None

    CHECKS = {
        "title": (min_length(1), max_length(200)),
        "content": (max_length(10000),),
    }

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class CommentCreateRequest(RequestModel):
    content: str = ""

    CHECKS = {
        "content": (is_present, max_length(2000)),
    }


class CommentUpdateRequest(CommentCreateRequest):
    pass


# JSON keys -> vms columns
VM_FIELDS = {"hostname": "hostname", "ip": "host_ip", "user": "host_user", "pwd": "host_pwd", "message": "message"}


class VmCreateRequest(RequestModel):
    hostname: str = ""
    ip: str = ""
    user: str = ""
    pwd: str = ""
    message: str = ""

    CHECKS = {
        "hostname": (is_present, max_length(255)),
        "ip": (is_present, is_ip_address),
        "user": (max_length(100),),
        "pwd": (max_length(MAX_SECRET_BYTES),),
        "message": (max_length(2000),),
    }

    def columns(self) -> Dict[str, Any]:
        return {VM_FIELDS[name]: value for name, value in self.model_dump().items()}


class VmUpdateRequest(RequestModel):
    hostname: Optional[str] = None
    ip: Optional[str] = None
    user: Optional[str] = None
    pwd: Optional[str] = None
    message: Optional[str] = None

    CHECKS = {
        "hostname": (min_length(1), max_length(255)),
        "ip": (is_ip_address,),
        "user": (max_length(100),),
        "pwd": (max_length(MAX_SECRET_BYTES),),
        "message": (max_length(2000),),
    }

    def changes(self) -> Dict[str, Any]:
        """Supplied fields, keyed by column."""
        supplied = self.model_dump(exclude_unset=True, exclude_none=True)
        return {VM_FIELDS[name]: value for name, value in supplied.items()}


def parse_body(model: Type[ModelT], data: Any) -> ModelT:
    """
    Validate a decoded JSON body against a request model.

    Raises:
        AuthInputError: Listing each failing field (never its value)
    """
    if not isinstance(data, dict):
        raise AuthInputError("request body must be a JSON object", "Invalid request body")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = []
        for error in e.errors(include_input=False):
            ctx_error = error.get("ctx", {}).get("error")
            if isinstance(ctx_error, FieldErrors):
                fields.extend(ctx_error.errors)
            else:
                location = ".".join(str(part) for part in error["loc"]) or "body"
                fields.append({"field": location, "message": error["msg"]})
        raise AuthInputError(
            f"validation failed for {model.__name__}: {[f['field'] for f in fields]}",
            "Validation failed",
            fields=fields,
        ) from None
