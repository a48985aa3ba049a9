"""
HTTP application.

``create_app`` is the composition root: it builds every component from
Settings, wires the guard pipeline in front of each route and returns an
aiohttp Application.
"""

import asyncio
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from aiohttp import web
from loguru import logger

from . import __version__
from .auth.database import SORTABLE_COLUMNS as USER_SORTABLE_COLUMNS, UserDatabase
from .auth.jwt_handler import TokenService
from .auth.models import RoleGrant
from .auth.passwords import PasswordHasher
from .auth.permissions import AuthorizationStore, Permission, Role
from .auth.user_manager import UserManager
from .comments import SORTABLE_COLUMNS as COMMENT_SORTABLE_COLUMNS, CommentDatabase
from .config import Settings
from .datastore import VmDatabase
from .errors import AuthInputError, NotFoundError
from .health import HealthChecker, HealthStatus, database_check
from .middleware.guard import (
    Guard,
    IdentityMode,
    RequireOwnershipOrRole,
    RequirePermission,
    RequireRole,
    client_address,
    current_identity,
    emit_rate_limit_headers,
)
from .middleware.rate_limit import RateLimiters
from .middleware.request_log import error_middleware, request_logging_middleware
from .pagination import Pagination, parse_pagination
from .posts import SORTABLE_COLUMNS as POST_SORTABLE_COLUMNS, PostDatabase
from .schemas import (
    CommentCreateRequest,
    CommentUpdateRequest,
    LoginRequest,
    PostCreateRequest,
    PostUpdateRequest,
    RegisterRequest,
    RoleAssignmentRequest,
    UserUpdateRequest,
    VmCreateRequest,
    VmUpdateRequest,
    parse_body,
)

API_PREFIX = "/api/v1"

# SQLite INTEGER range; larger ids cannot name a row
MAX_ROW_ID = 2 ** 63 - 1


@dataclass
class Services:
    """Components owned by one application instance."""
    settings: Settings
    db: UserDatabase
    posts: PostDatabase
    comments: CommentDatabase
    vms: VmDatabase
    hasher: PasswordHasher
    tokens: TokenService
    authz: AuthorizationStore
    users: UserManager
    limiters: RateLimiters
    guard: Guard
    health: HealthChecker


SERVICES_KEY = web.AppKey("services", Services)


def build_services(settings: Settings, clock: Callable[[], float] = time.time) -> Services:
    """
    Construct every component from settings.

    Args:
        settings: Service configuration
        clock: Wall-clock source shared by the token service and limiters

    Returns:
        Wired Services
    """
    db = UserDatabase(settings.db_path)
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    tokens = TokenService(
        settings.secret_key.get_secret_value(),
        lifetime=settings.token_lifetime,
        refresh_window=settings.refresh_window,
        clock=clock,
    )
    authz = AuthorizationStore(db)
    authz.initialize_defaults()
    users = UserManager(db, hasher, tokens, authz, default_role=settings.default_role or None)
    limiters = RateLimiters.create(
        general_limit=settings.general_limit,
        auth_limit=settings.auth_limit,
        strict_limit=settings.strict_limit,
        window=settings.rate_window,
        sweep_interval=settings.sweep_interval,
        clock=clock,
    )
    health = HealthChecker(__version__)
    health.add_check("database", database_check(db, timeout=settings.guard_timeout))

    posts = PostDatabase(db)

    return Services(
        settings=settings,
        db=db,
        posts=posts,
        comments=CommentDatabase(posts),
        vms=VmDatabase(db),
        hasher=hasher,
        tokens=tokens,
        authz=authz,
        users=users,
        limiters=limiters,
        guard=Guard(users, authz, timeout=settings.guard_timeout),
        health=health,
    )


def create_app(settings: Settings, clock: Callable[[], float] = time.time) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        settings: Service configuration
        clock: Wall-clock source (tests inject a controllable one)

    Returns:
        Configured aiohttp Application
    """
    services = build_services(settings, clock)

    app = web.Application(middlewares=[request_logging_middleware, error_middleware])
    app[SERVICES_KEY] = services
    app.on_response_prepare.append(emit_rate_limit_headers)
    app.on_startup.append(_start_limiters)
    app.on_cleanup.append(_stop_limiters)
    app.add_routes(Handlers(services).routes())

    logger.info(f"Application created (db={settings.db_path}, version={__version__})")
    return app


async def _start_limiters(app: web.Application) -> None:
    app[SERVICES_KEY].limiters.start()


async def _stop_limiters(app: web.Application) -> None:
    app[SERVICES_KEY].limiters.stop()


async def read_json(request: web.Request) -> Any:
    """Decode a JSON body or raise AuthInputError."""
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise AuthInputError("request body is not valid JSON", "Invalid JSON body") from None


def path_id(request: web.Request, name: str, resource: str) -> int:
    """
    Read a numeric path segment as a row id.

    Raises:
        NotFoundError: If the segment cannot name a stored row
    """
    raw = request.match_info[name]
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if not 0 < value <= MAX_ROW_ID:
        raise NotFoundError(f"{resource.lower()} {raw[:32]} not found", f"{resource} not found")
    return value


def query_id(request: web.Request, name: str) -> Optional[int]:
    """
    Read an optional positive id from the query string.

    Raises:
        AuthInputError: If present but not a positive id
    """
    raw = request.query.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if not 0 < value <= MAX_ROW_ID:
        raise AuthInputError(f"{name} is not a valid id", f"{name} must be a positive integer")
    return value


class Handlers:
    """Route handlers; each is wrapped by the guard in ``routes``."""

    def __init__(self, services: Services):
        self.s = services

    def routes(self):
        guard, limiters = self.s.guard, self.s.limiters
        protect = guard.protect

        user_owner = RequireOwnershipOrRole(owner=self._path_user_id, role=Role.ADMIN)
        post_owner = RequireOwnershipOrRole(owner=self._post_owner, role=Role.ADMIN)
        comment_owner = RequireOwnershipOrRole(owner=self._comment_owner, role=Role.ADMIN)
        manage = RequirePermission(Permission.MANAGE_SYSTEM)
        p = API_PREFIX

        return [
            # Authentication
            web.post(f"{p}/auth/register",
                     protect(IdentityMode.NONE, limiter=limiters.auth)(self.register)),
            web.post(f"{p}/auth/login",
                     protect(IdentityMode.NONE, limiter=limiters.auth)(self.login)),
            web.post(f"{p}/auth/refresh",
                     protect(IdentityMode.OPTIONAL, limiter=limiters.strict)(self.refresh)),
            web.get(f"{p}/auth/me",
                    protect(IdentityMode.REQUIRED, limiter=limiters.general)(self.me)),

            # Users
            web.get(f"{p}/users",
                    protect(requirement=RequirePermission(Permission.READ_USER),
                            limiter=limiters.general)(self.list_users)),
            web.get(p + "/users/{user_id:\\d+}",
                    protect(requirement=user_owner, limiter=limiters.general)(self.get_user)),
            web.put(p + "/users/{user_id:\\d+}",
                    protect(requirement=user_owner, limiter=limiters.strict)(self.update_user)),
            web.delete(p + "/users/{user_id:\\d+}",
                       protect(requirement=RequireRole(Role.ADMIN),
                               limiter=limiters.strict)(self.delete_user)),
            web.post(p + "/users/{user_id:\\d+}/roles",
                     protect(requirement=RequirePermission(Permission.MANAGE_SYSTEM),
                             limiter=limiters.strict)(self.assign_role)),
            web.delete(p + "/users/{user_id:\\d+}/roles/{role}",
                       protect(requirement=RequirePermission(Permission.MANAGE_SYSTEM),
                               limiter=limiters.strict)(self.remove_role)),

            # Posts
            web.get(f"{p}/posts",
                    protect(IdentityMode.OPTIONAL, limiter=limiters.general)(self.list_posts)),
            web.get(p + "/posts/{post_id:\\d+}",
                    protect(IdentityMode.OPTIONAL, limiter=limiters.general)(self.get_post)),
            web.post(f"{p}/posts",
                     protect(requirement=RequirePermission(Permission.CREATE_POST),
                             limiter=limiters.general)(self.create_post)),
            web.put(p + "/posts/{post_id:\\d+}",
                    protect(requirement=post_owner, limiter=limiters.general)(self.update_post)),
            web.delete(p + "/posts/{post_id:\\d+}",
                       protect(requirement=post_owner, limiter=limiters.strict)(self.delete_post)),

            # Comments
            web.get(p + "/posts/{post_id:\\d+}/comments",
                    protect(IdentityMode.OPTIONAL, limiter=limiters.general)(self.list_comments)),
            web.post(p + "/posts/{post_id:\\d+}/comments",
                     protect(requirement=RequirePermission(Permission.CREATE_COMMENT),
                             limiter=limiters.general)(self.create_comment)),
            web.get(p + "/comments/{comment_id:\\d+}",
                    protect(IdentityMode.OPTIONAL, limiter=limiters.general)(self.get_comment)),
            web.put(p + "/comments/{comment_id:\\d+}",
                    protect(requirement=comment_owner, limiter=limiters.general)(self.update_comment)),
            web.delete(p + "/comments/{comment_id:\\d+}",
                       protect(requirement=comment_owner, limiter=limiters.strict)(self.delete_comment)),

            # VM datastore
            web.get(f"{p}/datastore/data",
                    protect(requirement=manage, limiter=limiters.general)(self.list_vms)),
            web.post(f"{p}/datastore/data",
                     protect(requirement=manage, limiter=limiters.strict)(self.insert_vm)),
            web.get(p + "/datastore/data/{vm_id:\\d+}",
                    protect(requirement=manage, limiter=limiters.general)(self.search_vm)),
            web.put(p + "/datastore/data/{vm_id:\\d+}",
                    protect(requirement=manage, limiter=limiters.strict)(self.update_vm)),
            web.delete(p + "/datastore/data/{vm_id:\\d+}",
                       protect(requirement=manage, limiter=limiters.strict)(self.delete_vm)),

            # Health
            web.get("/health", self.health),
        ]

    # ========================================================================
    # Owner lookups
    # ========================================================================

    async def _path_user_id(self, request: web.Request) -> int:
        return path_id(request, "user_id", "User")

    async def _post_owner(self, request: web.Request) -> int:
        post_id = path_id(request, "post_id", "Post")
        return await asyncio.to_thread(self.s.posts.owner_of, post_id)

    async def _comment_owner(self, request: web.Request) -> int:
        comment_id = path_id(request, "comment_id", "Comment")
        return await asyncio.to_thread(self.s.comments.owner_of, comment_id)

    # ========================================================================
    # Authentication
    # ========================================================================

    async def register(self, request: web.Request) -> web.Response:
        """
        POST /api/v1/auth/register
        Body: {"username", "email", "password", "first_name"?, "last_name"?}
        Returns: 201 {"user": {...}, "token": "..."}
        """
        body = parse_body(RegisterRequest, await read_json(request))
        principal, token = await asyncio.to_thread(
            self.s.users.register,
            body.username,
            body.email,
            body.password,
            body.first_name,
            body.last_name,
            client_address(request),
        )
        return web.json_response({"user": principal.to_public(), "token": token}, status=201)

    async def login(self, request: web.Request) -> web.Response:
        """
        POST /api/v1/auth/login
        Body: {"email": "...", "password": "..."}
        Returns: {"user": {...}, "token": "..."}
        """
        body = parse_body(LoginRequest, await read_json(request))
        principal, token = await asyncio.to_thread(
            self.s.users.authenticate, body.email, body.password, client_address(request)
        )
        return web.json_response({"user": principal.to_public(), "token": token})

    async def refresh(self, request: web.Request) -> web.Response:
        """
        POST /api/v1/auth/refresh
        Headers: Authorization: Bearer <token within an hour of expiry>
        Returns: {"token": "..."}
        """
        token = self.s.users.refresh(request.headers.get("Authorization"), client_address(request))
        return web.json_response({"token": token})

    async def me(self, request: web.Request) -> web.Response:
        identity = current_identity(request)
        roles = await asyncio.to_thread(self.s.authz.roles_of, identity.principal_id)
        return web.json_response({
            "user_id": identity.principal_id,
            "username": identity.username,
            "email": identity.email,
            "roles": sorted(roles),
        })

    # ========================================================================
    # Users
    # ========================================================================

    async def list_users(self, request: web.Request) -> web.Response:
        page = parse_pagination(request.query, USER_SORTABLE_COLUMNS)
        principals, total = await asyncio.to_thread(
            self.s.db.list_principals, page.per_page, page.offset, page.sort, page.order
        )
        return web.json_response({
            "data": [principal.to_public() for principal in principals],
            "pagination": Pagination.build(page, total).to_dict(),
        })

    async def get_user(self, request: web.Request) -> web.Response:
        user_id = path_id(request, "user_id", "User")
        principal = await asyncio.to_thread(self.s.db.get_principal, user_id)
        if principal is None:
            raise NotFoundError(f"user {user_id} not found", "User not found")
        return web.json_response(principal.to_public())

    async def update_user(self, request: web.Request) -> web.Response:
        user_id = path_id(request, "user_id", "User")
        body = parse_body(UserUpdateRequest, await read_json(request))
        changes = body.changes()

        # Only administrators flip the active flag
        if "is_active" in changes:
            identity = current_identity(request)
            await self.s.guard.authorize(identity.principal_id, RequireRole(Role.ADMIN))

        principal = await asyncio.to_thread(self.s.db.update_principal, user_id, **changes)
        return web.json_response(principal.to_public())

    async def delete_user(self, request: web.Request) -> web.Response:
        user_id = path_id(request, "user_id", "User")
        await asyncio.to_thread(self.s.db.deactivate_principal, user_id)
        return web.json_response({"message": "User deactivated successfully"})

    async def assign_role(self, request: web.Request) -> web.Response:
        user_id = path_id(request, "user_id", "User")
        body = parse_body(RoleAssignmentRequest, await read_json(request))
        await asyncio.to_thread(self.s.authz.assign_role, user_id, body.role)
        roles = await asyncio.to_thread(self.s.authz.roles_of, user_id)
        return web.json_response(
            {"grant": asdict(RoleGrant(user_id, body.role)), "roles": sorted(roles)}, status=201
        )

    async def remove_role(self, request: web.Request) -> web.Response:
        user_id = path_id(request, "user_id", "User")
        role = request.match_info["role"]
        await asyncio.to_thread(self.s.authz.remove_role, user_id, role)
        roles = await asyncio.to_thread(self.s.authz.roles_of, user_id)
        return web.json_response({"roles": sorted(roles)})

    # ========================================================================
    # Posts
    # ========================================================================

    async def list_posts(self, request: web.Request) -> web.Response:
        page = parse_pagination(request.query, POST_SORTABLE_COLUMNS)
        author_id = query_id(request, "author_id")
        posts, total = await asyncio.to_thread(
            self.s.posts.list_posts,
            page.per_page,
            page.offset,
            page.sort,
            page.order,
            author_id,
        )
        return web.json_response({
            "data": [post.to_public() for post in posts],
            "pagination": Pagination.build(page, total).to_dict(),
        })

    async def get_post(self, request: web.Request) -> web.Response:
        post = await asyncio.to_thread(self.s.posts.get, path_id(request, "post_id", "Post"))
        return web.json_response(post.to_public())

    async def create_post(self, request: web.Request) -> web.Response:
        identity = current_identity(request)
        body = parse_body(PostCreateRequest, await read_json(request))
        post = await asyncio.to_thread(
            self.s.posts.create, identity.principal_id, body.title, body.content
        )
        return web.json_response(post.to_public(), status=201)

    async def update_post(self, request: web.Request) -> web.Response:
        body = parse_body(PostUpdateRequest, await read_json(request))
        post = await asyncio.to_thread(
            self.s.posts.update, path_id(request, "post_id", "Post"), **body.changes()
        )
        return web.json_response(post.to_public())

    async def delete_post(self, request: web.Request) -> web.Response:
        await asyncio.to_thread(self.s.posts.soft_delete, path_id(request, "post_id", "Post"))
        return web.json_response({"message": "Post deleted successfully"})

    # ========================================================================
    # Comments
    # ========================================================================

    async def list_comments(self, request: web.Request) -> web.Response:
        post_id = path_id(request, "post_id", "Post")
        page = parse_pagination(request.query, COMMENT_SORTABLE_COLUMNS)
        comments, total = await asyncio.to_thread(
            self.s.comments.list_for_post, post_id, page.per_page, page.offset, page.sort, page.order
        )
        return web.json_response({
            "data": [comment.to_public() for comment in comments],
            "pagination": Pagination.build(page, total).to_dict(),
        })

    async def create_comment(self, request: web.Request) -> web.Response:
        """
        POST /api/v1/posts/{post_id}/comments
        Body: {"content": "..."}
        Returns: 201 comment
        """
        identity = current_identity(request)
        post_id = path_id(request, "post_id", "Post")
        body = parse_body(CommentCreateRequest, await read_json(request))
        comment = await asyncio.to_thread(
            self.s.comments.create, post_id, identity.principal_id, body.content
        )
        return web.json_response(comment.to_public(), status=201)

    async def get_comment(self, request: web.Request) -> web.Response:
        comment = await asyncio.to_thread(
            self.s.comments.get, path_id(request, "comment_id", "Comment")
        )
        return web.json_response(comment.to_public())

    async def update_comment(self, request: web.Request) -> web.Response:
        body = parse_body(CommentUpdateRequest, await read_json(request))
        comment = await asyncio.to_thread(
            self.s.comments.update, path_id(request, "comment_id", "Comment"), body.content
        )
        return web.json_response(comment.to_public())

    async def delete_comment(self, request: web.Request) -> web.Response:
        await asyncio.to_thread(
            self.s.comments.soft_delete, path_id(request, "comment_id", "Comment")
        )
        return web.json_response({"message": "Comment deleted successfully"})

    # ========================================================================
    # VM datastore
    # ========================================================================

    async def list_vms(self, request: web.Request) -> web.Response:
        """
        GET /api/v1/datastore/data
        Returns: {"vm_list": [...]} (host secrets omitted)
        """
        vms = await asyncio.to_thread(self.s.vms.list_all)
        return web.json_response({"vm_list": [vm.to_public() for vm in vms]})

    async def insert_vm(self, request: web.Request) -> web.Response:
        """
        POST /api/v1/datastore/data
        Body: {"hostname", "ip", "user"?, "pwd"?, "message"?}
        Returns: 201 host entry
        """
        body = parse_body(VmCreateRequest, await read_json(request))
        vm = await asyncio.to_thread(self.s.vms.insert, **body.columns())
        return web.json_response(vm.to_public(), status=201)

    async def search_vm(self, request: web.Request) -> web.Response:
        vm = await asyncio.to_thread(self.s.vms.search, path_id(request, "vm_id", "Data"))
        return web.json_response(vm.to_public())

    async def update_vm(self, request: web.Request) -> web.Response:
        body = parse_body(VmUpdateRequest, await read_json(request))
        vm = await asyncio.to_thread(
            self.s.vms.update, path_id(request, "vm_id", "Data"), **body.changes()
        )
        return web.json_response(vm.to_public())

    async def delete_vm(self, request: web.Request) -> web.Response:
        await asyncio.to_thread(self.s.vms.delete, path_id(request, "vm_id", "Data"))
        return web.json_response({"message": "Data deleted successfully"})

    # ========================================================================
    # Health
    # ========================================================================

    async def health(self, request: web.Request) -> web.Response:
        report = await self.s.health.get_health()
        status = 503 if report.status is HealthStatus.UNHEALTHY else 200
        return web.json_response(report.to_dict(), status=status)
