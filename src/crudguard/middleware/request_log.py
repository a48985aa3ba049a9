"""
Request logging and the error boundary.

``request_logging_middleware`` wraps everything: it assigns a request id,
binds it to the logger and records one line per request.
``error_middleware`` sits inside it and turns GuardError (and anything
unexpected) into a scrubbed JSON response.
"""

import time
import uuid

from aiohttp import web
from loguru import logger

from ..errors import GuardError, InternalError
from ..log import log_http_request

REQUEST_ID_KEY = "request_id"
REQUEST_ID_HEADER = "X-Request-ID"


@web.middleware
async def request_logging_middleware(request: web.Request, handler):
    """Time the request and log it with its request id."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request[REQUEST_ID_KEY] = request_id
    started = time.perf_counter()
    status = 500

    with logger.contextualize(request_id=request_id):
        try:
            response = await handler(request)
            status = response.status
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except web.HTTPException as e:
            status = e.status
            e.headers[REQUEST_ID_HEADER] = request_id
            raise
        finally:
            log_http_request(
                request.method,
                request.path,
                request.headers.get("User-Agent", ""),
                status,
                (time.perf_counter() - started) * 1000,
                request_id,
            )


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render GuardError as JSON; log detail, never return it."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except GuardError as e:
        log = logger.bind(error=type(e).__name__, status=e.status)
        identity = request.get("identity")
        if identity is not None:
            log = log.bind(user_id=identity.principal_id)
        if e.status >= 500:
            log.error(f"{request.method} {request.path}: {e.detail}")
        else:
            log.warning(f"{request.method} {request.path}: {e.detail}")
        return web.json_response(e.to_body(), status=e.status)
    except Exception:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        error = InternalError()
        return web.json_response(error.to_body(), status=error.status)
