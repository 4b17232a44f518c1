"""
Request context middleware for log correlation.

WHAT: Middleware that extracts request context (IP address, user agent, request ID)
and makes it available throughout the request lifecycle.

WHY: Payment providers retry webhooks, sometimes minutes apart. A request ID
on every log line ties the signature check, the dispatched transition and
the commit of one delivery together. Captured per request:
- Client IP address (handling proxies via X-Forwarded-For)
- User agent (Stripe and Cashfree identify themselves here)
- Request ID, reusing the caller's X-Request-ID when it sends a sane one
- Request timing for performance monitoring

HOW: Uses Starlette's request state to store context, which can be accessed
by any handler or dependency during the request lifecycle. Uses contextvars
for async-safe access to request context from anywhere in the codebase.
"""

import logging
import re
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Incoming IDs are echoed into logs and headers, so only accept plain tokens
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._\-]{1,128}$")


@dataclass
class RequestContext:
    """
    Container for request-scoped context data.

    Fields:
    - request_id: Unique identifier for the request (for log correlation)
    - ip_address: Client's real IP (considering proxies)
    - user_agent: Client's browser/application identifier
    - path: Request path (for logging without full URL)
    - method: HTTP method (GET, POST, etc.)
    """

    request_id: str
    ip_address: str
    user_agent: Optional[str]
    path: str
    method: str


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """
    Get the current request context.

    WHY: Lets services log the request ID without passing the request
    object through every call.

    Returns:
        RequestContext if within a request, None otherwise
    """
    return _request_context.get()


def get_request_id() -> Optional[str]:
    """Request ID of the current request, if any."""
    context = _request_context.get()
    return context.request_id if context else None


def resolve_request_id(incoming: Optional[str]) -> str:
    """
    Pick the request ID for a request.

    WHAT: Reuses the caller's X-Request-ID when it is a plain token,
    otherwise generates a UUID4.

    Args:
        incoming: Value of the X-Request-ID header, if present

    Returns:
        Request ID to use for this request
    """
    if incoming:
        candidate = incoming.strip()
        if _REQUEST_ID_PATTERN.match(candidate):
            return candidate
    return str(uuid.uuid4())


def get_client_ip(request: Request) -> str:
    """
    Extract the real client IP address from a request.

    HOW: Checks headers in order of trust:
    1. X-Real-IP (set by some proxies like nginx)
    2. X-Forwarded-For (comma-separated list, first is original client)
    3. request.client.host (direct connection IP)

    Security Note:
        These headers can be spoofed by clients if not behind a trusted proxy.
        Never use the result to authenticate a webhook; signatures do that.
    """
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip.strip()

    # Format: "client, proxy1, proxy2"
    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


class RequestContextFilter(logging.Filter):
    """
    Logging filter that stamps records with the current request ID.

    WHY: Lets a log format reference %(request_id)s without every call
    site passing it in extra={}.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id() or "-"
        return True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures and stores request context.

    HOW: Stores context in both:
    - request.state (for access from request handlers)
    - ContextVar (for access from services/DAOs without request object)

    The request ID is echoed back in the X-Request-ID response header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))

        context = RequestContext(
            request_id=request_id,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            path=request.url.path,
            method=request.method,
        )

        request.state.context = context
        token = _request_context.set(context)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={
                    "request_id": request_id,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "ip_address": context.ip_address,
                },
            )
            return response

        finally:
            _request_context.reset(token)
