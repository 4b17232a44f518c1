"""
Middleware package.

WHY: Middleware provides cross-cutting concerns like request correlation
and logging that apply to all requests.
"""

from scribe.middleware.request_context import (
    RequestContextMiddleware,
    RequestContextFilter,
    get_request_context,
    get_request_id,
    get_client_ip,
    get_user_agent,
    RequestContext,
)

__all__ = [
    "RequestContextMiddleware",
    "RequestContextFilter",
    "get_request_context",
    "get_request_id",
    "get_client_ip",
    "get_user_agent",
    "RequestContext",
]
