"""
Error taxonomy for a chat turn.

Everything before generation starts is raised as one of these and rendered
by the API as a plain-text response with the matching status code. Failures
after generation starts never raise: they become a terminal `error` event
on the stream instead.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors surfaced to the caller."""
    status_code = 500
    code = "internal"
    default_message = "An error occurred while processing your request!"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class Unauthenticated(ChatError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Unauthorized"


class Forbidden(ChatError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class NotFound(ChatError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class RateLimited(ChatError):
    status_code = 429
    code = "rate_limited"
    default_message = (
        "You have exceeded your maximum number of messages for the day! "
        "Please try again later."
    )


class MalformedRequest(ChatError):
    status_code = 400
    code = "malformed_request"
    default_message = "Invalid request body"


class UpstreamUnavailable(ChatError):
    status_code = 502
    code = "upstream_unavailable"
    default_message = "Upstream service unavailable"


class Timeout(ChatError):
    status_code = 504
    code = "timeout"
    default_message = "Generation timed out"


class PersistenceFailure(ChatError):
    status_code = 500
    code = "persistence_failure"
    default_message = "Failed to save message"


class UnknownToolError(Exception):
    """The model asked for a tool that is not registered. Fatal for the turn."""
    code = "unknown_tool"

    def __init__(self, tool_name: str, available: list[str] | None = None):
        self.tool_name = tool_name
        self.available = available or []
        avail = ", ".join(self.available) or "none"
        super().__init__(f"Unknown tool '{tool_name}'. Available: {avail}")
