"""Exception types raised by the SDK.

WHY: Callers need to tell apart bad input, authentication problems,
network failures, and malformed responses. One base class lets them catch
everything the SDK raises in a single except clause.

RULES:
- Every error carries a human-readable message
- ValidationError names every violated field, not just the first
- TransportError keeps the HTTP status code when there was a response
"""

from __future__ import annotations

from typing import Optional, Sequence


class DzOpenAPIError(Exception):
    """Base class for every error raised by dz_openapi."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(DzOpenAPIError, ValueError):
    """Raised when required input is missing or empty.

    The message joins every field label with the gateway's list separator,
    e.g. ``开票月份列表、发票类型代码列表不能为空``.
    """

    def __init__(self, fields: Sequence[str], message: Optional[str] = None) -> None:
        self.fields = list(fields)
        super().__init__(message or "{}不能为空".format("、".join(self.fields)))


class AuthError(DzOpenAPIError):
    """Raised when an access token cannot be acquired or refreshed."""


class TransportError(DzOpenAPIError):
    """Raised on connection failures and non-200 responses."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class ProtocolError(DzOpenAPIError):
    """Raised when a response is not JSON or lacks the expected envelope."""


class RemoteError(DzOpenAPIError):
    """Raised when the gateway reports a business failure on a call whose
    return type has no room for it (e.g. get_web_url returns a plain URL)."""
