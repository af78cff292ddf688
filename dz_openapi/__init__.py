"""dz-openapi: async client SDK for the tax-filing / invoice-collection gateway.

WHY: The gateway requires signed requests, a rotating application token,
and multi-step polling for long-running invoice jobs. This package hides
all three behind one client object.

HOW: Four layers, leaves first: signer (request checksum), tokens
(access-token lifecycle), executor (signed POST + JSON decoding), poller
(status -> wait -> collect workflows). DzOpenAPIClient wires them together.

RULES:
- The SDK is content-agnostic: payloads go out and come back as plain JSON
- Every failure raises a DzOpenAPIError subclass
"""

from dz_openapi.api.client import DzOpenAPIClient
from dz_openapi.api.models import Credentials, PollResult, TaskStatus
from dz_openapi.config import PACKAGE_VERSION
from dz_openapi.errors import (
    AuthError,
    DzOpenAPIError,
    ProtocolError,
    RemoteError,
    TransportError,
    ValidationError,
)

__version__ = PACKAGE_VERSION

__all__ = [
    "AuthError",
    "Credentials",
    "DzOpenAPIClient",
    "DzOpenAPIError",
    "PollResult",
    "ProtocolError",
    "RemoteError",
    "TaskStatus",
    "TransportError",
    "ValidationError",
]
