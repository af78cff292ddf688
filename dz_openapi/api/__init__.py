"""Gateway API package: signing, tokens, request execution, and polling.

WHY: Keeps every piece of gateway communication in one place so callers
only ever talk to DzOpenAPIClient.

RULES:
- All HTTP calls go through RequestExecutor (no direct httpx usage elsewhere)
- Only TokenManager mutates token state
"""

from dz_openapi.api.client import DzOpenAPIClient
from dz_openapi.api.executor import RequestExecutor
from dz_openapi.api.poller import TaskPoller
from dz_openapi.api.tokens import TokenManager

__all__ = ["DzOpenAPIClient", "RequestExecutor", "TaskPoller", "TokenManager"]
