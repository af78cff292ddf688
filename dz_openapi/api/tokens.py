"""Access-token lifecycle: acquisition, refresh, expiry, invalidation.

WHY: Every signed call needs a valid application token. Tokens live for
days, may be refreshed during the last day of their life, and must be
re-acquired once they are within two hours of expiring. Callers should
never have to think about any of that.

HOW: TokenManager owns one immutable TokenState and replaces it whole on
every issuance. current_token() runs the entire read-decide-fetch sequence
under a per-instance asyncio.Lock, so concurrent tasks sharing a client
trigger at most one network call; tasks that waited on the lock re-read
the state and find the fresh token. Holding time is
``now - issued_at``; with E = expires_in:

    holding <  E - 24h            -> cached token, no network call
    E - 24h <= holding <= E - 2h  -> refresh (grant_type=refresh_token)
    holding >  E - 2h             -> new token (grant_type=client_credentials)

RULES:
- Any failure during acquire/refresh raises AuthError and leaves the state
  absent, so the next call starts with a full acquisition
- invalidate() drops the token; it is a no-op if a different token has
  already replaced the one the caller saw rejected
- The lock is per instance; separate clients never contend
- The lock is created lazily, so a manager belongs to one event loop
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Mapping, Optional

from dz_openapi.api.models import ABSENT_TOKEN, Credentials, TokenState
from dz_openapi.api.signer import md5_hex
from dz_openapi.config import (
    ACCESS_TOKEN_PATH,
    TOKEN_EXPIRY_MARGIN_MS,
    TOKEN_REFRESH_WINDOW_MS,
)
from dz_openapi.errors import AuthError, DzOpenAPIError

logger = logging.getLogger(__name__)

PostFn = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenManager:
    """Serves a valid access token, hiding acquisition and refresh."""

    def __init__(
        self,
        credentials: Credentials,
        post: PostFn,
        clock: Optional[Callable[[], int]] = None,
        token_path: str = ACCESS_TOKEN_PATH,
    ) -> None:
        self._credentials = credentials
        self._post = post
        self._clock = clock or _now_ms
        self._token_path = token_path
        self._state: TokenState = ABSENT_TOKEN
        self._lock: Optional[asyncio.Lock] = None

    @property
    def state(self) -> TokenState:
        """The current token snapshot (read-only)."""
        return self._state

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def current_token(self) -> str:
        """Return a usable access token, acquiring or refreshing as needed.

        Raises:
            AuthError: the token endpoint failed or reported an error.
        """
        async with self._get_lock():
            state = self._state
            if not state.is_present:
                state = await self._acquire()
            else:
                holding = state.holding_ms(self._clock())
                expires_in = state.expires_in_ms
                if holding > expires_in - TOKEN_EXPIRY_MARGIN_MS:
                    logger.info("Access token expires within 2h, acquiring a new one")
                    state = await self._acquire()
                elif holding >= expires_in - TOKEN_REFRESH_WINDOW_MS:
                    state = await self._refresh(state)
            if state.access_token is None:
                raise AuthError("No access token held for app {}".format(self._credentials.app_key))
            return state.access_token

    def invalidate(self, access_token: Optional[str] = None) -> None:
        """Drop the cached token after the gateway rejected it.

        When ``access_token`` is given, the state is only cleared if it
        still holds that token.
        """
        current = self._state
        if not current.is_present:
            return
        if access_token is not None and current.access_token != access_token:
            return
        self._state = ABSENT_TOKEN
        logger.info("Access token invalidated for app %s", self._credentials.app_key)

    # ------------------------------------------------------------------
    # Grants (called with the lock held)
    # ------------------------------------------------------------------

    async def _acquire(self) -> TokenState:
        body = {
            "grant_type": "client_credentials",
            "client_appkey": self._credentials.app_key,
            "client_secret": md5_hex(self._credentials.app_secret),
        }
        state = await self._issue(body, "acquire")
        logger.info(
            "Acquired access token for app %s (expires in %d ms)",
            self._credentials.app_key,
            state.expires_in_ms,
        )
        return state

    async def _refresh(self, current: TokenState) -> TokenState:
        if not current.refresh_token:
            logger.info("No refresh token held, acquiring a new access token")
            return await self._acquire()
        body = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
        }
        state = await self._issue(body, "refresh")
        logger.info("Refreshed access token for app %s", self._credentials.app_key)
        return state

    async def _issue(self, body: Dict[str, Any], action: str) -> TokenState:
        self._state = ABSENT_TOKEN
        try:
            response = await self._post(self._token_path, body)
        except DzOpenAPIError as exc:
            raise AuthError(
                "Failed to {} access token from {}: {}".format(
                    action, self._credentials.api_host, exc.message
                )
            ) from exc

        state = self._parse(response, action)
        self._state = state
        return state

    def _parse(self, response: Any, action: str) -> TokenState:
        if not isinstance(response, Mapping):
            raise AuthError("Token endpoint returned no JSON object during {}".format(action))

        payload: Mapping[str, Any] = response
        for wrapper in ("body", "value"):
            if isinstance(response.get(wrapper), Mapping):
                payload = response[wrapper]
                break

        error = payload.get("error_msg") or payload.get("info_msg")
        if error:
            raise AuthError(str(error))

        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not access_token or expires_in is None:
            raise AuthError(
                "Token endpoint response lacks access_token or expires_in during {}".format(action)
            )
        try:
            expires_in_ms = int(expires_in)
        except (TypeError, ValueError) as exc:
            raise AuthError("Invalid expires_in value: {!r}".format(expires_in)) from exc

        return TokenState(
            access_token=str(access_token),
            expires_in_ms=expires_in_ms,
            refresh_token=payload.get("refresh_token"),
            issued_at_ms=self._clock(),
        )
