"""Signed HTTP POST execution against the gateway.

WHY: Every business endpoint is a POST of a JSON body with three auth
headers. Centralizing the send path keeps signing, header layout, and
failure mapping identical for all of them.

HOW: invoke() gets a token from the TokenManager, stamps the current time,
signs the exact body string it is about to send, and POSTs it through a
shared httpx.AsyncClient. post() is the unsigned variant used by the token
and auth-code endpoints.

RULES:
- Exactly one attempt per call; retrying is the poller's job
- Non-200 status or connection failure -> TransportError
- 200 with a body that is not JSON -> ProtocolError
- The decoded body is returned verbatim; business success fields are not
  interpreted here
- A legacy head.infoCode of "10000" (token rejected) invalidates the cached
  token; the response is still returned to the caller
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Mapping, Optional, Union

import httpx

from dz_openapi.api.models import Credentials
from dz_openapi.api.signer import build_signed_request
from dz_openapi.api.tokens import TokenManager
from dz_openapi.config import SDK_VERSION, TOKEN_INVALID_CODE
from dz_openapi.errors import ProtocolError, TransportError, ValidationError

logger = logging.getLogger(__name__)

JsonBody = Union[Mapping[str, Any], list, str]


def _now_ms() -> int:
    return int(time.time() * 1000)


def encode_body(body: JsonBody) -> str:
    """Serialize a request body; strings are taken as already-encoded JSON."""
    if body is None:
        raise ValidationError(["requestBody"])
    if isinstance(body, str):
        return body
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"))


def is_token_invalid(response: Any) -> bool:
    """True when a legacy envelope reports the access token as rejected."""
    if not isinstance(response, Mapping):
        return False
    head = response.get("head")
    return isinstance(head, Mapping) and str(head.get("infoCode")) == TOKEN_INVALID_CODE


class RequestExecutor:
    """Issues signed POST calls and decodes their JSON responses."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: Credentials,
        clock: Optional[Callable[[], int]] = None,
        sdk_version: str = SDK_VERSION,
    ) -> None:
        self._http = http
        self._credentials = credentials
        self._clock = clock or _now_ms
        self._sdk_version = sdk_version
        self.tokens = TokenManager(credentials, self.post, clock=self._clock)

    def url_for(self, path: str) -> str:
        if not path or not path.strip():
            raise ValidationError(["path"])
        path = path.strip()
        if path.startswith(("http://", "https://")):
            return path
        return self._credentials.api_host + path

    async def invoke(
        self,
        path: str,
        body: JsonBody,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """POST a signed request and return the decoded JSON response."""
        url = self.url_for(path)
        body_text = encode_body(body)
        token = await self.tokens.current_token()
        request = build_signed_request(
            url,
            body_text,
            token,
            self._credentials.app_secret,
            self._clock(),
            headers,
        )
        logger.debug("POST %s (timestamp=%s)", request.url, request.headers["timestamp"])

        response = await self._send(request.url, request.body, request.headers)
        if is_token_invalid(response):
            self.tokens.invalidate(token)
        return response

    async def post(
        self,
        path: str,
        body: JsonBody,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """POST without signing (token and auth-code endpoints)."""
        url = self.url_for(path)
        logger.debug("POST %s (unsigned)", url)
        return await self._send(url, encode_body(body), headers or {})

    async def _send(self, url: str, body: str, headers: Mapping[str, str]) -> Any:
        all_headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "sdkVersion": self._sdk_version,
        }
        all_headers.update(headers)

        try:
            resp = await self._http.post(url, content=body.encode("utf-8"), headers=all_headers)
        except httpx.HTTPError as exc:
            raise TransportError(
                "Request to {} failed: {}".format(url, exc), url=url
            ) from exc

        if resp.status_code != 200:
            raise TransportError(
                "Request to {} failed with status {}".format(url, resp.status_code),
                status_code=resp.status_code,
                url=url,
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise ProtocolError(
                "Response from {} is not valid JSON: {}".format(url, exc)
            ) from exc
