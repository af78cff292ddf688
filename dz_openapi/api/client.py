"""Async client facade for the tax-filing / invoice-collection gateway.

WHY: Applications want one object that holds the credentials, keeps the
access token fresh, signs every call, and runs the multi-step invoice
workflows. This module wires the signer, token manager, executor, and
poller together behind that object.

HOW: DzOpenAPIClient is an async context manager. Entering it opens a
pooled httpx.AsyncClient and builds a RequestExecutor (which owns the
TokenManager) and a TaskPoller on top of it. Exiting closes the pool.
rest() is the generic entry point; the named methods below are thin
wrappers with fixed gateway paths, plus the polling workflows.

RULES:
- Use as: async with DzOpenAPIClient(credentials) as client: ...
- One client per event loop; the token lock belongs to that loop
- Every failure raises; nothing returns None to signal an error
- Login passwords (dlxxDto.DLMM) are encrypted with the injected
  encryptor before they leave the process
"""

from __future__ import annotations

import base64
import copy
import json
import logging
from collections.abc import Callable
from typing import Any, Dict, List, Mapping, Optional

import httpx

from dz_openapi.api.executor import RequestExecutor
from dz_openapi.api.models import Credentials, PollResult, normalize_envelope
from dz_openapi.api.poller import (
    CHECKED_INVOICE_COLLECT_JOB,
    INVOICE_COLLECT_JOB,
    SleepFn,
    TaskPoller,
)
from dz_openapi.config import (
    AUTH_CODE_PATH,
    HTTP_CONNECT_TIMEOUT_S,
    HTTP_TIMEOUT_S,
    POLL_INTERVAL_S,
    POLL_MAX_ATTEMPTS,
    TOKEN_INVALID_CODE,
    WEB_LOGIN_FRAGMENT,
)
from dz_openapi.errors import AuthError, RemoteError, ValidationError

logger = logging.getLogger(__name__)

Encryptor = Callable[[bytes], bytes]


class DzOpenAPIClient:
    """Authenticated client for the gateway.

    Args:
        credentials: Application credentials.
        web_host: Host of the embeddable web app, needed by get_web_url().
        encryptor: Encrypts login passwords (DES on the gateway side).
        transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
        clock: Optional epoch-milliseconds clock.
        sleep: Optional sleep coroutine used between polls.
        poll_interval: Seconds between status rounds.
        poll_max_attempts: Status rounds before giving up.
    """

    def __init__(
        self,
        credentials: Credentials,
        web_host: Optional[str] = None,
        encryptor: Optional[Encryptor] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[SleepFn] = None,
        poll_interval: float = POLL_INTERVAL_S,
        poll_max_attempts: int = POLL_MAX_ATTEMPTS,
    ) -> None:
        self._credentials = credentials
        self._web_host = web_host.strip().rstrip("/") if web_host else None
        self._encryptor = encryptor
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._poll_interval = poll_interval
        self._poll_max_attempts = poll_max_attempts
        self._http: Optional[httpx.AsyncClient] = None
        self._executor: Optional[RequestExecutor] = None
        self._poller: Optional[TaskPoller] = None

    async def __aenter__(self) -> DzOpenAPIClient:
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(HTTP_TIMEOUT_S, connect=HTTP_CONNECT_TIMEOUT_S),
            transport=self._transport,
        )
        self._executor = RequestExecutor(self._http, self._credentials, clock=self._clock)
        self._poller = TaskPoller(
            self._executor.invoke,
            interval=self._poll_interval,
            max_attempts=self._poll_max_attempts,
            sleep=self._sleep,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._http:
            await self._http.aclose()
        self._http = None
        self._executor = None
        self._poller = None

    def _ensure_executor(self) -> RequestExecutor:
        if self._executor is None:
            raise _not_entered()
        return self._executor

    def _ensure_poller(self) -> TaskPoller:
        if self._poller is None:
            raise _not_entered()
        return self._poller

    # ------------------------------------------------------------------
    # Generic calls
    # ------------------------------------------------------------------

    async def rest(self, path: str, body: Any) -> Any:
        """POST a signed JSON object to ``path`` and return the response.

        ``body`` may be a mapping or a JSON object string.
        """
        return await self._ensure_executor().invoke(path, _parse_body(body))

    async def rest_array(self, path: str, raw_json: str) -> Any:
        """POST a raw JSON string (e.g. a top-level array) exactly as given."""
        if not isinstance(raw_json, str) or not raw_json:
            raise ValidationError(["jsonParameter"])
        return await self._ensure_executor().invoke(path, raw_json)

    # ------------------------------------------------------------------
    # Web login
    # ------------------------------------------------------------------

    async def get_auth_code(self, org_id: Optional[str] = None) -> Any:
        """Request a one-time login code for the embeddable web app."""
        executor = self._ensure_executor()
        token = await executor.tokens.current_token()
        path = "{}?{}".format(AUTH_CODE_PATH, httpx.QueryParams({"access_token": token}))
        return await executor.post(path, {"userId": "0", "orgId": org_id})

    async def get_web_url(
        self,
        page: str,
        org_id: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
        target_app_key: Optional[str] = None,
    ) -> str:
        """Build a single-sign-on URL for a page of the embeddable web app.

        Args:
            page: Page identifier agreed with the vendor.
            org_id: Organization id, or None for batch pages.
            params: Extra query parameters appended URL-encoded.
            target_app_key: App key to log in with, defaults to ours.

        Raises:
            AuthError: the gateway rejected the access token.
            RemoteError: the gateway refused to issue a code.
        """
        missing = [name for name, value in (("page", page), ("webHost", self._web_host)) if not value]
        if missing:
            raise ValidationError(missing)

        response = await self.get_auth_code(org_id)
        envelope = normalize_envelope(response)
        if not envelope.is_success:
            self._ensure_executor().tokens.invalidate()
            if envelope.code == TOKEN_INVALID_CODE:
                raise AuthError("token解析失败，请重试", code=envelope.code)
            raise RemoteError(
                "获取验证码时遇到错误,错误码:{}；错误信息：{}".format(envelope.code, envelope.message),
                code=envelope.code,
            )

        url = "{}{}?appkey={}&page={}&code={}".format(
            self._web_host,
            WEB_LOGIN_FRAGMENT,
            target_app_key or self._credentials.app_key,
            page,
            envelope.payload,
        )
        if params:
            url += "&" + str(httpx.QueryParams(dict(params)))
        return url

    # ------------------------------------------------------------------
    # Polling workflows
    # ------------------------------------------------------------------

    async def collect_invoices(self, params: Any, add_job: Optional[bool] = None) -> PollResult:
        """Download and collect invoices for kpyfs x jxxbzs x fplxs."""
        return await self._ensure_poller().run(INVOICE_COLLECT_JOB, params, add_job)

    async def collect_checked_invoices(
        self, params: Any, add_job: Optional[bool] = None
    ) -> PollResult:
        """Collect checked (deductible) invoices for skssqs x fplxs."""
        return await self._ensure_poller().run(CHECKED_INVOICE_COLLECT_JOB, params, add_job)

    async def get_invoice_task_status(self, params: Any) -> List[Dict[str, Any]]:
        """One status pass over the invoice download tasks."""
        return await self._ensure_poller().query_status(INVOICE_COLLECT_JOB, params)

    async def get_check_task_status(self, params: Any) -> List[Dict[str, Any]]:
        """One status pass over the check-state update tasks."""
        return await self._ensure_poller().query_status(CHECKED_INVOICE_COLLECT_JOB, params)

    async def fetch_invoice_async(self, params: Any) -> Any:
        return await self._ensure_poller().poll_sequence(
            "/GDS/invoice/collecteDataAsync", "/GDS/invoice/asyncRequestResult", params
        )

    async def fetch_invoice_async_private_cloud(self, params: Any) -> Any:
        return await self._ensure_poller().poll_sequence(
            "/GDS/invoice/collecteDataAsyncForPrivateCloud",
            "/GDS/invoice/asyncRequestResultForPrivateCloud",
            params,
        )

    async def get_invoice_async_private_cloud(self, params: Any) -> Any:
        """Invoice verification published by the public cloud for private clouds."""
        return await self._ensure_poller().poll_sequence(
            "/GDS/invoice/getInvoiceAsync",
            "/GDS/invoice/asyncRequestResultForPrivateCloud",
            params,
        )

    # ------------------------------------------------------------------
    # Endpoint wrappers
    # ------------------------------------------------------------------

    async def create_org(self, body: Any) -> Any:
        return await self.rest("/AGG/org/create", body)

    async def delete_org(self, body: Any) -> Any:
        return await self.rest("/AGG/org/delete", body)

    async def update_org(self, body: Any) -> Any:
        return await self.rest("/AGG/org/update", body)

    async def query_org_detail_info(self, body: Any) -> Any:
        return await self.rest("/AGG/org/queryOrgInfo", body)

    async def fetch_invoice(self, body: Any) -> Any:
        return await self.rest("/GDS/invoice/fetchInvoice", body)

    async def collect_invoice_batch(self, body: Any) -> Any:
        return await self.rest("/GDS/invoice/collectBatch", body)

    async def query_invoice_summary(self, body: Any) -> Any:
        return await self.rest("/GDS/invoice/querySummary", body)

    async def save_tax_login_info(self, body: Any) -> Any:
        """Save tax-bureau login info, encrypting dlxxDto.DLMM first.

        Raises:
            ValidationError: a password is present but no encryptor was given.
        """
        request = copy.deepcopy(_parse_body(body))
        login = request.get("dlxxDto")
        if isinstance(login, dict) and login.get("DLMM") is not None:
            if self._encryptor is None:
                raise ValidationError(["encryptor"], "保存网报账号信息需要配置密码加密器")
            secret = self._encryptor(str(login["DLMM"]).encode("utf-8"))
            login["DLMM"] = base64.b64encode(secret).decode("ascii")
        return await self.rest("/AGG/org/tax-login-info/save", request)


def _not_entered() -> RuntimeError:
    return RuntimeError(
        "DzOpenAPIClient must be used as an async context manager: "
        "async with DzOpenAPIClient(credentials) as client: ..."
    )


def _parse_body(body: Any) -> Dict[str, Any]:
    if body is None:
        raise ValidationError(["jsonParameter"])
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError as exc:
            raise ValidationError(
                ["jsonParameter"], "接口参数转 json 异常：{}".format(exc)
            ) from exc
    if not isinstance(body, Mapping):
        raise ValidationError(["jsonParameter"], "接口参数必须是 JSON 对象")
    return dict(body)
