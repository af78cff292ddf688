"""Tests for the signed request executor.

WHY: The executor is the single send path for every gateway call. It must
attach the right headers, sign exactly the bytes it sends, make exactly
one attempt, and map failures onto the SDK's error types.

HOW: A RequestExecutor is built on an httpx.AsyncClient whose transport is
the FakeGateway, so requests go through real httpx machinery.

RULES:
- A non-200 response is never retried
- The response body is returned verbatim
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import API_HOST, TOKEN_PATH, token_response
from dz_openapi.api.executor import RequestExecutor, encode_body, is_token_invalid
from dz_openapi.api.signer import sign
from dz_openapi.errors import AuthError, ProtocolError, TransportError, ValidationError


def _invoke(gateway, credentials, clock, path, body, headers=None):
    async def _run():
        async with httpx.AsyncClient(transport=gateway.transport) as http:
            executor = RequestExecutor(http, credentials, clock=clock, sdk_version="9.9.9")
            return await executor.invoke(path, body, headers)

    return asyncio.run(_run())


class TestInvoke:
    def test_signed_headers_and_body(self, gateway, credentials, clock):
        gateway.on("/GDS/invoice/querySummary", {"result": {"success": True}, "value": 3})

        response = _invoke(
            gateway, credentials, clock, "/GDS/invoice/querySummary", {"orgId": 1, "名称": "甲"}
        )

        assert response == {"result": {"success": True}, "value": 3}
        request = gateway.calls_to("/GDS/invoice/querySummary")[0]
        body = request.content.decode("utf-8")
        assert body == '{"orgId":1,"名称":"甲"}'
        assert str(request.url) == API_HOST + "/GDS/invoice/querySummary"
        assert request.headers["access_token"] == "tok-1"
        assert request.headers["timestamp"] == str(clock.now_ms)
        assert request.headers["sign"] == sign("POST", body, clock.now_ms, "tok-1", "app-secret")
        assert request.headers["sdkVersion"] == "9.9.9"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["Content-Type"] == "application/json"

    def test_token_fetched_once_for_several_calls(self, gateway, credentials, clock):
        gateway.on("/x", {"ok": 1})

        async def _run():
            async with httpx.AsyncClient(transport=gateway.transport) as http:
                executor = RequestExecutor(http, credentials, clock=clock)
                await executor.invoke("/x", {})
                await executor.invoke("/x", {})

        asyncio.run(_run())
        assert len(gateway.calls_to(TOKEN_PATH)) == 1
        assert len(gateway.calls_to("/x")) == 2

    def test_token_request_is_unsigned(self, gateway, credentials, clock):
        gateway.on("/x", {"ok": 1})
        _invoke(gateway, credentials, clock, "/x", {})
        token_request = gateway.calls_to(TOKEN_PATH)[0]
        assert "sign" not in token_request.headers
        assert "sdkVersion" in token_request.headers

    def test_raw_string_body_sent_verbatim(self, gateway, credentials, clock):
        gateway.on("/GDS/batch", {"ok": 1})
        raw = '[ {"a": 1}, {"a": 2} ]'
        _invoke(gateway, credentials, clock, "/GDS/batch", raw)
        assert gateway.calls_to("/GDS/batch")[0].content.decode("utf-8") == raw

    def test_caller_headers_are_sent(self, gateway, credentials, clock):
        gateway.on("/x", {"ok": 1})
        _invoke(gateway, credentials, clock, "/x", {}, {"X-Trace": "t-1"})
        assert gateway.calls_to("/x")[0].headers["X-Trace"] == "t-1"

    def test_business_failure_returned_verbatim(self, gateway, credentials, clock):
        failure = {"result": {"success": False}, "error": {"message": "企业不存在"}}
        gateway.on("/x", failure)
        assert _invoke(gateway, credentials, clock, "/x", {}) == failure


class TestFailures:
    def test_non_200_raises_transport_error_without_retry(self, gateway, credentials, clock):
        gateway.on("/x", httpx.Response(503, text="busy"))

        with pytest.raises(TransportError) as exc_info:
            _invoke(gateway, credentials, clock, "/x", {})

        assert exc_info.value.status_code == 503
        assert len(gateway.calls_to("/x")) == 1

    def test_unparseable_body_raises_protocol_error(self, gateway, credentials, clock):
        gateway.on("/x", httpx.Response(200, text="<html>gateway error</html>"))
        with pytest.raises(ProtocolError):
            _invoke(gateway, credentials, clock, "/x", {})

    def test_connection_failure_raises_transport_error(self, credentials, clock):
        def _refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def _run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(_refuse)) as http:
                executor = RequestExecutor(http, credentials, clock=clock)
                return await executor.post("/x", {})

        with pytest.raises(TransportError):
            asyncio.run(_run())

    def test_token_failure_surfaces_as_auth_error(self, gateway, credentials, clock):
        gateway.on(TOKEN_PATH, httpx.Response(500))
        gateway.on("/x", {"ok": 1})
        with pytest.raises(AuthError):
            _invoke(gateway, credentials, clock, "/x", {})
        assert gateway.calls_to("/x") == []

    def test_empty_path_rejected(self, gateway, credentials, clock):
        with pytest.raises(ValidationError):
            _invoke(gateway, credentials, clock, "  ", {})


class TestTokenInvalidation:
    def test_rejected_token_is_dropped(self, gateway, credentials, clock):
        gateway.on(TOKEN_PATH, token_response("tok-1"), token_response("tok-2"))
        gateway.on(
            "/x",
            {"head": {"infoCode": "10000", "infoMsg": "token无效"}},
            {"head": {"infoCode": "0"}},
        )

        async def _run():
            async with httpx.AsyncClient(transport=gateway.transport) as http:
                executor = RequestExecutor(http, credentials, clock=clock)
                first = await executor.invoke("/x", {})
                assert not executor.tokens.state.is_present
                await executor.invoke("/x", {})
                return first

        first = asyncio.run(_run())
        assert first["head"]["infoCode"] == "10000"
        tokens_used = [r.headers["access_token"] for r in gateway.calls_to("/x")]
        assert tokens_used == ["tok-1", "tok-2"]


class TestHelpers:
    def test_encode_body_compact_utf8(self):
        assert encode_body({"a": [1, 2], "b": "税"}) == '{"a":[1,2],"b":"税"}'
        assert json.loads(encode_body({"x": None})) == {"x": None}

    def test_encode_body_rejects_none(self):
        with pytest.raises(ValidationError):
            encode_body(None)

    def test_is_token_invalid(self):
        assert is_token_invalid({"head": {"infoCode": 10000}})
        assert not is_token_invalid({"head": {"infoCode": "0"}})
        assert not is_token_invalid({"result": {"success": False}})
        assert not is_token_invalid([1, 2])
