"""Request signing for the gateway.

WHY: The gateway authenticates request integrity with a keyed checksum
over the token, timestamp, and body. The concatenation below is part of
the wire contract and must match byte for byte.

HOW: sign() builds ``access_token=<t>&timestamp=<ts>&<body>{<secret>}``
and returns its MD5 digest as uppercase hex. There is no separator before
the opening brace. build_signed_request() attaches the signature headers.

RULES:
- Pure functions, no I/O
- Only POST is signed; the gateway exposes no other verb
- client_secret for the token endpoint is md5_hex(app_secret), lowercase
"""

from __future__ import annotations

import hashlib
from typing import Mapping, Optional

from dz_openapi.api.models import SignedRequest
from dz_openapi.errors import ValidationError


def md5_hex(text: str) -> str:
    """Return the lowercase hex MD5 digest of ``text`` encoded as UTF-8."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def sign(
    method: str,
    body: str,
    timestamp_ms: int,
    access_token: str,
    app_secret: str,
) -> str:
    """Compute the request signature as uppercase hex."""
    if method.upper() != "POST":
        raise ValidationError(["method"], "Only POST requests can be signed, got {}".format(method))
    missing = [
        name
        for name, value in (("access_token", access_token), ("appSecret", app_secret))
        if not value
    ]
    if missing:
        raise ValidationError(missing)

    payload = "access_token={}&timestamp={}&{}{{{}}}".format(
        access_token, timestamp_ms, body, app_secret
    )
    return md5_hex(payload).upper()


def build_signed_request(
    url: str,
    body: str,
    access_token: str,
    app_secret: str,
    timestamp_ms: int,
    extra_headers: Optional[Mapping[str, str]] = None,
) -> SignedRequest:
    """Sign ``body`` and return a SignedRequest carrying the auth headers.

    RULES:
    - Caller headers are applied first; auth headers always win
    - req_date/req_sign duplicate timestamp/sign for older gateway nodes
    """
    signature = sign("POST", body, timestamp_ms, access_token, app_secret)
    headers = dict(extra_headers or {})
    headers.update(
        {
            "access_token": access_token,
            "timestamp": str(timestamp_ms),
            "sign": signature,
            "req_date": str(timestamp_ms),
            "req_sign": signature,
        }
    )
    return SignedRequest(url=url.rstrip("/"), headers=headers, body=body)
