"""Configuration constants, gateway paths, and .env loading.

WHY: Paths, timing windows, and polling limits are part of the contract with
the remote gateway. Keeping them as plain module-level values makes them
easy to find and override without digging through client logic.

HOW: python-dotenv loads the .env file on import. Tunables read an
environment override with os.getenv and fall back to the gateway's
reference values. load_credentials() builds Credentials from the
environment for applications that want it; the client itself never reads
the environment.

RULES:
- Credentials are never hardcoded; load_credentials() fails loudly
- All durations are stored in the unit their name says (_MS or _S)
- Polling defaults match the gateway's reference behavior: 10s x 12 attempts
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Optional

from dotenv import load_dotenv

from dz_openapi.errors import ValidationError

if TYPE_CHECKING:
    from dz_openapi.api.models import Credentials

load_dotenv()

# ---------------------------------------------------------------------------
# Gateway paths
# ---------------------------------------------------------------------------

ACCESS_TOKEN_PATH = "/edf/oauth2/access_token"
AUTH_CODE_PATH = "/AGG/oauth2/getCode"
WEB_LOGIN_FRAGMENT = "/#/edfx-app-root/simplelogin"

PACKAGE_VERSION = "0.1.0"

SDK_VERSION = os.getenv("DZ_SDK_VERSION", PACKAGE_VERSION)
"""Sent as the sdkVersion header on every request."""

# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------

ONE_HOUR_MS = 60 * 60 * 1000

TOKEN_REFRESH_WINDOW_MS = 24 * ONE_HOUR_MS
"""A token may be refreshed once it is within 24h of expiring..."""

TOKEN_EXPIRY_MARGIN_MS = 2 * ONE_HOUR_MS
"""...and is treated as expired within 2h of expiring."""

TOKEN_INVALID_CODE = "10000"
"""Legacy head.infoCode meaning the gateway rejected the access token."""

# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

POLL_INTERVAL_S = float(os.getenv("DZ_POLL_INTERVAL_S", "10"))
POLL_MAX_ATTEMPTS = int(os.getenv("DZ_POLL_MAX_ATTEMPTS", "12"))

SEQ_POLL_INTERVAL_S = float(os.getenv("DZ_SEQ_POLL_INTERVAL_S", "2"))
SEQ_POLL_MAX_ATTEMPTS = int(os.getenv("DZ_SEQ_POLL_MAX_ATTEMPTS", "150"))
SEQ_PENDING_MARKER = "请求尚未返回"

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

HTTP_TIMEOUT_S = float(os.getenv("DZ_HTTP_TIMEOUT_S", "60"))
HTTP_CONNECT_TIMEOUT_S = float(os.getenv("DZ_HTTP_CONNECT_TIMEOUT_S", "10"))


def load_credentials() -> Credentials:
    """Build Credentials from DZ_API_HOST, DZ_APP_KEY and DZ_APP_SECRET.

    WHY: Embedding applications often keep credentials in a .env file.
    This helper reads them in one place and reports every missing
    variable at once instead of failing on the first.

    RULES:
    - Raises ValidationError listing all missing variables
    - Never returns placeholder values
    """
    from dz_openapi.api.models import Credentials

    names = ("DZ_API_HOST", "DZ_APP_KEY", "DZ_APP_SECRET")
    values = {name: os.getenv(name, "").strip() for name in names}
    missing = [name for name in names if not values[name]]
    if missing:
        raise ValidationError(missing)
    return Credentials(
        api_host=values["DZ_API_HOST"],
        app_key=values["DZ_APP_KEY"],
        app_secret=values["DZ_APP_SECRET"],
    )


def load_web_host() -> Optional[str]:
    """Return DZ_WEB_HOST, or None when it is not configured."""
    host = os.getenv("DZ_WEB_HOST", "").strip()
    return host or None
