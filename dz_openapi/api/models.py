"""Data model for credentials, tokens, signed requests, and poll results.

WHY: The gateway speaks loosely-typed JSON, but the SDK has a handful of
structures with real invariants: credentials never change, a token is
replaced all at once, and every poll cell carries exactly one status.
Typed dataclasses make those invariants explicit.

HOW: Frozen dataclasses for values that must never be mutated in place
(Credentials, TokenState, SignedRequest, TaskKey, Envelope). Mutable
dataclasses for the per-invocation poll accumulator (CellResult,
PollResult). normalize_envelope() folds the two response envelope shapes
the gateway uses into one Envelope value.

RULES:
- Credentials.api_host never ends with "/"
- TokenState: access_token present <=> issued_at_ms set
- TaskKey renders as its dimension values joined by "_" (e.g. 202104_jx_01)
- Standard envelope: {"result": {"success": bool}, "value", "error": {"message"}}
- Legacy envelope: {"head": {"infoCode": "0" on success, "infoMsg"}, "value"}
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from dz_openapi.errors import ProtocolError, ValidationError


@dataclass(frozen=True)
class Credentials:
    """Application credentials issued by the gateway.

    RULES:
    - All three fields are required and non-empty
    - Trailing slashes are stripped from api_host
    - repr never shows the secret
    """

    api_host: str
    app_key: str
    app_secret: str = field(repr=False)

    def __post_init__(self) -> None:
        missing = [
            label
            for label, value in (
                ("apiHost", self.api_host),
                ("appKey", self.app_key),
                ("appSecret", self.app_secret),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError(missing)
        object.__setattr__(self, "api_host", self.api_host.strip().rstrip("/"))


@dataclass(frozen=True)
class TokenState:
    """Snapshot of the application access token.

    A new instance replaces the old one on every issuance, so readers never
    see a token paired with another token's expiry.
    """

    access_token: Optional[str] = None
    expires_in_ms: int = 0
    refresh_token: Optional[str] = field(default=None, repr=False)
    issued_at_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if (self.access_token is None) != (self.issued_at_ms is None):
            raise ValueError("access_token and issued_at_ms must be set together")

    @property
    def is_present(self) -> bool:
        return self.access_token is not None

    def holding_ms(self, now_ms: int) -> int:
        """Milliseconds the token has been held at ``now_ms``."""
        if self.issued_at_ms is None:
            return 0
        return now_ms - self.issued_at_ms


ABSENT_TOKEN = TokenState()


@dataclass(frozen=True)
class SignedRequest:
    """A POST ready to send: the body string is exactly what was signed."""

    url: str
    headers: Dict[str, str]
    body: str


class TaskStatus(str, enum.Enum):
    """Status of one remote task cell, as reported by the gateway.

    RULES:
    - toProcess / processing: still running, the poller keeps waiting
    - processed: ready to collect
    - failed: remote reported failure, msg holds the reason
    - disabled: the gateway does not support this combination
    """

    TO_PROCESS = "toProcess"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DISABLED = "disabled"

    @property
    def is_pending(self) -> bool:
        return self in (TaskStatus.TO_PROCESS, TaskStatus.PROCESSING)


@dataclass(frozen=True)
class TaskKey:
    """Composite key of one poll cell, e.g. (202104, "jx", "01")."""

    values: Tuple[Any, ...]

    def __str__(self) -> str:
        return "_".join(str(v) for v in self.values)


@dataclass
class CellResult:
    """Outcome of one poll cell."""

    status: TaskStatus
    message: Optional[str] = None
    payload: Any = None
    collected: bool = False

    @property
    def result(self) -> bool:
        return self.status is TaskStatus.PROCESSED and self.collected

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "result": self.result,
            "status": self.status.value,
            "msg": self.message,
        }
        if self.collected:
            data["list"] = self.payload
        return data


@dataclass
class PollResult:
    """Per-invocation result of a TaskPoller run.

    WHY: Callers must be able to inspect every cell individually, because a
    run can end with some cells collected, some failed, and some still
    pending when the retry budget runs out.

    RULES:
    - aborted holds the raw status response when a status check came back
      unsuccessful; cells is empty in that case
    - complete is False when attempts ran out with cells still pending
    """

    cells: Dict[TaskKey, CellResult] = field(default_factory=dict)
    attempts: int = 0
    complete: bool = False
    aborted: Optional[Dict[str, Any]] = None

    def __getitem__(self, key: str) -> CellResult:
        for task_key, cell in self.cells.items():
            if str(task_key) == key:
                return cell
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        return any(str(k) == key for k in self.cells)

    def to_dict(self) -> Dict[str, Any]:
        """Render in the gateway's map shape, or the raw aborted response."""
        if self.aborted is not None:
            return self.aborted
        return {str(key): cell.to_dict() for key, cell in self.cells.items()}


class EnvelopeKind(str, enum.Enum):
    STANDARD = "standard"
    LEGACY = "legacy"


@dataclass(frozen=True)
class Envelope:
    """Normalized view of a response envelope."""

    kind: EnvelopeKind
    is_success: bool
    message: Optional[str]
    payload: Any
    code: Optional[str] = None


def normalize_envelope(response: Any) -> Envelope:
    """Fold either envelope shape into an Envelope.

    WHY: Some gateway families nest success under result.success, others
    under head.infoCode. The poller should not care which one it got.

    RULES:
    - Standard shape wins when both "result" and "head" are present
    - Raises ProtocolError when neither shape is present
    """
    if not isinstance(response, Mapping):
        raise ProtocolError("Expected a JSON object, got {}".format(type(response).__name__))

    result = response.get("result")
    if isinstance(result, Mapping):
        error = response.get("error")
        message = error.get("message") if isinstance(error, Mapping) else None
        return Envelope(
            kind=EnvelopeKind.STANDARD,
            is_success=result.get("success") is True,
            message=message,
            payload=response.get("value"),
        )

    head = response.get("head")
    if isinstance(head, Mapping):
        code = head.get("infoCode")
        code = None if code is None else str(code)
        return Envelope(
            kind=EnvelopeKind.LEGACY,
            is_success=code == "0",
            message=head.get("infoMsg"),
            payload=response.get("value"),
            code=code,
        )

    raise ProtocolError("Response has neither a result nor a head envelope")
