"""Polling orchestrator for long-running remote jobs.

WHY: Invoice download and collection on the gateway are asynchronous. A
caller asks for a cross-product of periods, directions, and document
types; the gateway starts a job per cell, reports status per period, and
only lets a cell be collected once it is processed. Driving that by hand
means nested loops, sleeps, and careful bookkeeping per cell.

HOW: A PollJob describes one endpoint family: the status and collect
paths, the outer dimension queried once per round (e.g. kpyfs -> kpyf),
and the inner dimensions expanded locally (e.g. jxxbzs x fplxs). TaskPoller.run()
then:

  1. validates every required field and reports all missing ones together
  2. sends addJob=true on the first round (unless the caller says otherwise)
  3. queries status once per outer value and caches per-cell status
  4. while any cell is toProcess/processing: sleeps, clears addJob, and
     re-queries the outer values that still have pending cells
  5. stops after max_attempts rounds, returning what it last saw
  6. collects every processed cell and attaches its payload

poll_sequence() drives the simpler seq-number workflow: start a job, then
poll its result endpoint until it stops reporting "request not returned".

RULES:
- Requests are built fresh from immutable dimension tuples; no request
  dict is mutated and reused across iterations
- An unsuccessful status envelope aborts the run: the raw response is
  returned in PollResult.aborted
- Transport and protocol errors propagate and abort the run
- A failed collect call marks only that cell failed
- Sleeps go through the injected ``sleep`` coroutine; cancelling the
  calling task interrupts it and no further status checks are sent
- Reference timing: 10s between rounds, 12 rounds at most
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from dz_openapi.api.models import (
    CellResult,
    PollResult,
    TaskKey,
    TaskStatus,
    normalize_envelope,
)
from dz_openapi.config import (
    POLL_INTERVAL_S,
    POLL_MAX_ATTEMPTS,
    SEQ_PENDING_MARKER,
    SEQ_POLL_INTERVAL_S,
    SEQ_POLL_MAX_ATTEMPTS,
)
from dz_openapi.errors import ProtocolError, ValidationError

logger = logging.getLogger(__name__)

InvokeFn = Callable[[str, Any], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[Any]]

NO_STATUS_MESSAGE = "未返回任务状态"
"""Recorded on cells the gateway never reported a status for."""


@dataclass(frozen=True)
class Dimension:
    """One request dimension: the list the caller passes and the scalar
    field each remote call receives."""

    list_field: str
    item_field: str
    label: str


@dataclass(frozen=True)
class PollJob:
    """Static description of one status/collect endpoint family.

    RULES:
    - status_per_cell=True: run() expects the status value to be a list of
      items carrying the inner dimension fields
    - status_per_cell=False: run() expects one object that applies to every
      inner cell of the queried outer value
    - Any other value shape raises ProtocolError
    """

    name: str
    status_path: str
    collect_path: str
    outer: Dimension
    inner: Tuple[Dimension, ...] = ()
    required: Tuple[Tuple[str, str], ...] = (("nsrsbh", "纳税人识别号"),)
    status_per_cell: bool = True

    @property
    def dimensions(self) -> Tuple[Dimension, ...]:
        return (self.outer,) + self.inner


INVOICE_COLLECT_JOB = PollJob(
    name="invoice collection",
    status_path="/FP/getFpxzStatus",
    collect_path="/FP/cj",
    outer=Dimension("kpyfs", "kpyf", "开票月份列表"),
    inner=(
        Dimension("jxxbzs", "jxxbz", "进销项标识列表"),
        Dimension("fplxs", "fplx", "发票类型代码列表"),
    ),
)

CHECKED_INVOICE_COLLECT_JOB = PollJob(
    name="checked invoice collection",
    status_path="/FP/getGxgxztStatus",
    collect_path="/FP/cjYgx",
    outer=Dimension("skssqs", "skssq", "税款所属期列表"),
    inner=(Dimension("fplxs", "fplx", "发票类型代码列表"),),
    status_per_cell=False,
)


def _cache_key(values: Iterable[Any]) -> Tuple[str, ...]:
    # Gateways echo 202104 back as "202104" and vice versa
    return tuple(str(v) for v in values)


def _parse_status(item: Mapping[str, Any]) -> CellResult:
    raw = item.get("status")
    message = item.get("msg")
    try:
        status = TaskStatus(raw)
    except ValueError:
        status = TaskStatus.FAILED
        message = message or "未知任务状态: {}".format(raw)
    return CellResult(status=status, message=message)


class TaskPoller:
    """Drives status-check -> wait -> collect workflows on the gateway."""

    def __init__(
        self,
        invoke: InvokeFn,
        interval: float = POLL_INTERVAL_S,
        max_attempts: int = POLL_MAX_ATTEMPTS,
        seq_interval: float = SEQ_POLL_INTERVAL_S,
        seq_max_attempts: int = SEQ_POLL_MAX_ATTEMPTS,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        if max_attempts < 1 or seq_max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._invoke = invoke
        self._interval = interval
        self._max_attempts = max_attempts
        self._seq_interval = seq_interval
        self._seq_max_attempts = seq_max_attempts
        self._sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # Full poll-and-collect run
    # ------------------------------------------------------------------

    async def run(
        self,
        job: PollJob,
        params: Any,
        add_job: Optional[bool] = None,
    ) -> PollResult:
        """Poll ``job`` until every cell is terminal, then collect.

        Args:
            job: The endpoint family to drive.
            params: Request parameters (mapping or JSON string) holding the
                required scalars and one list per dimension.
            add_job: Whether the first status check starts the remote job.
                Defaults to params["addJob"], or True when absent.

        Returns:
            PollResult keyed by every cell of the dimension cross-product,
            or with ``aborted`` set when a status check was unsuccessful.
        """
        params = _coerce_params(params)
        _validate(params, job.required, job.dimensions)
        if add_job is None:
            add_job = _as_bool(params.get("addJob"), True)

        outer_values = list(params[job.outer.list_field])
        inner_values = [list(params[d.list_field]) for d in job.inner]
        status_base = _without(params, (job.outer.list_field, "addJob"))

        statuses: Dict[Tuple[str, ...], CellResult] = {}
        pending = outer_values
        attempts = 0
        complete = False

        while True:
            attempts += 1
            for outer_value in pending:
                body = dict(status_base)
                body[job.outer.item_field] = outer_value
                body["addJob"] = add_job
                response = await self._invoke(job.status_path, body)
                envelope = normalize_envelope(response)
                if not envelope.is_success:
                    logger.warning(
                        "%s status check for %s=%s failed: %s",
                        job.name,
                        job.outer.item_field,
                        outer_value,
                        envelope.message,
                    )
                    return PollResult(attempts=attempts, aborted=response)
                # The latest response replaces every cell of this period
                period = str(outer_value)
                statuses = {k: v for k, v in statuses.items() if k[0] != period}
                statuses.update(
                    _statuses_for(job, outer_value, inner_values, envelope.payload)
                )

            pending = [
                value
                for value in outer_values
                if any(
                    cell.status.is_pending
                    for key, cell in statuses.items()
                    if key[0] == str(value)
                )
            ]
            if not pending:
                complete = True
                break
            if attempts >= self._max_attempts:
                logger.warning(
                    "%s still pending after %d attempts: %s",
                    job.name,
                    attempts,
                    pending,
                )
                break

            logger.info(
                "%s: %d period(s) pending, retrying in %.0fs (attempt %d/%d)",
                job.name,
                len(pending),
                self._interval,
                attempts,
                self._max_attempts,
            )
            try:
                await self._sleep(self._interval)
            except asyncio.CancelledError:
                logger.info("%s polling cancelled after %d attempts", job.name, attempts)
                raise
            add_job = False

        result = PollResult(attempts=attempts, complete=complete)
        collect_base = _without(
            params, [d.list_field for d in job.dimensions] + ["addJob"]
        )
        for combo in itertools.product(outer_values, *inner_values):
            seen = statuses.get(_cache_key(combo))
            if seen is None:
                cell = CellResult(status=TaskStatus.FAILED, message=NO_STATUS_MESSAGE)
            else:
                cell = CellResult(status=seen.status, message=seen.message)
            if cell.status is TaskStatus.PROCESSED:
                await self._collect(job, collect_base, combo, cell)
            result.cells[TaskKey(tuple(combo))] = cell
        return result

    async def _collect(
        self,
        job: PollJob,
        base: Mapping[str, Any],
        combo: Sequence[Any],
        cell: CellResult,
    ) -> None:
        body = dict(base)
        for dimension, value in zip(job.dimensions, combo):
            body[dimension.item_field] = value

        response = await self._invoke(job.collect_path, body)
        envelope = normalize_envelope(response)
        if not envelope.is_success:
            cell.status = TaskStatus.FAILED
            cell.message = envelope.message
            return

        payload = envelope.payload
        if isinstance(payload, Mapping) and "list" in payload:
            payload = payload["list"]
        cell.payload = payload
        cell.collected = True

    # ------------------------------------------------------------------
    # Single status pass
    # ------------------------------------------------------------------

    async def query_status(
        self,
        job: PollJob,
        params: Any,
        add_job: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        """Query status once for every outer value without collecting.

        A status check that comes back unsuccessful does not abort: it adds
        one synthetic failed item per affected cell carrying the remote
        message and the time of the check.
        """
        params = _coerce_params(params)
        dimensions = job.dimensions if job.status_per_cell else (job.outer,)
        _validate(params, job.required, dimensions)
        if add_job is None:
            add_job = _as_bool(params.get("addJob"), False)

        base = _without(params, (job.outer.list_field, "addJob"))
        items: List[Dict[str, Any]] = []
        for outer_value in params[job.outer.list_field]:
            body = dict(base)
            body[job.outer.item_field] = outer_value
            body["addJob"] = add_job
            envelope = normalize_envelope(await self._invoke(job.status_path, body))

            if envelope.is_success:
                payload = envelope.payload
                if isinstance(payload, list):
                    items.extend(payload)
                elif isinstance(payload, Mapping):
                    items.append(dict(payload))
                continue

            failed_at = int(time.time() * 1000)
            inner = list(job.inner) if job.status_per_cell else []
            for combo in itertools.product(*[params[d.list_field] for d in inner]):
                item: Dict[str, Any] = {job.outer.item_field: outer_value}
                item.update({d.item_field: v for d, v in zip(inner, combo)})
                item.update(
                    {"status": TaskStatus.FAILED.value, "msg": envelope.message, "time": failed_at}
                )
                items.append(item)
        return items

    # ------------------------------------------------------------------
    # Sequence-number jobs
    # ------------------------------------------------------------------

    async def poll_sequence(
        self,
        start_path: str,
        result_path: str,
        params: Any,
    ) -> Any:
        """Start a seq-numbered job and poll its result endpoint.

        RULES:
        - An unsuccessful start response is returned as is
        - Polls {orgId, seq} every seq_interval seconds
        - Keeps polling only while the failure message says the request has
          not returned yet; any other failure is returned as is
        - After seq_max_attempts polls the last response is returned
        """
        params = _coerce_params(params)
        start = await self._invoke(start_path, params)
        envelope = normalize_envelope(start)
        if not envelope.is_success:
            logger.info("Async request to %s was rejected: %s", start_path, envelope.message)
            return start

        seq = envelope.payload
        logger.info("Async request to %s accepted, seq=%s", start_path, seq)
        body = {"orgId": params.get("orgId"), "seq": seq}

        last = start
        for attempt in range(1, self._seq_max_attempts + 1):
            await self._sleep(self._seq_interval)
            last = await self._invoke(result_path, body)
            result = normalize_envelope(last)
            if result.is_success:
                logger.info("Async request seq=%s finished after %d polls", seq, attempt)
                return last
            if not result.message or SEQ_PENDING_MARKER not in result.message:
                logger.info("Async request seq=%s failed: %s", seq, result.message)
                return last

        logger.warning(
            "Async request seq=%s still pending after %d polls", seq, self._seq_max_attempts
        )
        return last


# ---------------------------------------------------------------------------
# Helpers (module-private)
# ---------------------------------------------------------------------------


def _coerce_params(params: Any) -> Dict[str, Any]:
    if params is None or (isinstance(params, str) and not params.strip()):
        raise ValidationError(["参数"])
    if isinstance(params, str):
        try:
            params = json.loads(params)
        except ValueError as exc:
            raise ValidationError(
                ["参数"], "接口参数转 json 异常：{}".format(exc)
            ) from exc
    if not isinstance(params, Mapping):
        raise ValidationError(["参数"], "参数必须是 JSON 对象")
    return dict(params)


def _as_bool(value: Any, default: bool) -> bool:
    """Read a JSON flag; accepts booleans, 0/1 and "true"/"false" strings."""
    if value is None:
        return default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0", ""):
            return False
        raise ValidationError(["addJob"], "addJob 不是合法的布尔值: {}".format(value))
    return bool(value)


def _validate(
    params: Mapping[str, Any],
    required: Iterable[Tuple[str, str]],
    dimensions: Iterable[Dimension],
) -> None:
    missing: List[str] = []
    for field_name, label in required:
        value = params.get(field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(label)
    for dimension in dimensions:
        values = params.get(dimension.list_field)
        if not isinstance(values, (list, tuple)) or not values:
            missing.append(dimension.label)
    if missing:
        raise ValidationError(missing)


def _without(params: Mapping[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    drop = set(keys)
    return {k: v for k, v in params.items() if k not in drop}


def _statuses_for(
    job: PollJob,
    outer_value: Any,
    inner_values: Sequence[Sequence[Any]],
    payload: Any,
) -> Dict[Tuple[str, ...], CellResult]:
    """Map one status response onto cache keys for its outer value."""
    found: Dict[Tuple[str, ...], CellResult] = {}
    if not job.status_per_cell:
        if not isinstance(payload, Mapping):
            raise ProtocolError(
                "{} status response has no status object for {}={}".format(
                    job.name, job.outer.item_field, outer_value
                )
            )
        cell = _parse_status(payload)
        for combo in itertools.product(*inner_values):
            found[_cache_key((outer_value,) + combo)] = CellResult(cell.status, cell.message)
        return found

    if not isinstance(payload, list):
        raise ProtocolError(
            "{} status response has no value list for {}={}".format(
                job.name, job.outer.item_field, outer_value
            )
        )
    for item in payload:
        if not isinstance(item, Mapping):
            raise ProtocolError("{} status item is not an object: {!r}".format(job.name, item))
        values = [outer_value] + [item.get(d.item_field) for d in job.inner]
        found[_cache_key(values)] = _parse_status(item)
    return found
