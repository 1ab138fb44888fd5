from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

import httpx

from app.core.settings import settings

logger = logging.getLogger(__name__)

TERMINAL_PREDICTION_STATUSES = frozenset({"succeeded", "failed", "canceled"})

MIN_HARD_TIMEOUT_MS = 30000
MIN_POLL_MS = 800
MIN_CALL_TIMEOUT_MS = 3000

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

_URL_HINT_KEYS = (
    "url",
    "output",
    "outputs",
    "image",
    "images",
    "video",
    "video_url",
    "videoUrl",
    "mp4",
    "file",
    "files",
    "result",
    "results",
    "data",
)


class ReplicateError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderError(RuntimeError):
    """A remote prediction that ended failed or canceled."""

    provider_name = "replicate"

    def __init__(
        self,
        code: str,
        *,
        prediction_id: str | None = None,
        status: str | None = None,
        error: Any = None,
        logs: Any = None,
        model: str | None = None,
    ) -> None:
        detail = f": {error}" if error else ""
        super().__init__(f"{code}{detail}")
        self.code = code
        self.prediction_id = prediction_id
        self.status = status
        self.error = error
        self.logs = logs
        self.model = model

    @property
    def provider(self) -> dict[str, Any]:
        return {
            "name": self.provider_name,
            "prediction_id": self.prediction_id,
            "status": self.status,
            "error": self.error,
            "logs": (self.logs[-2000:] if isinstance(self.logs, str) else self.logs),
            "model": self.model,
        }


class PredictionClient(Protocol):
    async def create_prediction(self, version: str, input: dict[str, Any]) -> dict[str, Any]: ...

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]: ...

    async def cancel_prediction(self, prediction_id: str) -> dict[str, Any]: ...


class ReplicateClient:
    def __init__(self, *, api_token: str, base_url: str, timeout_s: float = 30.0) -> None:
        self._api_token = (api_token or "").strip()
        self._base_url = (base_url or "").rstrip("/")
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self._api_token:
            raise ReplicateError("REPLICATE_API_TOKEN is not configured")
        try:
            resp = await self._client.request(method, f"{self._base_url}{path}", headers=self._headers(), json=json)
        except httpx.HTTPError as e:
            raise ReplicateError(f"Replicate request failed: {e}")

        if resp.status_code >= 400:
            detail = ""
            try:
                detail = resp.text[:1000]
            except Exception:
                detail = ""
            raise ReplicateError(f"Replicate error {resp.status_code}: {detail}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise ReplicateError(f"Replicate returned invalid JSON: {e}")
        return data if isinstance(data, dict) else {}

    async def create_prediction(self, version: str, input: dict[str, Any]) -> dict[str, Any]:
        ref = (version or "").strip()
        if ":" in ref:
            # owner/model:hash pins an exact version
            return await self._request("POST", "/predictions", {"version": ref.split(":", 1)[1], "input": input})
        return await self._request("POST", f"/models/{ref}/predictions", {"input": input})

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/predictions/{prediction_id}")

    async def cancel_prediction(self, prediction_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/predictions/{prediction_id}/cancel")


@dataclass
class PollConfig:
    timeout_ms: int = 900000
    poll_ms: int = 2500
    call_timeout_ms: int = 15000
    cancel_on_timeout: bool = False

    @classmethod
    def from_settings(cls, timeout_ms: int | None = None) -> "PollConfig":
        return cls(
            timeout_ms=int(timeout_ms or settings.replicate_max_ms),
            poll_ms=settings.replicate_poll_ms,
            call_timeout_ms=settings.replicate_call_timeout_ms,
            cancel_on_timeout=settings.replicate_cancel_on_timeout,
        )

    def effective(self) -> tuple[float, float, float]:
        hard = max(MIN_HARD_TIMEOUT_MS, int(self.timeout_ms or 0) or 240000) / 1000.0
        poll = max(MIN_POLL_MS, int(self.poll_ms or 0) or 2500) / 1000.0
        call = max(MIN_CALL_TIMEOUT_MS, int(self.call_timeout_ms or 0) or 15000) / 1000.0
        return hard, poll, call


@dataclass
class PredictionResult:
    prediction_id: str
    prediction: dict[str, Any]
    status: str | None
    output: Any
    timed_out: bool
    input: dict[str, Any] = field(default_factory=dict)
    timing: dict[str, Any] = field(default_factory=dict)


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def run_prediction(
    client: PredictionClient,
    *,
    version: str,
    input: dict[str, Any],
    config: PollConfig | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PredictionResult:
    """Create a remote prediction and poll it until it settles or the hard deadline passes.

    Each remote call is bounded by the call timeout, independently of the hard
    deadline. Poll failures are ignored; one final fetch always runs after the
    loop. Failed or canceled predictions raise ``ProviderError``; a deadline
    hit returns ``timed_out=True`` (cancelling remotely when configured).
    """
    if not version:
        raise ReplicateError("REPLICATE_VERSION_MISSING")
    cfg = config or PollConfig.from_settings()
    hard_s, poll_s, call_s = cfg.effective()

    started_at = _iso_now()
    t0 = clock()

    created = await asyncio.wait_for(client.create_prediction(version, input), timeout=call_s)
    prediction_id = str(created.get("id") or "")
    last = created
    logger.info("provider.prediction_created version=%s prediction_id=%s", version, prediction_id)

    while True:
        if str(last.get("status") or "") in TERMINAL_PREDICTION_STATUSES:
            break
        if clock() - t0 >= hard_s:
            break
        await sleep(poll_s)
        try:
            last = await asyncio.wait_for(client.get_prediction(prediction_id), timeout=call_s)
        except (asyncio.TimeoutError, ReplicateError, httpx.HTTPError) as e:
            logger.debug("provider.poll_failed prediction_id=%s err=%s", prediction_id, e)

    try:
        last = await asyncio.wait_for(client.get_prediction(prediction_id), timeout=call_s)
    except (asyncio.TimeoutError, ReplicateError, httpx.HTTPError) as e:
        logger.debug("provider.final_get_failed prediction_id=%s err=%s", prediction_id, e)

    elapsed_s = clock() - t0
    status = str(last.get("status") or "")
    timed_out = status not in TERMINAL_PREDICTION_STATUSES and elapsed_s >= hard_s

    if status in {"failed", "canceled"}:
        raise ProviderError(
            "REPLICATE_FAILED" if status == "failed" else "REPLICATE_CANCELED",
            prediction_id=str(last.get("id") or prediction_id) or None,
            status=status,
            error=last.get("error"),
            logs=last.get("logs"),
            model=last.get("model") or version,
        )

    if timed_out:
        logger.warning("provider.prediction_timed_out prediction_id=%s elapsed_s=%.1f", prediction_id, elapsed_s)
        if cfg.cancel_on_timeout:
            try:
                await asyncio.wait_for(client.cancel_prediction(prediction_id), timeout=call_s)
            except Exception as e:
                logger.warning("provider.cancel_failed prediction_id=%s err=%s", prediction_id, e)

    return PredictionResult(
        prediction_id=prediction_id,
        prediction=last,
        status=status or None,
        output=last.get("output"),
        timed_out=timed_out,
        input=dict(input),
        timing={"started_at": started_at, "ended_at": _iso_now(), "duration_ms": int(elapsed_s * 1000)},
    )


def looks_like_bad_field(err: Exception, field_name: str) -> bool:
    msg = str(err).lower()
    return "input" in msg and (field_name.lower() in msg or "unexpected" in msg)


async def run_prediction_dropping_field(
    client: PredictionClient,
    *,
    version: str,
    input: dict[str, Any],
    optional_field: str,
    config: PollConfig | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PredictionResult:
    """Like ``run_prediction`` but retries once without ``optional_field`` when creation rejects it."""
    try:
        return await run_prediction(client, version=version, input=input, config=config, sleep=sleep, clock=clock)
    except ReplicateError as e:
        if optional_field not in input or not looks_like_bad_field(e, optional_field):
            raise
        logger.info("provider.retry_without_field version=%s field=%s", version, optional_field)
        retry_input = {k: v for k, v in input.items() if k != optional_field}
        return await run_prediction(
            client, version=version, input=retry_input, config=config, sleep=sleep, clock=clock
        )


def pick_first_url(output: Any) -> str:
    """Find the first http(s) URL in an arbitrarily nested provider payload."""
    seen: set[int] = set()

    def walk(v: Any) -> str:
        if not v:
            return ""
        if isinstance(v, str):
            s = v.strip()
            return s if _URL_RE.match(s) else ""
        if isinstance(v, (list, tuple)):
            for item in v:
                u = walk(item)
                if u:
                    return u
            return ""
        if isinstance(v, dict):
            if id(v) in seen:
                return ""
            seen.add(id(v))
            for k in _URL_HINT_KEYS:
                if k in v:
                    u = walk(v[k])
                    if u:
                        return u
            for val in v.values():
                u = walk(val)
                if u:
                    return u
        return ""

    return walk(output)


def get_replicate_client() -> ReplicateClient:
    return ReplicateClient(api_token=settings.replicate_api_token or "", base_url=settings.replicate_base_url)
