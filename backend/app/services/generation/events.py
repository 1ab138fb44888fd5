from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable

logger = logging.getLogger(__name__)

TERMINAL_EVENT_STATUSES = frozenset({"done", "error", "suggested"})
KEEPALIVE_CHUNK = ":keepalive\n\n"


@dataclass(frozen=True)
class HubEvent:
    event: str
    data: dict[str, Any]

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, default=str)}\n\n"


@dataclass
class _JobChannel:
    next_line_index: int = 0
    lines: list[dict[str, Any]] = field(default_factory=list)
    status: str | None = None
    subscribers: set["Subscription"] = field(default_factory=set)


def _line_dict(line: Any) -> dict[str, Any]:
    if isinstance(line, dict):
        return dict(line)
    if hasattr(line, "model_dump"):
        return line.model_dump()
    return {"text": str(line or "")}


class Subscription:
    """One observer's queue on a job channel."""

    def __init__(self, hub: "EventHub", job_id: str, *, max_queue: int) -> None:
        self.hub = hub
        self.job_id = job_id
        self.queue: asyncio.Queue[HubEvent] = asyncio.Queue(maxsize=max_queue)
        self.closed = False
        self.dropped = False

    def offer(self, ev: HubEvent) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(ev)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hub._detach(self)

    async def events(self, *, keepalive_s: float | None = None) -> AsyncIterator[HubEvent | None]:
        """Yield events until ``done``; ``None`` marks an idle keepalive tick."""
        interval = self.hub.keepalive_s if keepalive_s is None else keepalive_s
        try:
            while True:
                if self.dropped and self.queue.empty():
                    return
                try:
                    ev = await asyncio.wait_for(self.queue.get(), timeout=interval)
                except asyncio.TimeoutError:
                    yield None
                    continue
                yield ev
                if ev.event == "done":
                    return
        finally:
            self.close()

    async def sse(self, *, keepalive_s: float | None = None) -> AsyncIterator[str]:
        try:
            async for ev in self.events(keepalive_s=keepalive_s):
                yield KEEPALIVE_CHUNK if ev is None else ev.to_sse()
        finally:
            # a client disconnect closes this generator, not the inner one
            self.close()


class EventHub:
    """Per-job publish/subscribe registry with a replayable line buffer.

    One instance is owned by the application and handed to pipelines and
    routes; tests build their own. Entries are created on first use and
    dropped once their last subscriber leaves.
    """

    def __init__(self, *, keepalive_s: float = 25.0, max_queue: int = 1000) -> None:
        self.keepalive_s = float(keepalive_s)
        self.max_queue = int(max_queue)
        self._channels: dict[str, _JobChannel] = {}

    def has_channel(self, job_id: str) -> bool:
        return job_id in self._channels

    def subscriber_count(self, job_id: str) -> int:
        ch = self._channels.get(job_id)
        return len(ch.subscribers) if ch else 0

    def _channel(self, job_id: str) -> _JobChannel:
        ch = self._channels.get(job_id)
        if ch is None:
            ch = _JobChannel()
            self._channels[job_id] = ch
        return ch

    def _detach(self, sub: Subscription) -> None:
        ch = self._channels.get(sub.job_id)
        if ch is None:
            return
        ch.subscribers.discard(sub)
        if not ch.subscribers:
            self._channels.pop(sub.job_id, None)

    def _fan_out(self, job_id: str, ch: _JobChannel, ev: HubEvent) -> int:
        delivered = 0
        for sub in list(ch.subscribers):
            if sub.offer(ev):
                delivered += 1
            else:
                logger.warning("events.subscriber_dropped job_id=%s event=%s", job_id, ev.event)
                sub.closed = True
                sub.dropped = True
                ch.subscribers.discard(sub)
        if not ch.subscribers and ch.status in TERMINAL_EVENT_STATUSES:
            self._channels.pop(job_id, None)
        return delivered

    def normalize_line(self, job_id: str, line: Any) -> dict[str, Any]:
        """Assign an index to a line, or advance the cursor past an explicit one."""
        ch = self._channel(job_id)
        d = _line_dict(line)
        idx = d.get("index")
        if isinstance(idx, int) and not isinstance(idx, bool) and idx >= 0:
            ch.next_line_index = max(ch.next_line_index, idx + 1)
        else:
            d["index"] = ch.next_line_index
            ch.next_line_index += 1
        return d

    def subscribe(
        self,
        job_id: str,
        *,
        history: Iterable[Any] = (),
        status: str | None = None,
    ) -> Subscription:
        """Attach an observer.

        ``history`` holds persisted lines; they are merged with lines this hub
        has buffered and replayed in index order, followed by the current
        status. A job already in a terminal status gets ``status`` and
        ``done`` right away and is never registered.
        """
        sub = Subscription(self, job_id, max_queue=self.max_queue + 64)
        ch = self._channels.get(job_id)

        merged: dict[int, dict[str, Any]] = {}
        for line in history:
            d = _line_dict(line)
            if isinstance(d.get("index"), int):
                merged[d["index"]] = d
        if ch is not None:
            for d in ch.lines:
                merged.setdefault(d["index"], d)
        for idx in sorted(merged):
            sub.offer(HubEvent("scan_line", merged[idx]))

        current = status or (ch.status if ch else None)
        if current:
            sub.offer(HubEvent("status", {"status": current}))

        if current in TERMINAL_EVENT_STATUSES:
            sub.offer(HubEvent("done", {"status": current}))
            sub.closed = True
            return sub

        ch = self._channel(job_id)
        if merged:
            ch.next_line_index = max(ch.next_line_index, max(merged) + 1)
        ch.subscribers.add(sub)
        return sub

    def publish_line(self, job_id: str, line: Any) -> dict[str, Any]:
        ch = self._channel(job_id)
        d = self.normalize_line(job_id, line)
        ch.lines.append(d)
        self._fan_out(job_id, ch, HubEvent("scan_line", d))
        return d

    def publish_status(self, job_id: str, status: str, **extra: Any) -> None:
        ch = self._channel(job_id)
        ch.status = status
        self._fan_out(job_id, ch, HubEvent("status", {"status": status, **extra}))

    def publish_done(self, job_id: str, status: str = "done") -> None:
        ch = self._channel(job_id)
        ch.status = status
        self._fan_out(job_id, ch, HubEvent("done", {"status": status}))
        # observers close themselves on done; an unobserved job needs no entry
        if not ch.subscribers:
            self._channels.pop(job_id, None)
