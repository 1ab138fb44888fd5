from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Mapping
from urllib.parse import urlparse

MMA_COSTS: dict[str, int] = {
    "still_main": 1,
    "still_niche": 2,
    "video": 10,
    "type_for_me_per": 10,
    "type_for_me_charge": 1,
}

REF_VIDEO_MAX_SEC = 30
REF_AUDIO_MAX_SEC = 60

_AUDIO_EXT = re.compile(r"\.(mp3|wav|m4a|aac|flac|ogg|opus)$", re.IGNORECASE)
_VIDEO_EXT = re.compile(r"\.(mp4|mov|webm|mkv|m4v)$", re.IGNORECASE)

_LANE_KEYS = ("still_lane", "stillLane", "model_lane", "modelLane", "lane", "create_lane", "createLane")


def safe_str(v: Any, fallback: str = "") -> str:
    if v is None:
        return fallback
    s = v if isinstance(v, str) else str(v)
    s = s.strip()
    return s or fallback


def as_http_url(v: Any) -> str:
    s = safe_str(v)
    return s if s.startswith("http") else ""


def _num(v: Any) -> float:
    if isinstance(v, bool) or v is None:
        return 0.0
    try:
        x = float(v)
    except (TypeError, ValueError):
        return 0.0
    return x if math.isfinite(x) else 0.0


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = mapping.get(k)
        if v not in (None, "", 0):
            return v
    return None


def _clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def _ceil_to_5(n: float) -> int:
    return int(math.ceil(n / 5.0) * 5)


def guess_kind_from_url(url: Any) -> str:
    u = as_http_url(url)
    if not u:
        return ""
    try:
        path = urlparse(u).path.lower()
    except ValueError:
        return ""
    if _AUDIO_EXT.search(path):
        return "audio"
    if _VIDEO_EXT.search(path):
        return "video"
    return ""


def resolve_frame2_reference(inputs: Mapping[str, Any] | None, assets: Mapping[str, Any] | None) -> dict[str, Any]:
    """Classify the optional secondary track of a video job.

    Returns ``{"kind": "ref_video"|"ref_audio"|None, "url", "raw_duration_sec", "max_sec"}``.
    An extension guessed from the URL beats a conflicting explicit kind.
    """
    inputs = inputs or {}
    assets = assets or {}

    kind_raw = safe_str(_first(inputs, "frame2_kind", "frame2Kind")).lower()
    if kind_raw.startswith("ref_"):
        kind_raw = kind_raw[4:]
    url_raw = as_http_url(_first(inputs, "frame2_url", "frame2Url"))
    dur_raw = _num(_first(inputs, "frame2_duration_sec", "frame2DurationSec"))

    asset_video = as_http_url(
        _first(assets, "video", "video_url", "videoUrl", "frame2_video_url", "frame2VideoUrl")
    )
    asset_audio = as_http_url(
        _first(assets, "audio", "audio_url", "audioUrl", "frame2_audio_url", "frame2AudioUrl")
    )

    kind = kind_raw if kind_raw in {"audio", "video"} else ""
    url_guess = guess_kind_from_url(url_raw)
    if url_guess:
        kind = url_guess
    if not kind:
        kind = "video" if asset_video else "audio" if asset_audio else ""

    url = url_raw or (asset_video if kind == "video" else asset_audio if kind == "audio" else "")
    dur = dur_raw or _num(_first(assets, "frame2_duration_sec", "frame2DurationSec"))

    if kind == "video" and url:
        return {"kind": "ref_video", "url": url, "raw_duration_sec": dur, "max_sec": REF_VIDEO_MAX_SEC}
    if kind == "audio" and url:
        return {"kind": "ref_audio", "url": url, "raw_duration_sec": dur, "max_sec": REF_AUDIO_MAX_SEC}
    return {"kind": None, "url": "", "raw_duration_sec": 0.0, "max_sec": 0}


def resolve_video_duration_sec(inputs: Mapping[str, Any] | None) -> int:
    inputs = inputs or {}
    d = _num(_first(inputs, "duration", "duration_seconds", "durationSeconds")) or 5
    return 10 if d >= 10 else 5


def resolve_video_flow(inputs: Mapping[str, Any] | None, assets: Mapping[str, Any] | None) -> str:
    kind = resolve_frame2_reference(inputs, assets)["kind"]
    if kind == "ref_video":
        return "kling_motion_control"
    if kind == "ref_audio":
        return "fabric_audio"
    return "kling"


def video_cost(inputs: Mapping[str, Any] | None, assets: Mapping[str, Any] | None) -> int:
    inputs = inputs or {}
    frame2 = resolve_frame2_reference(inputs, assets)

    if frame2["kind"] in {"ref_video", "ref_audio"}:
        max_sec = frame2["max_sec"]
        raw = (
            frame2["raw_duration_sec"]
            or _num(_first(inputs, "frame2_duration_sec", "frame2DurationSec"))
            or _num(_first(inputs, "duration", "duration_seconds", "durationSeconds"))
            or _num(_first(inputs, "duration_sec", "durationSec"))
            or resolve_video_duration_sec(inputs)
        )
        clamped = _clamp(raw, 1, max_sec)
        return int(_clamp(_ceil_to_5(clamped), 5, max_sec))

    return 10 if resolve_video_duration_sec(inputs) == 10 else 5


def resolve_still_lane(inputs: Mapping[str, Any] | None) -> str:
    inputs = inputs or {}
    raw = safe_str(_first(inputs, *_LANE_KEYS), "main").lower()
    return "niche" if raw == "niche" else "main"


def still_cost_for_lane(lane: str) -> int:
    return MMA_COSTS["still_niche"] if lane == "niche" else MMA_COSTS["still_main"]


def build_insufficient_credits_details(*, balance: int, needed: int, lane: str | None) -> dict[str, Any]:
    bal = int(balance or 0)
    need = int(needed or 0)
    requested_lane = lane if lane in {"niche", "main"} else None
    can_switch_to_main = requested_lane == "niche" and bal >= MMA_COSTS["still_main"]

    if requested_lane == "niche":
        user_message = f"you've got {bal} matcha left. this mode needs {need}. " + (
            "top up or switch to main?" if can_switch_to_main else "top up to keep going."
        )
    else:
        user_message = f"you've got {bal} matcha left. you need {need}. top up to keep going."

    actions: list[dict[str, Any]] = [{"id": "buy_matcha", "label": "Buy matcha", "enabled": True}]
    if requested_lane == "niche":
        actions.append(
            {
                "id": "switch_to_main",
                "label": f"Switch to main ({MMA_COSTS['still_main']} matcha)",
                "enabled": can_switch_to_main,
                "patch": {"inputs": {"still_lane": "main"}},
            }
        )

    return {
        "userMessage": user_message,
        "balance": bal,
        "needed": need,
        "lane": requested_lane,
        "costs": {"still_main": MMA_COSTS["still_main"], "still_niche": MMA_COSTS["still_niche"], "video": need},
        "canSwitchToMain": can_switch_to_main,
        "actions": actions,
    }


def utc_day_key(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")
