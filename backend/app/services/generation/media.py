from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

from app.core.settings import Settings, settings as default_settings
from app.services.generation.pricing import as_http_url, safe_str
from app.services.generation.provider import (
    PollConfig,
    PredictionClient,
    PredictionResult,
    run_prediction,
    run_prediction_dropping_field,
)
from app.services.generation.vars import GenerationVars


def normalize_url_for_key(u: Any) -> str:
    url = as_http_url(u)
    if not url:
        return ""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _dedupe_urls(urls: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for u in urls:
        if u and u not in seen:
            seen.add(u)
            out.append(u)
    return out


def still_image_inputs(vars: GenerationVars, *, max_inspiration: int, limit: int) -> list[str]:
    a = vars.assets
    product = as_http_url(a.product_image_url)
    logo = as_http_url(a.logo_image_url)
    hero = as_http_url(a.style_hero_image_url)
    inspiration = [u for u in (as_http_url(x) for x in a.inspiration_image_urls) if u][:max_inspiration]
    urls = ([product] if product else []) + ([logo] if logo else []) + inspiration + ([hero] if hero else [])
    return urls[:limit]


def seedream_image_inputs(vars: GenerationVars) -> list[str]:
    return still_image_inputs(vars, max_inspiration=4, limit=10)


def nanobanana_image_inputs(vars: GenerationVars) -> list[str]:
    return still_image_inputs(vars, max_inspiration=10, limit=14)


def resolve_style_hero(vars: GenerationVars, extra_hero_urls: list[str] | None = None) -> tuple[str, list[str]]:
    """Split inspiration images into the style hero and the rest.

    Returns ``(hero_url, inspiration_urls)`` where the inspiration list never
    repeats a hero image and is capped at four entries.
    """
    a = vars.assets
    explicit = as_http_url(a.style_hero_image_url)
    insp = [u for u in (as_http_url(x) for x in a.inspiration_image_urls) if u]

    candidates = ([explicit] if explicit else []) + [as_http_url(x) for x in a.style_hero_image_urls]
    candidates += [as_http_url(x) for x in (extra_hero_urls or [])]
    hero_keys = {normalize_url_for_key(u) for u in candidates if u}
    hero_keys.discard("")

    from_insp = ""
    if not explicit:
        from_insp = next((u for u in insp if normalize_url_for_key(u) in hero_keys), "")
    hero = explicit or from_insp
    hero_key = normalize_url_for_key(hero) if hero else ""

    rest: list[str] = []
    for u in insp:
        k = normalize_url_for_key(u)
        if not k or (hero_key and k == hero_key) or k in hero_keys:
            continue
        rest.append(u)
    return hero, _dedupe_urls(rest)[:4]


def pick_start_image(vars: GenerationVars, parent_output_url: str | None = None) -> str:
    i = vars.inputs
    a = vars.assets
    for candidate in (
        i.start_image_url,
        i.parent_output_url,
        parent_output_url,
        a.start_image_url,
        a.image_url,
        a.product_image_url,
    ):
        u = as_http_url(candidate)
        if u:
            return u
    return ""


def pick_end_image(vars: GenerationVars) -> str:
    return as_http_url(vars.inputs.end_image_url) or as_http_url(vars.assets.end_image_url)


def build_seedream_input(
    *, prompt: str, aspect_ratio: str, image_inputs: list[str], cfg: Settings
) -> dict[str, Any]:
    neg = cfg.seedream_negative_prompt
    final_prompt = f"{prompt}\n\nAvoid: {neg}" if neg else prompt
    payload: dict[str, Any] = {
        "prompt": final_prompt,
        "size": cfg.seedream_size,
        "aspect_ratio": aspect_ratio or cfg.seedream_aspect_ratio,
        "enhance_prompt": cfg.seedream_enhance_prompt,
        "sequential_image_generation": "disabled",
        "max_images": 1,
    }
    cleaned = [u for u in (as_http_url(x) for x in image_inputs) if u][:10]
    if cleaned:
        payload["image_input"] = cleaned
    return payload


def build_nanobanana_input(
    *, prompt: str, aspect_ratio: str, image_inputs: list[str], cfg: Settings
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt,
        "resolution": cfg.nanobanana_resolution,
        "aspect_ratio": aspect_ratio or cfg.nanobanana_aspect_ratio,
        "output_format": cfg.nanobanana_output_format,
        "safety_filter_level": cfg.nanobanana_safety_filter_level,
    }
    cleaned = [u for u in (as_http_url(x) for x in image_inputs) if u][:14]
    if cleaned:
        payload["image_input"] = cleaned
    return payload


def still_aspect_ratio(vars: GenerationVars, *, use_nano: bool, has_images: bool, cfg: Settings) -> str:
    ar = safe_str(vars.inputs.aspect_ratio) or (
        cfg.nanobanana_aspect_ratio if use_nano else cfg.seedream_aspect_ratio
    ) or "match_input_image"
    # match_input_image needs something to match
    if not has_images and "match" in ar.lower():
        return cfg.fallback_aspect_ratio
    return ar


def resolve_generate_audio(vars: GenerationVars, end_image: str) -> bool:
    if as_http_url(end_image):
        return False
    i = vars.inputs
    if i.generate_audio is not None:
        return bool(i.generate_audio)
    if i.mute is not None:
        return not bool(i.mute)
    return True


def build_kling_input(
    *,
    prompt: str,
    start_image: str,
    end_image: str,
    duration: float | None,
    mode: str | None,
    negative_prompt: str | None,
    generate_audio: bool | None,
    cfg: Settings,
) -> dict[str, Any]:
    has_end = bool(as_http_url(end_image))
    final_mode = safe_str(mode) or ("pro" if has_end else "") or cfg.kling_mode or "standard"
    neg = negative_prompt if negative_prompt is not None else cfg.kling_negative_prompt
    payload: dict[str, Any] = {
        "mode": final_mode,
        "prompt": prompt,
        "duration": 10 if (duration or 5) >= 10 else 5,
        "start_image": start_image,
    }
    if has_end:
        payload["end_image"] = as_http_url(end_image)
    if neg:
        payload["negative_prompt"] = neg
    if generate_audio is not None:
        payload["generate_audio"] = bool(generate_audio)
    return payload


def build_kling_motion_control_input(
    *,
    prompt: str,
    image: str,
    video: str,
    mode: str | None,
    keep_original_sound: bool | None,
    character_orientation: str | None,
) -> dict[str, Any]:
    m = safe_str(mode).lower()
    orientation = safe_str(character_orientation, "video").lower()
    return {
        "prompt": safe_str(prompt),
        "image": image,
        "video": video,
        "mode": "pro" if m == "pro" else "std",
        "keep_original_sound": True if keep_original_sound is None else bool(keep_original_sound),
        "character_orientation": "video" if orientation == "video" else "image",
    }


def build_fabric_input(*, image: str, audio: str, resolution: str | None, cfg: Settings) -> dict[str, Any]:
    desired = safe_str(resolution) or cfg.fabric_resolution or "720p"
    return {"image": image, "audio": audio, "resolution": "480p" if desired == "480p" else "720p"}


class MediaEngines:
    """Runs the generative-media models through one prediction client."""

    def __init__(
        self,
        client: PredictionClient,
        *,
        cfg: Settings | None = None,
        poll: PollConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.cfg = cfg or default_settings
        self.poll = poll or PollConfig.from_settings()
        self._sleep = sleep
        self._clock = clock

    @property
    def nanobanana_enabled(self) -> bool:
        return self.cfg.nanobanana_enabled

    async def _run(self, version: str, payload: dict[str, Any]) -> PredictionResult:
        return await run_prediction(
            self.client, version=version, input=payload, config=self.poll, sleep=self._sleep, clock=self._clock
        )

    async def run_seedream(self, payload: dict[str, Any]) -> PredictionResult:
        return await self._run(self.cfg.seedream_version, payload)

    async def run_nanobanana(self, payload: dict[str, Any]) -> PredictionResult:
        return await self._run(self.cfg.nanobanana_version or "", payload)

    async def run_kling(self, payload: dict[str, Any]) -> PredictionResult:
        return await run_prediction_dropping_field(
            self.client,
            version=self.cfg.kling_version,
            input=payload,
            optional_field="generate_audio",
            config=self.poll,
            sleep=self._sleep,
            clock=self._clock,
        )

    async def run_kling_motion_control(self, payload: dict[str, Any]) -> PredictionResult:
        return await self._run(self.cfg.kling_motion_control_version, payload)

    async def run_fabric(self, payload: dict[str, Any]) -> PredictionResult:
        return await self._run(self.cfg.fabric_version, payload)

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        return await self.client.get_prediction(prediction_id)
