import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError

from app.core.settings import settings
from app.services.llm.prompts import (
    build_motion_animate_system_prompt,
    build_motion_tweak_system_prompt,
    build_still_create_system_prompt,
    build_still_tweak_system_prompt,
)

logger = logging.getLogger(__name__)

MAX_PAYLOAD_CHARS = 14000
DEFAULT_LLM_CONCURRENCY = 16


class LLMDisabledError(RuntimeError):
    pass


@dataclass(frozen=True)
class LabeledImage:
    role: str
    url: str


@dataclass
class LLMCompletion:
    raw: str
    parsed: Any
    request: dict[str, Any]
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass
class SynthesizedPrompt:
    prompt: str
    raw: str
    request: dict[str, Any]
    parsed_ok: bool
    system: str = ""


def _estimate_tokens_from_text(text: str) -> int:
    s = text or ""
    if not s:
        return 0
    return max(1, int(len(s) / 4))


def _estimate_tokens_from_messages(messages: list[dict[str, Any]]) -> int:
    total = 0
    for m in messages or []:
        c = m.get("content")
        if isinstance(c, str):
            total += _estimate_tokens_from_text(c)
        else:
            total += _estimate_tokens_from_text(json.dumps(c, default=str))
    return total


def build_labeled_content(intro_text: str, labeled_images: list[LabeledImage]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    text = (intro_text or "").strip()
    if text:
        content.append({"type": "text", "text": text})
    for item in labeled_images:
        url = (item.url or "").strip()
        if not url.startswith("http"):
            continue
        if item.role:
            content.append({"type": "text", "text": f"IMAGE ROLE: {item.role}"})
        content.append({"type": "image_url", "image_url": {"url": url}})
    return content


class OpenAICompatibleLLM:
    def __init__(
        self,
        api_key: str,
        base_url: str | None,
        model: str,
        temperature: float,
        extra_headers: dict[str, str] | None = None,
        max_retries: int = 4,
        retry_base_s: float = 0.7,
        concurrency: int = DEFAULT_LLM_CONCURRENCY,
    ) -> None:
        kwargs: dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        if extra_headers:
            kwargs["default_headers"] = extra_headers
        self._http = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=200, max_keepalive_connections=50),
            timeout=httpx.Timeout(60.0),
        )
        kwargs["http_client"] = self._http
        self._client = AsyncOpenAI(**kwargs)
        self._model = model
        self._temperature = temperature
        self._max_retries = max(1, int(max_retries))
        self._retry_base_s = float(retry_base_s)
        self._concurrency = max(1, int(concurrency))
        self._sem: asyncio.Semaphore | None = None

    async def aclose(self) -> None:
        await self._client.close()

    def _semaphore(self) -> asyncio.Semaphore:
        if self._sem is None:
            self._sem = asyncio.Semaphore(self._concurrency)
        return self._sem

    def _extract_json(self, text: str) -> Any | None:
        raw = (text or "").strip()
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            start = raw.find("{")
            end = raw.rfind("}")
            if start != -1 and end != -1 and end > start:
                try:
                    return json.loads(raw[start : end + 1])
                except ValueError:
                    return None
        return None

    async def _chat_completion(
        self,
        *,
        messages: list[dict[str, Any]],
        purpose: str = "",
        json_mode: bool = True,
    ) -> tuple[Any, dict[str, Any]]:
        async with self._semaphore():

            def build_kwargs(*, include_response_format: bool) -> dict[str, Any]:
                kwargs: dict[str, Any] = {
                    "model": self._model,
                    "messages": messages,
                    "temperature": self._temperature,
                }
                if json_mode and include_response_format:
                    kwargs["response_format"] = {"type": "json_object"}
                return kwargs

            last_err: Exception | None = None
            include_response_format = True

            for attempt in range(1, self._max_retries + 1):
                try:
                    kwargs = build_kwargs(include_response_format=include_response_format)
                    response = await self._client.chat.completions.create(**kwargs)
                    usage = getattr(response, "usage", None)
                    prompt_tokens = getattr(usage, "prompt_tokens", None)
                    completion_tokens = getattr(usage, "completion_tokens", None)
                    total_tokens = getattr(usage, "total_tokens", None)
                    logger.info(
                        "llm.request_done model=%s purpose=%s messages=%s est_prompt_tokens=%s prompt_tokens=%s completion_tokens=%s total_tokens=%s",
                        self._model,
                        purpose or "",
                        len(messages or []),
                        _estimate_tokens_from_messages(messages),
                        prompt_tokens,
                        completion_tokens,
                        total_tokens,
                    )
                    request = {k: v for k, v in kwargs.items() if k != "messages"}
                    return response, {
                        "request": request,
                        "prompt_tokens": prompt_tokens,
                        "completion_tokens": completion_tokens,
                        "total_tokens": total_tokens,
                    }
                except APIStatusError as e:
                    status = getattr(e, "status_code", None)
                    if status == 402:
                        raise LLMDisabledError("LLM provider: insufficient credits")
                    msg = str(e).lower()
                    if status == 400 and include_response_format and "response_format" in msg:
                        include_response_format = False
                        last_err = e
                        continue
                    if status in {408, 409, 425, 429, 500, 502, 503, 504} and attempt < self._max_retries:
                        sleep_s = self._retry_base_s * (2 ** (attempt - 1)) + random.random() * 0.25
                        await asyncio.sleep(min(15.0, sleep_s))
                        last_err = e
                        continue
                    raise
                except (APIConnectionError, APITimeoutError, RateLimitError) as e:
                    if attempt < self._max_retries:
                        sleep_s = self._retry_base_s * (2 ** (attempt - 1)) + random.random() * 0.25
                        await asyncio.sleep(min(15.0, sleep_s))
                        last_err = e
                        continue
                    raise

            if last_err is not None:
                raise last_err
            raise RuntimeError("LLM call failed")

    async def complete(
        self,
        *,
        system: str,
        labeled_images: list[LabeledImage],
        payload: dict[str, Any],
        purpose: str = "",
    ) -> LLMCompletion:
        intro = json.dumps(payload, indent=2, ensure_ascii=False, default=str)[:MAX_PAYLOAD_CHARS]
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": build_labeled_content(intro, labeled_images)},
        ]
        response, meta = await self._chat_completion(messages=messages, purpose=purpose)
        raw = ""
        choices = getattr(response, "choices", None) or []
        if choices:
            raw = getattr(choices[0].message, "content", None) or ""
        request = {
            **meta.get("request", {}),
            "images": [{"role": i.role, "url": i.url} for i in labeled_images],
        }
        usage = {k: meta.get(k) for k in ("prompt_tokens", "completion_tokens", "total_tokens")}
        return LLMCompletion(raw=raw, parsed=self._extract_json(raw), request=request, usage=usage)


def _string_field(parsed: Any, *keys: str) -> str:
    if not isinstance(parsed, dict):
        return ""
    for k in keys:
        v = parsed.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


class PromptSynthesizer:
    """Turns labeled reference images plus structured input into one generation prompt."""

    def __init__(self, llm: OpenAICompatibleLLM | None) -> None:
        self.llm = llm
        self.systems = {
            "still_create": build_still_create_system_prompt(),
            "still_tweak": build_still_tweak_system_prompt(),
            "motion_animate": build_motion_animate_system_prompt(),
            "motion_tweak": build_motion_tweak_system_prompt(),
        }

    async def _run(
        self, task: str, payload: dict[str, Any], images: list[LabeledImage], keys: tuple[str, ...], limit: int
    ) -> SynthesizedPrompt:
        if self.llm is None:
            raise LLMDisabledError("LLM is not configured")
        system = self.systems[task]
        out = await self.llm.complete(system=system, labeled_images=images[:limit], payload=payload, purpose=task)
        return SynthesizedPrompt(
            prompt=_string_field(out.parsed, *keys),
            raw=out.raw,
            request=out.request,
            parsed_ok=out.parsed is not None,
            system=system,
        )

    async def aclose(self) -> None:
        if self.llm is not None:
            await self.llm.aclose()

    async def still_create(self, payload: dict[str, Any], images: list[LabeledImage]) -> SynthesizedPrompt:
        return await self._run("still_create", payload, images, ("clean_prompt",), 10)

    async def still_tweak(self, payload: dict[str, Any], images: list[LabeledImage]) -> SynthesizedPrompt:
        return await self._run("still_tweak", payload, images, ("clean_prompt", "prompt"), 6)

    async def motion_animate(self, payload: dict[str, Any], images: list[LabeledImage]) -> SynthesizedPrompt:
        return await self._run("motion_animate", payload, images, ("motion_prompt", "prompt"), 6)

    async def motion_tweak(self, payload: dict[str, Any], images: list[LabeledImage]) -> SynthesizedPrompt:
        return await self._run("motion_tweak", payload, images, ("motion_prompt", "prompt"), 6)


def get_llm_client() -> OpenAICompatibleLLM:
    if settings.llm_api_key is None:
        raise LLMDisabledError("LLM is not configured")
    return OpenAICompatibleLLM(
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        max_retries=settings.llm_max_retries,
        retry_base_s=settings.llm_retry_base_s,
    )


def build_prompt_synthesizer() -> PromptSynthesizer:
    try:
        llm = get_llm_client()
    except LLMDisabledError as e:
        logger.warning("llm.disabled reason=%s", e)
        llm = None
    return PromptSynthesizer(llm)
