from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.settings import Settings, settings as default_settings
from app.services.generation.events import EventHub
from app.services.generation.media import MediaEngines
from app.services.generation.pipeline import GenerationPipeline
from app.services.generation.provider import ReplicateClient, get_replicate_client
from app.services.generation.storage import ObjectStorage
from app.services.llm.client import PromptSynthesizer, build_prompt_synthesizer

logger = logging.getLogger(__name__)


@dataclass
class GenerationRuntime:
    """Process-owned collaborators shared by routes and background pipelines."""

    hub: EventHub
    pipeline: GenerationPipeline
    closers: tuple[Callable[[], Any], ...] = ()

    async def aclose(self) -> None:
        for close in self.closers:
            try:
                await close()
            except Exception as e:
                logger.warning("runtime.close_failed err=%s", e)


def build_runtime(
    *,
    session_factory: Callable[[], Session],
    cfg: Settings | None = None,
    replicate: ReplicateClient | None = None,
    synthesizer: PromptSynthesizer | None = None,
    storage: ObjectStorage | None = None,
) -> GenerationRuntime:
    cfg = cfg or default_settings
    replicate = replicate or get_replicate_client()
    synthesizer = synthesizer or build_prompt_synthesizer()
    hub = EventHub(keepalive_s=cfg.sse_keepalive_s)
    pipeline = GenerationPipeline(
        session_factory=session_factory,
        hub=hub,
        engines=MediaEngines(replicate, cfg=cfg),
        synthesizer=synthesizer,
        storage=storage,
        cfg=cfg,
    )
    return GenerationRuntime(hub=hub, pipeline=pipeline, closers=(replicate.aclose, synthesizer.aclose))
