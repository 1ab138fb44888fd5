from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import Session

from app.core.errors import FeatureDisabledError, ForbiddenError, NotFoundError, PipelineError, ValidationError
from app.core.settings import Settings, settings as default_settings
from app.models.generation import GenerationStatus
from app.services.credits_engine import read_preferences
from app.services.generation.billing import charge_generation, commit_type_for_me_success, refund_on_failure
from app.services.generation.chatter import Chatter
from app.services.generation.events import EventHub
from app.services.generation.media import (
    MediaEngines,
    build_fabric_input,
    build_kling_input,
    build_kling_motion_control_input,
    build_nanobanana_input,
    build_seedream_input,
    nanobanana_image_inputs,
    pick_end_image,
    pick_start_image,
    resolve_generate_audio,
    resolve_style_hero,
    seedream_image_inputs,
    still_aspect_ratio,
)
from app.services.generation.pricing import (
    as_http_url,
    resolve_frame2_reference,
    resolve_still_lane,
    resolve_video_flow,
    safe_str,
    still_cost_for_lane,
    video_cost,
)
from app.services.generation.provider import PredictionResult, pick_first_url
from app.services.generation.storage import ObjectStorage, PassthroughStorage
from app.services.generation.store import GenerationStore
from app.services.generation.ui import quick_line
from app.services.generation.vars import GenerationVars
from app.services.llm.client import LabeledImage, PromptSynthesizer, SynthesizedPrompt

logger = logging.getLogger(__name__)

STILL_FLOWS = frozenset({"still_create", "still_tweak"})

_MOTION_NOTES = (
    "Write ONE clean motion prompt. If audio reference exists, sync motion to beats/phrases. "
    "If video reference exists, sync motion of the reference while keeping subject consistent. "
    "Plain English. No emojis. No questions."
)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _timing(t0: float) -> dict[str, Any]:
    t1 = time.time()
    return {"started_at": _iso(t0), "ended_at": _iso(t1), "duration_ms": int((t1 - t0) * 1000)}


def _images_payload(images: list[LabeledImage]) -> list[dict[str, str]]:
    return [{"role": i.role, "url": i.url} for i in images]


@dataclass
class _EngineCall:
    engine: str
    step_type: str
    run: Callable[[], Awaitable[PredictionResult]]
    prediction_key: str
    url_keys: tuple[str, ...]
    storage_prefix: str
    saved_line: str


class _JobRun:
    """State of one pipeline execution: the row handle, current vars and step cursor."""

    def __init__(self, store: GenerationStore, hub: EventHub, generation_id: str, vars: GenerationVars) -> None:
        self.store = store
        self.hub = hub
        self.generation_id = generation_id
        self.vars = vars
        self.pass_id = vars.pass_id or ""
        self.step_no = 0
        self.cost = 0

    @property
    def flow(self) -> str:
        return self.vars.meta.flow or ("video_animate" if self.vars.mode == "video" else "still_create")

    @property
    def suggest_only(self) -> bool:
        return self.flow == "video_animate" and bool(self.vars.inputs.suggest_only)

    def read_vars(self) -> GenerationVars:
        return self.vars

    def write_vars(self, vars: GenerationVars) -> None:
        self.vars = vars
        self.store.update_vars(self.generation_id, vars)

    def update(self, section: str, **changes: Any) -> None:
        self.write_vars(self.vars.update(section, **changes))

    def status(self, status: GenerationStatus) -> None:
        self.store.update_status(self.generation_id, status)
        self.hub.publish_status(self.generation_id, status.value)

    def say(self, text: str) -> None:
        nxt = self.vars.push_line(text)
        if nxt is self.vars:
            return
        self.write_vars(nxt)
        self.hub.publish_line(self.generation_id, nxt.last_line())

    def step(self, step_type: str, payload: dict[str, Any]) -> None:
        self.step_no += 1
        self.store.write_step(
            generation_id=self.generation_id,
            pass_id=self.pass_id,
            step_no=self.step_no,
            step_type=step_type,
            payload=payload,
        )


class GenerationPipeline:
    """Drives a queued generation from prompting to a terminal status.

    Collaborators are injected so one application instance (or one test)
    owns its hub, provider client, prompt synthesizer and storage.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        hub: EventHub,
        engines: MediaEngines,
        synthesizer: PromptSynthesizer,
        storage: ObjectStorage | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.hub = hub
        self.engines = engines
        self.synthesizer = synthesizer
        self.storage = storage or PassthroughStorage()
        self.cfg = cfg or default_settings

    async def run(self, generation_id: str) -> None:
        db = self.session_factory()
        try:
            store = GenerationStore(db)
            row = store.get(generation_id)
            if row is None:
                logger.warning("mma.pipeline_missing_generation generation_id=%s", generation_id)
                return
            vars = GenerationVars.from_json(row.vars, mode=row.mode)
            if not vars.pass_id:
                vars = vars.replace(pass_id=row.pass_id)
            job = _JobRun(store, self.hub, generation_id, vars)
            await self._execute(db, job)
        finally:
            db.close()

    async def _execute(self, db: Session, job: _JobRun) -> None:
        flow = job.flow
        logger.info("mma.pipeline_start generation_id=%s flow=%s", job.generation_id, flow)
        try:
            if not self.cfg.mma_enabled:
                raise FeatureDisabledError()
            self._charge(db, job)

            job.status(GenerationStatus.PROMPTING)
            job.say(quick_line(f"{flow}_start"))

            if flow == "still_create":
                call = await self._still_create(db, job)
            elif flow == "still_tweak":
                call = await self._still_tweak(db, job)
            elif flow == "video_animate":
                call = await self._video(job, tweak=False)
            elif flow == "video_tweak":
                call = await self._video(job, tweak=True)
            else:
                raise PipelineError("BAD_FLOW", f"unsupported flow: {flow}")

            if call is None:
                self._finish_suggested(db, job)
                return
            await self._generate(job, call)
        except Exception as err:
            self._fail(db, job, err)

    def _charge(self, db: Session, job: _JobRun) -> None:
        v = job.vars
        if job.flow in STILL_FLOWS:
            lane = resolve_still_lane(v.inputs.as_dict())
            job.cost = still_cost_for_lane(lane)
            reason = "mma_still_niche" if lane == "niche" else "mma_still"
        else:
            if job.suggest_only:
                return
            lane = "video"
            job.cost = video_cost(v.inputs.as_dict(), v.assets.as_dict())
            reason = "mma_video"
        charge_generation(
            db, pass_id=job.pass_id, generation_id=job.generation_id, cost=job.cost, reason=reason, lane=lane
        )

    async def _synthesize(
        self,
        job: _JobRun,
        *,
        step_type: str,
        task: Callable[[dict[str, Any], list[LabeledImage]], Awaitable[SynthesizedPrompt]],
        payload: dict[str, Any],
        images: list[LabeledImage],
        output_key: str,
    ) -> str:
        t0 = time.time()
        one = await task(payload, images)
        job.step(
            step_type,
            {
                "ctx": one.system,
                "input": payload,
                "labeled_images": _images_payload(images),
                "request": one.request,
                "raw": one.raw,
                "output": {output_key: one.prompt, "parsed_ok": one.parsed_ok},
                "timing": _timing(t0),
                "error": None,
            },
        )
        return one.prompt

    def _still_call(self, job: _JobRun, prompt: str, *, parent_url: str = "") -> _EngineCall:
        lane = resolve_still_lane(job.vars.inputs.as_dict())
        use_nano = lane == "niche" and self.engines.nanobanana_enabled
        engine = "nanobanana" if use_nano else "seedream"
        job.update("meta", still_lane=lane, still_engine=engine)

        tweak = bool(parent_url)
        if tweak:
            image_inputs = [parent_url]
        elif use_nano:
            image_inputs = nanobanana_image_inputs(job.vars)
        else:
            image_inputs = seedream_image_inputs(job.vars)

        aspect = still_aspect_ratio(job.vars, use_nano=use_nano, has_images=bool(image_inputs), cfg=self.cfg)
        if use_nano:
            payload = build_nanobanana_input(prompt=prompt, aspect_ratio=aspect, image_inputs=image_inputs, cfg=self.cfg)
            run = self.engines.run_nanobanana
        else:
            payload = build_seedream_input(prompt=prompt, aspect_ratio=aspect, image_inputs=image_inputs, cfg=self.cfg)
            run = self.engines.run_seedream

        suffix = "_tweak" if tweak else ""
        return _EngineCall(
            engine=engine,
            step_type=f"{engine}_generate{suffix}",
            run=lambda: run(payload),
            prediction_key=f"{engine}_prediction_id",
            url_keys=(f"{engine}_image_url",),
            storage_prefix=f"mma/still/{job.generation_id}",
            saved_line="saved_image",
        )

    async def _still_create(self, db: Session, job: _JobRun) -> _EngineCall:
        a = job.vars.assets
        product = as_http_url(a.product_image_url)
        logo = as_http_url(a.logo_image_url)
        hero, inspiration = resolve_style_hero(job.vars)
        if hero:
            job.update("assets", style_hero_image_url=hero)

        images: list[LabeledImage] = []
        if product:
            images.append(LabeledImage("SCENE / COMPOSITION / ASTHETIC / VIBE / STYLE", product))
        if logo:
            images.append(LabeledImage("LOGO / LABEL / ICON / TEXT / DESIGN", logo))
        for i, u in enumerate(inspiration, start=1):
            images.append(LabeledImage(f"PRODUCT / ELEMENT / TEXTURE / MATERIAL {i}", u))
        images = images[:10]

        prefs = read_preferences(db, job.pass_id)
        payload = {
            "user_brief": safe_str(job.vars.inputs.brief),
            "style": safe_str(job.vars.inputs.style),
            "preferences": prefs,
            "hard_blocks": list(prefs.get("hard_blocks") or []),
            "notes": "Write a clean image prompt using the labeled images as references.",
        }
        generated = await self._synthesize(
            job,
            step_type="gpt_still_one_shot",
            task=self.synthesizer.still_create,
            payload=payload,
            images=images,
            output_key="clean_prompt",
        )
        prompt = generated or safe_str(job.vars.inputs.prompt) or safe_str(job.vars.prompts.clean_prompt)
        if not prompt:
            raise PipelineError("EMPTY_PROMPT", "prompt synthesis returned nothing")
        job.update("prompts", clean_prompt=prompt)

        job.status(GenerationStatus.GENERATING)
        return self._still_call(job, prompt)

    def _parent(self, job: _JobRun):
        parent_id = job.vars.meta.parent_generation_id
        return job.store.get(parent_id) if parent_id else None

    async def _still_tweak(self, db: Session, job: _JobRun) -> _EngineCall:
        parent = self._parent(job)
        parent_url = as_http_url(job.vars.inputs.parent_output_url) or as_http_url(parent.output_url if parent else None)
        if not parent_url:
            raise PipelineError("PARENT_OUTPUT_URL_MISSING", "parent generation has no output")
        feedback = safe_str(job.vars.feedback.still_feedback) or safe_str(job.vars.inputs.feedback)
        if not feedback:
            raise PipelineError("MISSING_FEEDBACK", "tweak needs feedback text")

        prefs = read_preferences(db, job.pass_id)
        payload = {
            "parent_image_url": parent_url,
            "feedback": feedback,
            "previous_prompt": safe_str(parent.prompt if parent else None),
            "preferences": prefs,
            "hard_blocks": list(prefs.get("hard_blocks") or []),
            "notes": "Keep the main subject consistent. Apply feedback precisely.",
        }
        prompt = await self._synthesize(
            job,
            step_type="gpt_still_tweak_one_shot",
            task=self.synthesizer.still_tweak,
            payload=payload,
            images=[LabeledImage("PARENT_IMAGE", parent_url)],
            output_key="clean_prompt",
        )
        if not prompt:
            raise PipelineError("EMPTY_PROMPT", "tweak prompt synthesis returned nothing")
        job.update("prompts", clean_prompt=prompt)

        job.status(GenerationStatus.GENERATING)
        return self._still_call(job, prompt, parent_url=parent_url)

    async def _video(self, job: _JobRun, *, tweak: bool) -> _EngineCall | None:
        v = job.vars
        inputs = v.inputs.as_dict()
        assets = v.assets.as_dict()
        frame2 = resolve_frame2_reference(inputs, assets)
        flow = resolve_video_flow(inputs, assets)

        parent = self._parent(job) if tweak else None
        start = pick_start_image(v, parent.output_url if parent else None)
        end = pick_end_image(v)
        if not start:
            raise PipelineError("MISSING_START_IMAGE", "video needs a start image")

        images = [LabeledImage("START_IMAGE", start)]
        if end:
            images.append(LabeledImage("END_IMAGE", end))

        motion_brief = safe_str(v.inputs.motion_user_brief) or safe_str(v.inputs.brief)
        movement = safe_str(v.inputs.selected_movement_style)

        if tweak:
            feedback = safe_str(v.feedback.motion_feedback) or safe_str(v.inputs.feedback)
            if not feedback:
                raise PipelineError("MISSING_FEEDBACK", "tweak needs feedback text")
            previous = ""
            if parent is not None:
                parent_vars = GenerationVars.from_json(parent.vars, mode=parent.mode)
                previous = safe_str(parent_vars.prompts.motion_prompt) or safe_str(parent.prompt)
            payload = {
                "start_image_url": start,
                "end_image_url": end or None,
                "feedback_motion": feedback,
                "previous_motion_prompt": previous,
                "notes": "Keep what works. Apply feedback precisely. Plain English. No emojis. No questions.",
            }
            prompt = await self._synthesize(
                job,
                step_type="gpt_motion_tweak_one_shot",
                task=self.synthesizer.motion_tweak,
                payload=payload,
                images=images,
                output_key="motion_prompt",
            )
            prompt = prompt or feedback or previous
        else:
            override = safe_str(v.inputs.prompt_override)
            if override:
                job.step(
                    "motion_prompt_override",
                    {
                        "source": "frontend",
                        "flow": flow,
                        "frame2_kind": frame2["kind"],
                        "frame2_url": frame2["url"] or None,
                        "frame2_duration_sec": frame2["raw_duration_sec"] or None,
                        "prompt_override": override,
                        "start_image_url": start,
                        "end_image_url": end or None,
                        "motion_user_brief": motion_brief,
                        "selected_movement_style": movement,
                        "timing": _timing(time.time()),
                        "error": None,
                    },
                )
                prompt = override
            else:
                payload = {
                    "flow": flow,
                    "frame2_kind": frame2["kind"],
                    "frame2_url": frame2["url"] or None,
                    "frame2_duration_sec": frame2["raw_duration_sec"] or None,
                    "start_image_url": start,
                    "end_image_url": end or None,
                    "motion_user_brief": motion_brief,
                    "selected_movement_style": movement,
                    "notes": _MOTION_NOTES,
                }
                prompt = await self._synthesize(
                    job,
                    step_type="gpt_motion_one_shot",
                    task=self.synthesizer.motion_animate,
                    payload=payload,
                    images=images,
                    output_key="motion_prompt",
                )
                prompt = prompt or safe_str(v.inputs.prompt) or safe_str(v.prompts.motion_prompt)
            prompt = prompt or motion_brief

        # fabric lip-syncs to the audio track and runs without a prompt
        if not prompt and flow != "fabric_audio":
            raise PipelineError("EMPTY_PROMPT", "motion prompt synthesis returned nothing")

        job.update("prompts", motion_prompt=prompt)
        changes: dict[str, Any] = {"start_image_url": start}
        if end:
            changes["end_image_url"] = end
        job.update("inputs", **changes)

        if job.suggest_only:
            return None

        job.status(GenerationStatus.GENERATING)
        return self._video_call(job, prompt, start, end, flow, frame2, tweak=tweak)

    def _video_call(
        self, job: _JobRun, prompt: str, start: str, end: str, flow: str, frame2: dict[str, Any], *, tweak: bool
    ) -> _EngineCall:
        i = job.vars.inputs
        suffix = "_tweak" if tweak else ""
        prefix = f"mma/video/{job.generation_id}"

        if flow == "kling_motion_control":
            payload = build_kling_motion_control_input(
                prompt=prompt,
                image=start,
                video=frame2["url"],
                mode=i.mode,
                keep_original_sound=i.keep_original_sound,
                character_orientation=i.character_orientation,
            )
            job.update("meta", video_engine="kling_motion_control")
            return _EngineCall(
                engine="kling_motion_control",
                step_type=f"kling_motion_control_generate{suffix}",
                run=lambda: self.engines.run_kling_motion_control(payload),
                prediction_key="kling_motion_control_prediction_id",
                url_keys=("kling_video_url", "kling_motion_control_video_url"),
                storage_prefix=prefix,
                saved_line="saved_video",
            )

        if flow == "fabric_audio":
            payload = build_fabric_input(image=start, audio=frame2["url"], resolution=i.resolution, cfg=self.cfg)
            job.update("meta", video_engine="fabric_audio")
            return _EngineCall(
                engine="fabric",
                step_type=f"fabric_generate{suffix}",
                run=lambda: self.engines.run_fabric(payload),
                prediction_key="fabric_prediction_id",
                url_keys=("kling_video_url", "fabric_video_url"),
                storage_prefix=prefix,
                saved_line="saved_video",
            )

        payload = build_kling_input(
            prompt=prompt,
            start_image=start,
            end_image=end,
            duration=i.duration,
            mode=i.mode,
            negative_prompt=i.negative_prompt,
            generate_audio=resolve_generate_audio(job.vars, end),
            cfg=self.cfg,
        )
        job.update("meta", video_engine="kling")
        return _EngineCall(
            engine="kling",
            step_type=f"kling_generate{suffix}",
            run=lambda: self.engines.run_kling(payload),
            prediction_key="kling_prediction_id",
            url_keys=("kling_video_url",),
            storage_prefix=prefix,
            saved_line="saved_video",
        )

    async def _generate(self, job: _JobRun, call: _EngineCall) -> None:
        chatter = Chatter(
            job_id=job.generation_id,
            stage="generating",
            hub=self.hub,
            read_vars=job.read_vars,
            write_vars=job.write_vars,
            interval_ms=self.cfg.chatter_interval_ms,
        )
        async with chatter:
            result = await call.run()
        job.update("outputs", **{call.prediction_key: result.prediction_id or None})

        job.step(
            call.step_type,
            {"input": result.input, "output": result.prediction, "timing": result.timing, "error": None},
        )

        url = pick_first_url(result.output)
        if not url:
            code = "PROVIDER_TIMEOUT" if result.timed_out else "NO_URL"
            raise PipelineError(code, f"{call.engine} returned no output url", prediction_id=result.prediction_id)

        final_url = await self._persist_output(url, call.storage_prefix, job.generation_id)
        job.update("outputs", **{k: final_url for k in call.url_keys})
        job.write_vars(job.vars.replace(output_url=final_url))
        job.say(quick_line(call.saved_line, "done"))

        prompt = job.vars.prompts.motion_prompt if job.vars.mode == "video" else job.vars.prompts.clean_prompt
        job.store.finalize(job.generation_id, url=final_url, prompt=prompt)
        job.status(GenerationStatus.DONE)
        self.hub.publish_done(job.generation_id, "done")
        logger.info("mma.pipeline_done generation_id=%s engine=%s", job.generation_id, call.engine)

    async def _persist_output(self, url: str, prefix: str, generation_id: str) -> str:
        try:
            return await self.storage.persist_remote_url(url, prefix)
        except Exception as e:
            logger.warning("mma.persist_output_failed generation_id=%s err=%s", generation_id, e)
            return url

    def _finish_suggested(self, db: Session, job: _JobRun) -> None:
        prompt = job.vars.prompts.motion_prompt or ""
        job.store.set_prompt(job.generation_id, prompt)
        job.store.update_status(job.generation_id, GenerationStatus.SUGGESTED)
        if job.vars.inputs.type_for_me:
            try:
                commit_type_for_me_success(db, job.pass_id)
            except Exception as e:
                logger.warning("mma.type_for_me_charge_failed pass_id=%s err=%s", job.pass_id, e)
        self.hub.publish_status(job.generation_id, GenerationStatus.SUGGESTED.value)
        self.hub.publish_done(job.generation_id, GenerationStatus.SUGGESTED.value)

    def _fail(self, db: Session, job: _JobRun, err: Exception) -> None:
        logger.exception("mma.pipeline_error generation_id=%s flow=%s", job.generation_id, job.flow)
        db.rollback()
        try:
            if not job.store.update_status(job.generation_id, GenerationStatus.ERROR):
                # already terminal (e.g. delivered as done): nothing to refund or announce
                logger.warning(
                    "mma.fail_after_terminal generation_id=%s reason=%s",
                    job.generation_id,
                    getattr(err, "code", None) or type(err).__name__,
                )
                return
            job.store.set_error(
                job.generation_id,
                {
                    "code": "PIPELINE_ERROR",
                    "reason": getattr(err, "code", None) or type(err).__name__,
                    "message": str(getattr(err, "message", None) or err or ""),
                    "provider": getattr(err, "provider", None),
                },
            )
        except Exception as e:
            logger.warning("mma.record_error_failed generation_id=%s err=%s", job.generation_id, e)

        if not job.suggest_only and job.cost > 0:
            try:
                refund_on_failure(db, pass_id=job.pass_id, generation_id=job.generation_id, cost=job.cost, err=err)
            except Exception as e:
                db.rollback()
                logger.warning("mma.refund_failed generation_id=%s err=%s", job.generation_id, e)

        self.hub.publish_status(job.generation_id, GenerationStatus.ERROR.value)
        self.hub.publish_done(job.generation_id, GenerationStatus.ERROR.value)

    async def refresh_from_provider(self, generation_id: str, pass_id: str | None = None) -> dict[str, Any]:
        """Recover a job whose provider finished after the pipeline gave up on it."""
        db = self.session_factory()
        try:
            store = GenerationStore(db)
            row = store.get(generation_id)
            if row is None:
                raise NotFoundError("NOT_FOUND", "generation not found")
            if pass_id and row.pass_id and str(pass_id) != str(row.pass_id):
                raise ForbiddenError("FORBIDDEN", "generation belongs to another customer")
            if row.output_url:
                return {"ok": True, "refreshed": False, "already_done": True, "url": row.output_url}

            vars = GenerationVars.from_json(row.vars, mode=row.mode)
            o = vars.outputs
            if row.mode == "video":
                prediction_id = o.kling_motion_control_prediction_id or o.fabric_prediction_id or o.kling_prediction_id
            else:
                prediction_id = o.nanobanana_prediction_id or o.seedream_prediction_id
            if not prediction_id:
                raise ValidationError("NO_PREDICTION_ID", "generation has no provider prediction to refresh")

            prediction = await self.engines.get_prediction(str(prediction_id))
            provider_status = prediction.get("status") or None
            url = pick_first_url(prediction.get("output"))
            if not url:
                return {"ok": True, "refreshed": False, "provider_status": provider_status}

            prefix = f"mma/video/{generation_id}" if row.mode == "video" else f"mma/still/{generation_id}"
            final_url = await self._persist_output(url, prefix, generation_id)
            if row.mode == "video":
                vars = vars.update("outputs", kling_video_url=final_url)
            elif o.nanobanana_prediction_id:
                vars = vars.update("outputs", nanobanana_image_url=final_url)
            else:
                vars = vars.update("outputs", seedream_image_url=final_url)
            vars = vars.replace(output_url=final_url)

            store.update_vars(generation_id, vars)
            prompt = vars.prompts.motion_prompt if row.mode == "video" else vars.prompts.clean_prompt
            store.finalize(generation_id, url=final_url, prompt=prompt or row.prompt)
            if store.update_status(generation_id, GenerationStatus.DONE):
                self.hub.publish_status(generation_id, GenerationStatus.DONE.value)
                self.hub.publish_done(generation_id, GenerationStatus.DONE.value)
            logger.info("mma.refreshed generation_id=%s prediction_id=%s", generation_id, prediction_id)
            return {"ok": True, "refreshed": True, "provider_status": provider_status, "url": final_url}
        finally:
            db.close()
