from __future__ import annotations

import logging
from typing import Any, Callable, Mapping
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.core.identity import explicit_pass_id, resolve_pass_id
from app.models.generation import Generation, GenerationMode
from app.services.credits_engine import ensure_customer
from app.services.generation.billing import ensure_enough_credits, preflight_type_for_me
from app.services.generation.pricing import resolve_still_lane, safe_str, still_cost_for_lane, video_cost
from app.services.generation.store import GenerationStore
from app.services.generation.ui import to_user_status
from app.services.generation.vars import Assets, Feedback, GenerationVars, Inputs, Prompts, make_initial_vars

logger = logging.getLogger(__name__)

Launcher = Callable[[str], Any]


def _section(body: Mapping[str, Any], key: str) -> dict[str, Any]:
    v = body.get(key)
    return dict(v) if isinstance(v, dict) else {}


def _typed_section(body: Mapping[str, Any], key: str, model: type[BaseModel]) -> dict[str, Any]:
    """Validate one request section and return the keys it set, by field name.

    Aliased keys (``durationSeconds``, ``frame2Url``...) come back under their
    canonical name so later merges cannot keep two spellings of one field.
    """
    try:
        parsed = model.model_validate(_section(body, key))
        return parsed.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    except SchemaError as e:
        fields = [
            {"field": ".".join([key, *(str(p) for p in err.get("loc", ()))]), "message": err.get("msg")}
            for err in e.errors()
        ]
        raise ValidationError("INPUTS_INVALID", f"invalid {key}", fields=fields) from e


def _truthy(inputs: Mapping[str, Any], *keys: str) -> bool:
    return any(inputs.get(k) is True for k in keys)


def _feedback_text(body: Mapping[str, Any], *keys: str) -> str:
    fb = body.get("feedback")
    if isinstance(fb, str):
        return safe_str(fb)
    fb = fb if isinstance(fb, dict) else {}
    inputs = _section(body, "inputs")
    for v in [fb.get(k) for k in keys] + [fb.get("text"), inputs.get("feedback"), inputs.get("comment")]:
        s = safe_str(v)
        if s:
            return s
    return ""


def _customer_hints(body: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "shopify_customer_id": safe_str(body.get("customer_id")) or None,
        "user_id": safe_str(body.get("user_id")) or None,
        "email": safe_str(body.get("email")) or None,
    }


def _session_meta(body: Mapping[str, Any], mode: str, parent: GenerationVars | None) -> dict[str, str]:
    inputs = _section(body, "inputs")
    pm = parent.meta if parent is not None else None
    session_id = (
        safe_str(body.get("sessionId") or body.get("session_id") or inputs.get("sessionId") or inputs.get("session_id"))
        or safe_str(pm.session_id if pm else None)
        or str(uuid4())
    )
    platform = safe_str(body.get("platform") or inputs.get("platform")) or safe_str(pm.platform if pm else None) or "web"
    title = (
        safe_str(body.get("title") or inputs.get("title"))
        or safe_str(pm.title if pm else None)
        or ("Video session" if mode == GenerationMode.VIDEO.value else "Image session")
    )
    return {"session_id": session_id, "platform": platform, "title": title}


def _queued(generation_id: str, pass_id: str) -> dict[str, Any]:
    return {
        "generation_id": generation_id,
        "pass_id": pass_id,
        "status": "queued",
        "sse_url": f"/mma/stream/{generation_id}",
    }


def _persist_and_launch(
    db: Session,
    *,
    vars: GenerationVars,
    pass_id: str,
    mode: str,
    parent_id: str | None,
    launch: Launcher,
) -> dict[str, Any]:
    generation_id = str(uuid4())
    GenerationStore(db).create(
        generation_id=generation_id, pass_id=pass_id, mode=mode, vars=vars, parent_id=parent_id
    )
    logger.info(
        "mma.generation_queued generation_id=%s pass_id=%s flow=%s", generation_id, pass_id, vars.meta.flow
    )
    launch(generation_id)
    return _queued(generation_id, pass_id)


def create_generation(
    db: Session,
    *,
    mode: str,
    body: Mapping[str, Any],
    headers: Mapping[str, str] | None = None,
    launch: Launcher,
) -> dict[str, Any]:
    """Pre-flight credits, persist a queued generation and hand it to ``launch``."""
    mode = GenerationMode(mode).value
    inputs = _typed_section(body, "inputs", Inputs)
    assets = _typed_section(body, "assets", Assets)
    feedback = _typed_section(body, "feedback", Feedback)
    prompts = _typed_section(body, "prompts", Prompts)

    pass_id = resolve_pass_id(body, headers)
    ensure_customer(db, pass_id, **_customer_hints(body))

    if mode == GenerationMode.VIDEO.value:
        suggest_only = _truthy(inputs, "suggest_only", "suggestOnly")
        type_for_me = _truthy(inputs, "type_for_me", "typeForMe", "use_suggestion", "useSuggestion")
        if suggest_only and type_for_me:
            preflight_type_for_me(db, pass_id)
        else:
            ensure_enough_credits(db, pass_id, video_cost(inputs, assets), lane="video")
    else:
        lane = resolve_still_lane(inputs)
        ensure_enough_credits(db, pass_id, still_cost_for_lane(lane), lane=lane)

    parent_id = safe_str(
        body.get("parent_generation_id") or body.get("parentGenerationId") or body.get("generation_id")
    ) or None
    parent = GenerationStore(db).get(parent_id) if parent_id else None
    parent_vars = GenerationVars.from_json(parent.vars, mode=parent.mode) if parent is not None else None

    vars = make_initial_vars(
        mode=mode,
        pass_id=pass_id,
        assets=assets,
        inputs=inputs,
        feedback=feedback,
        prompts=prompts,
    )
    session = _session_meta(body, mode, parent_vars)
    vars = vars.update("inputs", **session)

    if mode == GenerationMode.VIDEO.value:
        vars = vars.update("meta", flow="video_animate", parent_generation_id=parent_id if parent else None, **session)
        if parent is not None and parent.output_url:
            vars = vars.update("inputs", parent_output_url=parent.output_url)
    else:
        vars = vars.update("meta", flow="still_create", **session)

    return _persist_and_launch(
        db, vars=vars, pass_id=pass_id, mode=mode, parent_id=parent_id if parent else None, launch=launch
    )


def tweak_generation(
    db: Session,
    *,
    mode: str,
    parent_id: str,
    body: Mapping[str, Any],
    headers: Mapping[str, str] | None = None,
    launch: Launcher,
) -> dict[str, Any]:
    """Queue a tweak of an existing generation.

    Video tweaks inherit the parent's inputs and assets (request values win);
    still tweaks only borrow the parent's output image.
    """
    mode = GenerationMode(mode).value
    parent: Generation | None = GenerationStore(db).get(parent_id)
    if parent is None:
        raise NotFoundError("PARENT_GENERATION_NOT_FOUND", "parent generation not found")

    pass_id = explicit_pass_id(body, headers) or parent.pass_id or resolve_pass_id(body)
    parent_vars = GenerationVars.from_json(parent.vars, mode=parent.mode)
    inputs = _typed_section(body, "inputs", Inputs)
    assets = _typed_section(body, "assets", Assets)
    prompts = _typed_section(body, "prompts", Prompts)

    if mode == GenerationMode.VIDEO.value:
        feedback = _feedback_text(body, "motion_feedback", "feedback_motion")
    else:
        feedback = _feedback_text(body, "still_feedback", "feedback_still")
    if not feedback:
        raise ValidationError("MISSING_FEEDBACK", "feedback is required for a tweak")

    ensure_customer(db, pass_id, **_customer_hints(body))

    if mode == GenerationMode.VIDEO.value:
        inputs = {**parent_vars.inputs.as_dict(), **inputs}
        assets = {**parent_vars.assets.as_dict(), **assets}
        # the parent's own suggestion flags never carry over to a tweak
        inputs.pop("suggest_only", None)
        inputs.pop("type_for_me", None)
        ensure_enough_credits(db, pass_id, video_cost(inputs, assets), lane="video")
        feedback_section = {"motion_feedback": feedback}
    else:
        lane = resolve_still_lane(inputs)
        ensure_enough_credits(db, pass_id, still_cost_for_lane(lane), lane=lane)
        feedback_section = {"still_feedback": feedback}

    vars = make_initial_vars(
        mode=mode,
        pass_id=pass_id,
        assets=assets,
        inputs=inputs,
        feedback=feedback_section,
        prompts=prompts,
    )
    session = _session_meta(body, mode, parent_vars)
    flow = "video_tweak" if mode == GenerationMode.VIDEO.value else "still_tweak"
    vars = vars.update("inputs", parent_output_url=parent.output_url, **session)
    vars = vars.update("meta", flow=flow, parent_generation_id=parent.id, **session)

    return _persist_and_launch(db, vars=vars, pass_id=pass_id, mode=mode, parent_id=parent.id, launch=launch)


def fetch_generation(db: Session, generation_id: str) -> dict[str, Any]:
    row = GenerationStore(db).get(generation_id)
    if row is None:
        raise NotFoundError("NOT_FOUND", "generation not found")

    internal = row.status or "queued"
    vars = GenerationVars.from_json(row.vars, mode=row.mode)
    o = vars.outputs
    is_still = row.mode == GenerationMode.STILL.value
    still_engine = safe_str(vars.meta.still_engine) or (
        "nanobanana" if (o.nanobanana_image_url or o.nanobanana_prediction_id) else "seedream"
    )

    return {
        "generation_id": row.id,
        "status": to_user_status(internal),
        "state": internal,
        "mma_vars": vars.to_json(),
        "still_engine": still_engine if is_still else None,
        "outputs": {
            "seedream_image_url": row.output_url if is_still and still_engine == "seedream" else None,
            "nanobanana_image_url": row.output_url if is_still and still_engine == "nanobanana" else None,
            "kling_video_url": row.output_url if not is_still else None,
        },
        "prompt": row.prompt or None,
        "error": row.error or None,
    }
