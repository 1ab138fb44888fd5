from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.core.errors import InsufficientCreditsError
from app.services.credits_engine import (
    adjust_credits,
    get_balance,
    has_applied_entry,
    has_entry,
    read_preferences,
    utcnow,
    write_preferences,
)
from app.services.generation.pricing import MMA_COSTS, build_insufficient_credits_details, utc_day_key

logger = logging.getLogger(__name__)

CHARGE_REF_TYPE = "mma_charge"
REFUND_REF_TYPE = "mma_refund"
TYPE_FOR_ME_REF_TYPE = "mma_type_for_me"

_SAFETY_MARKERS = ("nsfw", "nud", "sexual", "safety", "policy")


def generation_ref_id(generation_id: str) -> str:
    return f"mma:{generation_id}"


def is_safety_block(err: Any) -> bool:
    msg = str(getattr(err, "message", None) or err or "").lower()
    if any(marker in msg for marker in _SAFETY_MARKERS):
        return True
    return "content" in msg and "block" in msg


def ensure_enough_credits(db: Session, pass_id: str, needed: int, *, lane: str | None = None) -> int:
    bal = int(get_balance(db, pass_id)["credits"])
    need = int(needed or 0)
    if bal < need:
        details = build_insufficient_credits_details(balance=bal, needed=need, lane=lane)
        raise InsufficientCreditsError(pass_id=pass_id, balance=bal, needed=need, details=details)
    return bal


def charge_generation(
    db: Session,
    *,
    pass_id: str,
    generation_id: str,
    cost: int,
    reason: str = "mma_charge",
    lane: str | None = None,
) -> dict[str, Any]:
    c = int(cost or 0)
    if c <= 0:
        return {"charged": False, "cost": 0}

    ref_id = generation_ref_id(generation_id)
    if has_entry(db, CHARGE_REF_TYPE, ref_id):
        return {"charged": True, "already": True, "cost": c}

    ensure_enough_credits(db, pass_id, c, lane=lane)
    result = adjust_credits(
        db,
        pass_id,
        -c,
        reason=reason,
        source="mma",
        ref_type=CHARGE_REF_TYPE,
        ref_id=ref_id,
        event_time=utcnow(),
    )
    return {"charged": True, "already": bool(result["already_applied"]), "cost": c}


def refund_on_failure(
    db: Session,
    *,
    pass_id: str,
    generation_id: str,
    cost: int,
    err: Any = None,
) -> dict[str, Any]:
    """Give back a failed job's charge, once.

    Only jobs whose charge actually moved the balance are refunded.
    Safety-rejected jobs get at most one courtesy refund per customer per UTC day.
    """
    c = int(cost or 0)
    if c <= 0:
        return {"refunded": False, "cost": 0}

    ref_id = generation_ref_id(generation_id)
    if not has_applied_entry(db, CHARGE_REF_TYPE, ref_id):
        return {"refunded": False, "not_charged": True, "cost": c}
    if has_entry(db, REFUND_REF_TYPE, ref_id):
        return {"refunded": False, "already": True, "cost": c}

    safety = is_safety_block(err)
    today = utc_day_key()
    if safety and read_preferences(db, pass_id).get("courtesy_safety_refund_day") == today:
        logger.info("credits.safety_refund_denied pass_id=%s generation_id=%s day=%s", pass_id, generation_id, today)
        return {"refunded": False, "blocked_by_daily_limit": True, "safety": True, "cost": c}

    result = adjust_credits(
        db,
        pass_id,
        c,
        reason="mma_safety_refund" if safety else "mma_refund",
        source="mma",
        ref_type=REFUND_REF_TYPE,
        ref_id=ref_id,
        event_time=utcnow(),
    )
    refunded = not result["already_applied"]
    if safety and refunded:
        # the day is spent only once the courtesy refund has landed
        write_preferences(db, pass_id, {**read_preferences(db, pass_id), "courtesy_safety_refund_day": today})
    return {"refunded": refunded, "safety": safety, "cost": c}


def preflight_type_for_me(db: Session, pass_id: str) -> int:
    prefs = read_preferences(db, pass_id)
    n = int(prefs.get("type_for_me_success_count") or 0)
    if (n + 1) % MMA_COSTS["type_for_me_per"] == 0:
        ensure_enough_credits(db, pass_id, MMA_COSTS["type_for_me_charge"])
    return n


def commit_type_for_me_success(db: Session, pass_id: str) -> dict[str, Any]:
    prefs = read_preferences(db, pass_id)
    nxt = int(prefs.get("type_for_me_success_count") or 0) + 1
    write_preferences(db, pass_id, {**prefs, "type_for_me_success_count": nxt})

    if nxt % MMA_COSTS["type_for_me_per"] != 0:
        return {"charged": False, "success_count": nxt}

    bucket = nxt // MMA_COSTS["type_for_me_per"]
    ref_id = f"t4m:{pass_id}:b:{bucket}"
    if has_entry(db, TYPE_FOR_ME_REF_TYPE, ref_id):
        return {"charged": False, "already": True, "success_count": nxt}

    ensure_enough_credits(db, pass_id, MMA_COSTS["type_for_me_charge"])
    adjust_credits(
        db,
        pass_id,
        -MMA_COSTS["type_for_me_charge"],
        reason="mma_type_for_me",
        source="mma",
        ref_type=TYPE_FOR_ME_REF_TYPE,
        ref_id=ref_id,
        event_time=utcnow(),
    )
    return {"charged": True, "bucket": bucket, "success_count": nxt}
