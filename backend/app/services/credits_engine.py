from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.core.settings import settings
from app.models.credit_ledger import CreditTransaction
from app.models.customer import Customer

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    dt = _as_utc(dt)
    return dt.isoformat() if dt is not None else None


def _clean(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def _coerce_delta(delta: Any) -> int:
    if isinstance(delta, bool):
        raise ValidationError("DELTA_INVALID", "delta must be a number")
    try:
        d = float(delta)
    except (TypeError, ValueError):
        raise ValidationError("DELTA_INVALID", "delta must be a number")
    if not math.isfinite(d):
        raise ValidationError("DELTA_INVALID", "delta must be finite")
    out = int(d)
    if out == 0:
        raise ValidationError("DELTA_INVALID", "delta must be non-zero")
    return out


def ensure_customer(
    db: Session,
    pass_id: str,
    *,
    shopify_customer_id: str | None = None,
    user_id: str | None = None,
    email: str | None = None,
) -> Customer:
    pid = _clean(pass_id)
    if not pid:
        raise ValidationError("PASS_ID_REQUIRED")

    now = utcnow()
    normalized_email = _clean(email).lower() or None
    cust = db.query(Customer).filter(Customer.pass_id == pid).first()
    if cust is not None:
        cust.last_active = now
        if user_id and not cust.user_id:
            cust.user_id = _clean(user_id)
        if normalized_email and not cust.email:
            cust.email = normalized_email
        if shopify_customer_id and not cust.shopify_customer_id:
            cust.shopify_customer_id = _clean(shopify_customer_id)
        db.commit()
        return cust

    free = int(settings.default_free_credits or 0)
    expires_at = now + timedelta(days=settings.default_credits_expire_days) if free > 0 else None
    cust = Customer(
        pass_id=pid,
        shopify_customer_id=_clean(shopify_customer_id) or None,
        user_id=_clean(user_id) or None,
        email=normalized_email,
        credits=free,
        expires_at=expires_at,
        preferences={},
        last_active=now,
    )
    db.add(cust)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently by another request
        db.rollback()
        return db.query(Customer).filter(Customer.pass_id == pid).one()

    if free > 0:
        insert_or_get_transaction(
            db,
            CreditTransaction(
                pass_id=pid,
                delta=free,
                reason="free_signup",
                source="system",
                ref_type="free_signup",
                ref_id=pid,
                status="succeeded",
                event_metadata={"credits_before": 0, "credits_after": free, "expires_at": _iso(expires_at)},
                event_at=now,
            ),
        )
    db.refresh(cust)
    logger.info("credits.customer_created pass_id=%s free_credits=%s", pid, free)
    return cust


def get_balance(db: Session, pass_id: str) -> dict[str, Any]:
    pid = _clean(pass_id)
    if not pid:
        raise ValidationError("PASS_ID_REQUIRED")
    cust = db.query(Customer).filter(Customer.pass_id == pid).first()
    if cust is None:
        return {"credits": 0, "expires_at": None}
    return {"credits": int(cust.credits or 0), "expires_at": _as_utc(cust.expires_at)}


def has_entry(db: Session, ref_type: str | None, ref_id: str | None) -> bool:
    return _find_entry(db, ref_type, ref_id) is not None


def has_applied_entry(db: Session, ref_type: str | None, ref_id: str | None) -> bool:
    """True only when the ref pair's ledger row actually moved the balance."""
    return _find_entry(db, ref_type, ref_id) == "succeeded"


def _find_entry(db: Session, ref_type: str | None, ref_id: str | None) -> str | None:
    rt = _clean(ref_type)
    rid = _clean(ref_id)
    if not rt or not rid:
        return None
    row = (
        db.query(CreditTransaction.status)
        .filter(CreditTransaction.ref_type == rt, CreditTransaction.ref_id == rid)
        .first()
    )
    return None if row is None else (row[0] or "")


def insert_or_get_transaction(db: Session, tx: CreditTransaction) -> tuple[CreditTransaction, bool]:
    """Insert a ledger row, or return the row already holding its (ref_type, ref_id).

    The second element is True when this call inserted the row. The unique
    constraint on the ref pair decides races; the session is committed on
    success and rolled back on a collision, so callers must not have other
    pending changes.
    """
    if tx.ref_type and tx.ref_id:
        existing = (
            db.query(CreditTransaction)
            .filter(CreditTransaction.ref_type == tx.ref_type, CreditTransaction.ref_id == tx.ref_id)
            .first()
        )
        if existing is not None:
            return existing, False

    db.add(tx)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if not (tx.ref_type and tx.ref_id):
            raise
        existing = (
            db.query(CreditTransaction)
            .filter(CreditTransaction.ref_type == tx.ref_type, CreditTransaction.ref_id == tx.ref_id)
            .first()
        )
        if existing is None:
            raise
        return existing, False
    db.refresh(tx)
    return tx, True


def _apply_delta(db: Session, pass_id: str, delta: int, event_time: datetime) -> dict[str, Any]:
    cust = db.query(Customer).filter(Customer.pass_id == pass_id).one()
    before = int(cust.credits or 0)
    current_expiry = _as_utc(cust.expires_at)

    new_expiry = current_expiry
    if delta > 0:
        candidate = event_time + timedelta(days=settings.default_credits_expire_days)
        new_expiry = candidate if current_expiry is None or candidate > current_expiry else current_expiry

    summed = Customer.credits + delta
    db.query(Customer).filter(Customer.pass_id == pass_id).update(
        {
            Customer.credits: case((summed < 0, 0), else_=summed),
            Customer.expires_at: new_expiry,
        },
        synchronize_session=False,
    )
    db.commit()
    db.refresh(cust)
    after = int(cust.credits or 0)
    return {"credits_before": before, "credits_after": after, "expires_at": new_expiry}


def adjust_credits(
    db: Session,
    pass_id: str,
    delta: Any,
    *,
    reason: str = "manual",
    source: str = "api",
    ref_type: str | None = None,
    ref_id: str | None = None,
    event_time: datetime | None = None,
) -> dict[str, Any]:
    """Apply ``delta`` to a customer's balance at most once per (ref_type, ref_id).

    A pending ledger row claims the ref pair before the balance moves. When the
    pair is already taken the current balance is returned unchanged with
    ``already_applied=True``. The balance never drops below zero and expiry only
    moves forward, and only for credits being added.
    """
    pid = _clean(pass_id)
    if not pid:
        raise ValidationError("PASS_ID_REQUIRED")
    d = _coerce_delta(delta)
    event_at = _as_utc(event_time) or utcnow()

    ensure_customer(db, pid)

    rt = _clean(ref_type)
    rid = _clean(ref_id)
    has_ref = bool(rt and rid)

    if not has_ref:
        result = _apply_delta(db, pid, d, event_at)
        insert_or_get_transaction(
            db,
            CreditTransaction(
                pass_id=pid,
                delta=d,
                reason=reason,
                source=source,
                status="succeeded",
                event_metadata={
                    "credits_before": result["credits_before"],
                    "credits_after": result["credits_after"],
                    "expires_at": _iso(result["expires_at"]),
                },
                event_at=event_at,
            ),
        )
        logger.info(
            "credits.adjusted pass_id=%s delta=%s before=%s after=%s ref=-",
            pid,
            d,
            result["credits_before"],
            result["credits_after"],
        )
        return {**result, "already_applied": False}

    claim, created = insert_or_get_transaction(
        db,
        CreditTransaction(
            pass_id=pid,
            delta=d,
            reason=reason,
            source=source,
            ref_type=rt,
            ref_id=rid,
            status="pending",
            event_metadata={},
            event_at=event_at,
        ),
    )
    if not created:
        bal = get_balance(db, pid)
        logger.info("credits.already_applied pass_id=%s ref_type=%s ref_id=%s", pid, rt, rid)
        return {
            "credits_before": bal["credits"],
            "credits_after": bal["credits"],
            "expires_at": bal["expires_at"],
            "already_applied": True,
        }

    try:
        result = _apply_delta(db, pid, d, event_at)
    except Exception:
        db.rollback()
        try:
            claim.status = "error"
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("credits.mark_error_failed ref_type=%s ref_id=%s", rt, rid)
        raise

    claim.status = "succeeded"
    claim.event_metadata = {
        "credits_before": result["credits_before"],
        "credits_after": result["credits_after"],
        "expires_at": _iso(result["expires_at"]),
    }
    db.commit()
    logger.info(
        "credits.adjusted pass_id=%s delta=%s before=%s after=%s ref=%s:%s",
        pid,
        d,
        result["credits_before"],
        result["credits_after"],
        rt,
        rid,
    )
    return {**result, "already_applied": False}


def read_preferences(db: Session, pass_id: str) -> dict[str, Any]:
    cust = db.query(Customer).filter(Customer.pass_id == _clean(pass_id)).first()
    prefs = cust.preferences if cust is not None else None
    return dict(prefs) if isinstance(prefs, dict) else {}


def write_preferences(db: Session, pass_id: str, prefs: dict[str, Any]) -> None:
    cust = db.query(Customer).filter(Customer.pass_id == _clean(pass_id)).first()
    if cust is None:
        return
    # fresh dict so the JSON column registers the change
    cust.preferences = dict(prefs)
    db.commit()
