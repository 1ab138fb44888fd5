from __future__ import annotations

import hashlib
from typing import Any, Mapping
from uuid import uuid4

from app.core.settings import settings

PASS_ID_HEADER = "X-Mina-Pass-Id"


def _clean(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def compute_pass_id(
    *,
    shopify_customer_id: Any = None,
    user_id: Any = None,
    email: Any = None,
    hash_email: bool | None = None,
) -> str:
    shopify = _clean(shopify_customer_id)
    if shopify and shopify.lower() != "anonymous":
        return f"pass:shopify:{shopify}"

    uid = _clean(user_id)
    if uid:
        return f"pass:user:{uid}"

    normalized = _clean(email).lower()
    if normalized:
        use_hash = settings.passid_hash_email if hash_email is None else hash_email
        if use_hash:
            digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:40]
            return f"pass:email:{digest}"
        return f"pass:email:{normalized}"

    return f"pass:anon:{uuid4()}"


def explicit_pass_id(body: Mapping[str, Any] | None, headers: Mapping[str, str] | None = None) -> str:
    body = body or {}
    for key in ("customerId", "passId", "pass_id"):
        v = _clean(body.get(key))
        if v:
            return v
    if headers is not None:
        return _clean(headers.get(PASS_ID_HEADER) or headers.get(PASS_ID_HEADER.lower()))
    return ""


def resolve_pass_id(body: Mapping[str, Any] | None, headers: Mapping[str, str] | None = None) -> str:
    """Pick the customer handle for a request.

    Explicit ids in the body win, then the pass-id header, then a handle
    derived from the customer/user/email hints (anonymous when none are given).
    """
    body = body or {}
    explicit = explicit_pass_id(body, headers)
    if explicit:
        return explicit
    return compute_pass_id(
        shopify_customer_id=body.get("customer_id"),
        user_id=body.get("user_id"),
        email=body.get("email"),
    )
