import secrets

from fastapi import HTTPException, Request

from app.core.settings import settings

ADMIN_KEY_HEADER = "X-Admin-Key"


def require_admin_key(request: Request) -> None:
    expected = settings.admin_api_key
    if not expected:
        return

    provided = (request.headers.get(ADMIN_KEY_HEADER) or "").strip()
    if not provided:
        raise HTTPException(status_code=401, detail="Admin key required")

    if not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=403, detail="Invalid admin key")
