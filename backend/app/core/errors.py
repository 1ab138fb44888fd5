from __future__ import annotations

from typing import Any


class MMAError(RuntimeError):
    """Error carrying a symbolic code plus structured context.

    The API layer serializes these as ``{"error": code, "message": ..., **context}``
    with ``status_code`` as the HTTP status.
    """

    status_code = 500

    def __init__(self, code: str, message: str | None = None, *, status_code: int | None = None, **context: Any) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        if status_code is not None:
            self.status_code = status_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        out.update(self.context)
        return out


class ValidationError(MMAError):
    status_code = 400


class InsufficientCreditsError(MMAError):
    status_code = 402

    def __init__(self, *, pass_id: str, balance: int, needed: int, details: dict[str, Any]) -> None:
        super().__init__(
            "INSUFFICIENT_CREDITS",
            details.get("userMessage") or "INSUFFICIENT_CREDITS",
            pass_id=pass_id,
            balance=balance,
            needed=needed,
            details=details,
        )
        self.pass_id = pass_id
        self.balance = balance
        self.needed = needed
        self.details = details


class ForbiddenError(MMAError):
    status_code = 403


class NotFoundError(MMAError):
    status_code = 404


class FeatureDisabledError(MMAError):
    status_code = 503

    def __init__(self, message: str | None = None) -> None:
        super().__init__("MMA_DISABLED", message or "generation is disabled")


class PipelineError(MMAError):
    """Raised inside a running pipeline; recorded on the job, never returned to a caller."""
