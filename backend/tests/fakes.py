from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.models import credit_ledger, customer, generation, generation_step  # noqa: F401
from app.services.llm.client import LabeledImage, SynthesizedPrompt


def make_session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakePredictionClient:
    """Scripted prediction API.

    ``polls`` are returned (or raised) by successive ``get_prediction`` calls;
    once exhausted the last prediction is repeated.
    """

    def __init__(
        self,
        polls: list[Any] | None = None,
        *,
        created: dict[str, Any] | None = None,
        create_errors: list[Exception] | None = None,
    ) -> None:
        self.created = created or {"id": "pred-1", "status": "starting"}
        self.polls = list(polls or [])
        self.create_errors = list(create_errors or [])
        self.created_inputs: list[dict[str, Any]] = []
        self.versions: list[str] = []
        self.cancelled: list[str] = []
        self.gets = 0
        self.last = dict(self.created)
        self.closed = False

    async def create_prediction(self, version: str, input: dict[str, Any]) -> dict[str, Any]:
        self.versions.append(version)
        self.created_inputs.append(dict(input))
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.last = dict(self.created)
        return dict(self.created)

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        self.gets += 1
        if not self.polls:
            return dict(self.last)
        item = self.polls.pop(0)
        if isinstance(item, Exception):
            raise item
        self.last = dict(item)
        return dict(item)

    async def cancel_prediction(self, prediction_id: str) -> dict[str, Any]:
        self.cancelled.append(prediction_id)
        return {"id": prediction_id, "status": "canceled"}

    async def aclose(self) -> None:
        self.closed = True


class FakeSynthesizer:
    """Stands in for the LLM-backed prompt synthesizer."""

    def __init__(self, prompt: str = "a glossy still life of the product", *, error: Exception | None = None) -> None:
        self.prompt = prompt
        self.error = error
        self.calls: list[tuple[str, dict[str, Any], list[LabeledImage]]] = []
        self.closed = False

    async def _answer(self, task: str, payload: dict[str, Any], images: list[LabeledImage]) -> SynthesizedPrompt:
        self.calls.append((task, payload, list(images)))
        if self.error is not None:
            raise self.error
        return SynthesizedPrompt(
            prompt=self.prompt,
            raw=f'{{"prompt": "{self.prompt}"}}',
            request={"model": "fake"},
            parsed_ok=True,
            system=f"system:{task}",
        )

    async def still_create(self, payload, images):
        return await self._answer("still_create", payload, images)

    async def still_tweak(self, payload, images):
        return await self._answer("still_tweak", payload, images)

    async def motion_animate(self, payload, images):
        return await self._answer("motion_animate", payload, images)

    async def motion_tweak(self, payload, images):
        return await self._answer("motion_tweak", payload, images)

    async def aclose(self) -> None:
        self.closed = True
