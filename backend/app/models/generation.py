import enum

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base


class GenerationStatus(str, enum.Enum):
    QUEUED = "queued"
    PROMPTING = "prompting"
    GENERATING = "generating"
    DONE = "done"
    ERROR = "error"
    SUGGESTED = "suggested"


TERMINAL_STATUSES = frozenset({GenerationStatus.DONE, GenerationStatus.ERROR, GenerationStatus.SUGGESTED})

ALLOWED_TRANSITIONS: dict[GenerationStatus, frozenset[GenerationStatus]] = {
    GenerationStatus.QUEUED: frozenset({GenerationStatus.PROMPTING, GenerationStatus.ERROR}),
    GenerationStatus.PROMPTING: frozenset(
        {GenerationStatus.GENERATING, GenerationStatus.SUGGESTED, GenerationStatus.ERROR}
    ),
    GenerationStatus.GENERATING: frozenset({GenerationStatus.DONE, GenerationStatus.ERROR}),
    GenerationStatus.DONE: frozenset(),
    GenerationStatus.ERROR: frozenset(),
    GenerationStatus.SUGGESTED: frozenset(),
}


def can_transition(current: GenerationStatus, target: GenerationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class GenerationMode(str, enum.Enum):
    STILL = "still"
    VIDEO = "video"


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String, primary_key=True, index=True)
    parent_id = Column(String, index=True, nullable=True)
    pass_id = Column(String, index=True, nullable=False)
    mode = Column(String, nullable=False)
    status = Column(String, index=True, nullable=False, default=GenerationStatus.QUEUED.value)
    vars = Column(JSON, nullable=True)
    output_url = Column(String, nullable=True)
    prompt = Column(String, nullable=True)
    error = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    steps = relationship("GenerationStep", back_populates="generation", order_by="GenerationStep.step_no")
