from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base


class GenerationStep(Base):
    __tablename__ = "generation_steps"
    __table_args__ = (UniqueConstraint("generation_id", "step_no", name="uq_generation_steps_no"),)

    id = Column(Integer, primary_key=True, index=True)
    generation_id = Column(String, ForeignKey("generations.id"), index=True, nullable=False)
    pass_id = Column(String, index=True, nullable=True)
    step_no = Column(Integer, nullable=False)
    step_type = Column(String, index=True, nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    generation = relationship("Generation", back_populates="steps")
