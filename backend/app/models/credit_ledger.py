from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from app.core.database import Base


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (UniqueConstraint("ref_type", "ref_id", name="uq_credit_transactions_ref"),)

    id = Column(Integer, primary_key=True, index=True)
    pass_id = Column(String, index=True, nullable=False)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    source = Column(String, index=True, nullable=True)
    # both null for unkeyed adjustments; unique constraints ignore NULLs
    ref_type = Column(String, nullable=True)
    ref_id = Column(String, nullable=True)
    status = Column(String, index=True, nullable=False, default="succeeded")
    event_metadata = Column("metadata", JSON, nullable=True)
    event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
