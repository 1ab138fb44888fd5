from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from app.core.database import Base


class Customer(Base):
    __tablename__ = "customers"

    pass_id = Column(String, primary_key=True, index=True)
    shopify_customer_id = Column(String, index=True, nullable=True)
    user_id = Column(String, index=True, nullable=True)
    email = Column(String, index=True, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    preferences = Column(JSON, nullable=True)
    last_active = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
