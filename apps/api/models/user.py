"""User model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Account holding purchased and admin-granted credit balances."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("purchased_credits >= 0", name="ck_users_purchased_credits_non_negative"),
        CheckConstraint("admin_credits >= 0", name="ck_users_admin_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    picture = Column(String, nullable=True)
    purchased_credits = Column(Integer, nullable=False, default=0, server_default="0")
    admin_credits = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="user", cascade="all, delete-orphan")
    generation_jobs = relationship("GenerationJob", back_populates="owner")
