"""CreditLedger model for metered generation accounting."""

import enum
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditEntryType(str, enum.Enum):
    EARNED = "earned"
    SPENT = "spent"
    PURCHASED = "purchased"
    SUBSCRIPTION_BONUS = "subscription_bonus"
    REFUNDED = "refunded"


class CreditLedger(Base):
    """Immutable credit ledger entry. Rows are only ever inserted."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "period_key", name="uq_credit_ledger_user_period"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    description = Column(String, nullable=True)
    related_id = Column(String, nullable=True, index=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    billing_provider = Column(String, nullable=True)
    billing_reference = Column(String, nullable=True)
    # Only set on monthly grants; NULLs never collide in the unique constraint.
    period_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")
