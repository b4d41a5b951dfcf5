"""Design (generation request) model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


DESIGN_STATUS_PROCESSING = "processing"
DESIGN_STATUS_COMPLETED = "completed"
DESIGN_STATUS_FAILED = "failed"
DESIGN_TERMINAL_STATUSES = (DESIGN_STATUS_COMPLETED, DESIGN_STATUS_FAILED)


class Design(Base):
    """One user-initiated room redesign request."""

    __tablename__ = "designs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=DESIGN_STATUS_PROCESSING, index=True)
    credits_used = Column(Integer, nullable=False)
    credit_transaction_id = Column(String, nullable=True)
    original_image_url = Column(String, nullable=False)
    original_image_key = Column(String, nullable=True)
    style = Column(String, nullable=False)
    room_type = Column(String, nullable=False)
    instructions = Column(Text, nullable=True)
    num_variations = Column(Integer, nullable=False, default=4)
    is_high_res = Column(Boolean, nullable=False, default=False)
    provider = Column(String, nullable=True)
    outcome = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="designs")
    images = relationship(
        "GeneratedImage",
        back_populates="design",
        cascade="all, delete-orphan",
        order_by="GeneratedImage.position",
    )
