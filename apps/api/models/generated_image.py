"""Generated image model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class GeneratedImage(Base):
    """Stored output image belonging to a design."""

    __tablename__ = "generated_images"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    design_id = Column(String, ForeignKey("designs.id"), nullable=False, index=True)
    image_url = Column(String, nullable=False)
    image_key = Column(String, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    metadata_json = Column(JSON, nullable=True)
    is_favorite = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    design = relationship("Design", back_populates="images")
