import uuid

from sqlalchemy import Column, ForeignKey, String, Integer, Uuid, Index
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.base import UTCDateTime, utcnow


class Image(Base):
	"""One resized variant of a task's source image"""
	__tablename__ = "images"

	id = Column(Uuid, primary_key=True, default=uuid.uuid4)
	task_id = Column(String(64), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
	resolution = Column(String(16), nullable=False)  # "1024", "800"
	path = Column(String(1024), nullable=False)
	md5 = Column(String(32), nullable=False, index=True)
	size_bytes = Column(Integer)
	width = Column(Integer)
	height = Column(Integer)
	created_at = Column(UTCDateTime, nullable=False, default=utcnow)

	task = relationship("Task", back_populates="images")

	__table_args__ = (
		Index("ix_images_task_id_resolution", "task_id", "resolution"),
	)
