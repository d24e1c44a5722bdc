# =====================================
# app/models/task.py
# =====================================
from sqlalchemy import Column, String, Float, Text, Enum as SQLEnum, Index
from sqlalchemy.orm import relationship
from app.database import Base
from app.models.base import BaseModel, UTCDateTime
import enum


class TaskStatus(str, enum.Enum):
	PENDING = "pending"
	COMPLETED = "completed"
	FAILED = "failed"


class Task(Base, BaseModel):
	__tablename__ = "tasks"

	id = Column(String(64), primary_key=True)  # task_<timestamp>_<random>
	status = Column(
		SQLEnum(TaskStatus, name="task_status", values_callable=lambda e: [m.value for m in e]),
		nullable=False,
		default=TaskStatus.PENDING,
		index=True,
	)
	price = Column(Float, nullable=False)
	original_path = Column(String(1024))  # scratch copy of the fetched source
	error = Column(Text)
	completed_at = Column(UTCDateTime)

	images = relationship(
		"Image",
		back_populates="task",
		cascade="all, delete-orphan",
		passive_deletes=True,
	)

	__table_args__ = (
		Index("ix_tasks_status_created_at", "status", "created_at"),
	)
