from typing import List, Optional, Sequence
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StorageError
from app.models.base import utcnow
from app.models.image import Image
from app.models.task import Task, TaskStatus
from app.services.image_service import RenderedVariant

logger = logging.getLogger(__name__)


class TaskStore:
	"""
	Durable task and variant records.

	Every method opens its own short session, so the store can be shared by
	the request path and any number of background units. Terminal writes are
	guarded by ``status = 'pending'``: whichever terminal write lands first
	wins and the other is a no-op.
	"""

	def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
		self.session_factory = session_factory

	async def create(self, task_id: str, price: float) -> Task:
		now = utcnow()
		task = Task(
			id=task_id,
			status=TaskStatus.PENDING,
			price=price,
			created_at=now,
			updated_at=now,
		)
		try:
			async with self.session_factory() as db:
				db.add(task)
				await db.commit()
				await db.refresh(task)
		except SQLAlchemyError as e:
			logger.error(f"Failed to create task {task_id}: {e}")
			raise StorageError(f"Failed to create task: {e}") from e
		return task

	async def get(self, task_id: str) -> Optional[Task]:
		try:
			async with self.session_factory() as db:
				return await db.get(Task, task_id)
		except SQLAlchemyError as e:
			raise StorageError(f"Failed to load task {task_id}: {e}") from e

	async def list_images(self, task_id: str) -> List[Image]:
		try:
			async with self.session_factory() as db:
				result = await db.execute(
					select(Image).where(Image.task_id == task_id).order_by(Image.created_at, Image.id)
				)
				return list(result.scalars().all())
		except SQLAlchemyError as e:
			raise StorageError(f"Failed to load images for task {task_id}: {e}") from e

	async def set_original_path(self, task_id: str, original_path: str) -> None:
		try:
			async with self.session_factory() as db:
				await db.execute(
					update(Task)
					.where(Task.id == task_id, Task.status == TaskStatus.PENDING)
					.values(original_path=original_path, updated_at=utcnow())
				)
				await db.commit()
		except SQLAlchemyError as e:
			raise StorageError(f"Failed to update task {task_id}: {e}") from e

	async def complete(self, task_id: str, variants: Sequence[RenderedVariant]) -> bool:
		"""
		Insert the variant rows and flip the task to completed in one transaction.

		Returns False (and writes nothing) if the task is no longer pending.
		"""
		now = utcnow()
		try:
			async with self.session_factory() as db:
				result = await db.execute(
					update(Task)
					.where(Task.id == task_id, Task.status == TaskStatus.PENDING)
					.values(status=TaskStatus.COMPLETED, completed_at=now, updated_at=now, error=None)
				)
				if result.rowcount != 1:
					await db.rollback()
					return False

				db.add_all([
					Image(
						task_id=task_id,
						resolution=v.resolution,
						path=v.path,
						md5=v.md5,
						size_bytes=v.size,
						width=v.width,
						height=v.height,
						created_at=now,
					)
					for v in variants
				])
				await db.commit()
				return True
		except SQLAlchemyError as e:
			logger.error(f"Failed to commit results for task {task_id}: {e}")
			raise StorageError(f"Failed to save processed images: {e}") from e

	async def fail(self, task_id: str, error: str) -> bool:
		"""Record a terminal failure. Returns False if the task was already terminal."""
		now = utcnow()
		try:
			async with self.session_factory() as db:
				result = await db.execute(
					update(Task)
					.where(Task.id == task_id, Task.status == TaskStatus.PENDING)
					.values(status=TaskStatus.FAILED, error=error, completed_at=now, updated_at=now)
				)
				await db.commit()
				return result.rowcount == 1
		except SQLAlchemyError as e:
			raise StorageError(f"Failed to mark task {task_id} as failed: {e}") from e
