# app/services/task_service.py
"""
Task lifecycle: create a pending task, process it in the background, and read
it back.

A task is written as ``pending`` before ``create_task`` returns. Its background
unit then runs fetch -> render -> commit on the event loop and ends in exactly
one terminal write: ``completed`` together with its image rows, or ``failed``
with the error message. Nothing is retried.
"""
import asyncio
import logging
import random
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

from app.core.errors import NotFoundError, StorageError, ValidationError
from app.models.task import Task, TaskStatus
from app.monitoring.metrics import task_duration, tasks_in_flight, tasks_total, variants_written
from app.schemas.task import ImageResponse, TaskResponse
from app.services.fetch_service import ContentFetcher
from app.services.image_service import VariantRenderer
from app.services.task_store import TaskStore

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits

# Metrics label for results thrown away because the task was already terminal
DISCARDED = "discarded"


def generate_task_id() -> str:
	"""task_<YYYYMMDDHHMMSS>_<6 random base36 chars>"""
	stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
	suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
	return f"task_{stamp}_{suffix}"


def generate_price(low: float, high: float) -> float:
	price = round(random.uniform(low, high), 2)
	return min(max(price, low), high)


def _as_source(value: Optional[str]) -> Optional[str]:
	if value is None or not value.strip():
		return None
	return value


def to_task_response(task: Task, images=None) -> TaskResponse:
	"""Project a task row; images are only attached to completed tasks"""
	return TaskResponse(
		task_id=task.id,
		status=task.status,
		price=task.price,
		original_path=task.original_path,
		error=task.error,
		created_at=task.created_at,
		updated_at=task.updated_at,
		completed_at=task.completed_at,
		images=[ImageResponse.model_validate(i) for i in images]
		if task.status == TaskStatus.COMPLETED and images is not None else None,
	)


class TaskQueryService:
	"""Read side: never writes, safe to call while processing is in flight"""

	def __init__(self, store: TaskStore, resolution_order: Sequence[str] = ()):
		self.store = store
		self.resolution_order = list(resolution_order)

	async def get_task(self, task_id: str) -> TaskResponse:
		task = await self.store.get(task_id)
		if task is None:
			raise NotFoundError("Task", task_id)

		if task.status != TaskStatus.COMPLETED:
			return to_task_response(task)

		images = await self.store.list_images(task_id)
		return to_task_response(task, sorted(images, key=self._rank))

	def _rank(self, image) -> int:
		try:
			return self.resolution_order.index(image.resolution)
		except ValueError:
			return len(self.resolution_order)


class TaskOrchestrator:
	def __init__(
		self,
		store: TaskStore,
		fetcher: ContentFetcher,
		renderer: VariantRenderer,
		query: TaskQueryService,
		price_range=(5, 50),
		processing_timeout: Optional[float] = None,
	):
		self.store = store
		self.fetcher = fetcher
		self.renderer = renderer
		self.query = query
		self.price_min, self.price_max = price_range
		self.processing_timeout = processing_timeout
		# One handle per background unit, dropped when it finishes
		self._jobs: Dict[str, asyncio.Task] = {}

	@property
	def in_flight(self) -> int:
		return len(self._jobs)

	async def create_task(self, image_url: Optional[str] = None, image_file: Optional[str] = None) -> TaskResponse:
		"""Persist a pending task and schedule its processing without waiting for it"""
		image_url = _as_source(image_url)
		image_file = _as_source(image_file)
		if image_url is None and image_file is None:
			raise ValidationError("Either imageUrl or imageFile must be provided")
		if image_url is not None and image_file is not None:
			raise ValidationError("Either imageUrl or imageFile must be provided, but not both")

		task_id = generate_task_id()
		price = generate_price(self.price_min, self.price_max)
		task = await self.store.create(task_id, price)
		tasks_total.labels(status=TaskStatus.PENDING.value).inc()
		logger.info(f"Task {task_id} created (price={price}, source={'url' if image_url else 'inline'})")

		self._schedule(task_id, image_url, image_file)
		return to_task_response(task)

	async def get_task(self, task_id: str) -> TaskResponse:
		return await self.query.get_task(task_id)

	async def join(self, task_id: str) -> None:
		"""Wait for a task's background unit, if it is still running"""
		job = self._jobs.get(task_id)
		if job is not None:
			await asyncio.gather(job, return_exceptions=True)

	async def shutdown(self, grace: float = 10.0) -> None:
		"""Let in-flight units finish within `grace` seconds, then cancel the rest"""
		jobs = list(self._jobs.values())
		if not jobs:
			return
		logger.info(f"Waiting for {len(jobs)} in-flight task(s) to finish")
		_, not_done = await asyncio.wait(jobs, timeout=grace)
		for job in not_done:
			job.cancel()
		if not_done:
			logger.warning(f"Cancelled {len(not_done)} task(s) still running after {grace}s")
			await asyncio.gather(*not_done, return_exceptions=True)

	def _schedule(self, task_id: str, image_url: Optional[str], image_file: Optional[str]) -> None:
		job = asyncio.create_task(self._run(task_id, image_url, image_file), name=f"image-task:{task_id}")
		self._jobs[task_id] = job
		tasks_in_flight.inc()

		def _forget(_):
			self._jobs.pop(task_id, None)
			tasks_in_flight.dec()

		job.add_done_callback(_forget)

	async def _run(self, task_id: str, image_url: Optional[str], image_file: Optional[str]) -> None:
		"""Failure boundary: every path ends in exactly one terminal write"""
		started = time.monotonic()
		outcome = TaskStatus.FAILED.value
		try:
			processing = self._process(task_id, image_url, image_file)
			if self.processing_timeout:
				completed = await asyncio.wait_for(processing, timeout=self.processing_timeout)
			else:
				completed = await processing
			outcome = TaskStatus.COMPLETED.value if completed else DISCARDED
		except asyncio.TimeoutError:
			logger.error(f"Task {task_id} timed out after {self.processing_timeout}s")
			await self._fail(task_id, f"Processing timed out after {self.processing_timeout:g} seconds")
		except asyncio.CancelledError:
			logger.warning(f"Task {task_id} cancelled before completion")
			await self._fail(task_id, "Processing was interrupted before completion")
			raise
		except Exception as e:
			logger.error(f"Task {task_id} processing failed: {e}")
			await self._fail(task_id, str(e) or type(e).__name__)
		finally:
			tasks_total.labels(status=outcome).inc()
			task_duration.labels(status=outcome).observe(time.monotonic() - started)

	async def _process(self, task_id: str, image_url: Optional[str], image_file: Optional[str]) -> bool:
		fetched = await self.fetcher.fetch(image_url=image_url, image_file=image_file)
		try:
			await self.store.set_original_path(task_id, fetched.path)
			variants = await self.renderer.render_file(fetched.path, fetched.original_name)

			if not await self.store.complete(task_id, variants):
				logger.warning(f"Task {task_id} was already terminal; discarding {len(variants)} rendered images")
				return False

			for variant in variants:
				variants_written.labels(resolution=variant.resolution).inc()
			logger.info(f"Task {task_id} completed with {len(variants)} images")
			return True
		finally:
			await self.fetcher.cleanup(fetched.path)

	async def _fail(self, task_id: str, message: str) -> None:
		try:
			if not await self.store.fail(task_id, message):
				logger.warning(f"Task {task_id} already terminal; failure not recorded: {message}")
		except StorageError:
			logger.exception(f"Could not record failure for task {task_id}")
