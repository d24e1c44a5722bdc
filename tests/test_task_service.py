import asyncio
import os
import re

import httpx
import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from app.core.errors import NotFoundError, ValidationError
from app.models.image import Image
from app.models.task import Task, TaskStatus
from app.services import image_service, task_service
from app.services.task_service import TaskOrchestrator, generate_price, generate_task_id
from conftest import make_data_uri, make_image_bytes

SLOW_URL = "https://slow.example.com/photo.png"


@pytest.fixture
def hanging_remote(remote_images):
	"""Register a URL whose response never arrives"""
	never = asyncio.Event()

	async def hang(request):
		await never.wait()

	remote_images[SLOW_URL] = hang
	return SLOW_URL


def orchestrator_with(orchestrator: TaskOrchestrator, **kwargs) -> TaskOrchestrator:
	return TaskOrchestrator(
		orchestrator.store,
		orchestrator.fetcher,
		orchestrator.renderer,
		orchestrator.query,
		**kwargs,
	)


async def count_rows(store, model) -> int:
	async with store.session_factory() as db:
		return await db.scalar(select(func.count()).select_from(model))


def test_task_id_format():
	task_id = generate_task_id()
	assert re.fullmatch(r"task_\d{14}_[a-z0-9]{6}", task_id)
	assert generate_task_id() != task_id


def test_price_within_bounds():
	for _ in range(200):
		price = generate_price(5, 50)
		assert 5 <= price <= 50
		assert round(price, 2) == price


def test_price_clamped_at_edges(monkeypatch):
	monkeypatch.setattr(task_service.random, "uniform", lambda low, high: high + 0.001)
	assert generate_price(5, 50) == 50

	monkeypatch.setattr(task_service.random, "uniform", lambda low, high: low - 0.001)
	assert generate_price(5, 50) == 5


@pytest.mark.asyncio
async def test_create_task_without_source_writes_nothing(orchestrator, store):
	with pytest.raises(ValidationError):
		await orchestrator.create_task()
	with pytest.raises(ValidationError, match="not both"):
		await orchestrator.create_task(image_url="https://example.com/a.png", image_file="data:image/png;base64,AAAA")

	assert await count_rows(store, Task) == 0


@pytest.mark.asyncio
async def test_get_unknown_task(orchestrator):
	with pytest.raises(NotFoundError, match="Task with id nope not found"):
		await orchestrator.get_task("nope")


@pytest.mark.asyncio
async def test_scratch_file_removed_after_processing(orchestrator, settings, png_bytes):
	task = await orchestrator.create_task(image_file=make_data_uri(png_bytes))
	await orchestrator.join(task.task_id)

	assert (await orchestrator.get_task(task.task_id)).status == TaskStatus.COMPLETED
	assert os.listdir(settings.TMP_DIR) == []


@pytest.mark.asyncio
async def test_processing_timeout_marks_failed(orchestrator, hanging_remote):
	impatient = orchestrator_with(orchestrator, processing_timeout=0.1)

	task = await impatient.create_task(image_url=hanging_remote)
	await impatient.join(task.task_id)

	result = await impatient.get_task(task.task_id)
	assert result.status == TaskStatus.FAILED
	assert result.error == "Processing timed out after 0.1 seconds"
	assert impatient.in_flight == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_and_records_failure(orchestrator, hanging_remote):
	patient = orchestrator_with(orchestrator)

	task = await patient.create_task(image_url=hanging_remote)
	await asyncio.sleep(0)
	assert patient.in_flight == 1

	await patient.shutdown(grace=0.05)

	result = await patient.get_task(task.task_id)
	assert result.status == TaskStatus.FAILED
	assert result.error == "Processing was interrupted before completion"
	assert patient.in_flight == 0


@pytest.mark.asyncio
async def test_concurrent_tasks_are_independent(orchestrator, remote_images, png_bytes):
	remote_images["https://example.com/good.png"] = httpx.Response(
		200, content=png_bytes, headers={"content-type": "image/png"}
	)
	sources = [
		{"image_url": "https://example.com/good.png"},
		{"image_url": "https://example.com/absent.png"},
		{"image_file": make_data_uri(make_image_bytes(1500, 900, color=(10, 200, 10)))},
		{"image_file": "data:image/png;base64,bm90IGFuIGltYWdl"},
	]

	created = [await orchestrator.create_task(**source) for source in sources]
	assert len({t.task_id for t in created}) == len(sources)
	await asyncio.gather(*(orchestrator.join(t.task_id) for t in created))

	statuses = [(await orchestrator.get_task(t.task_id)).status for t in created]
	assert statuses == [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.COMPLETED, TaskStatus.FAILED]


@pytest.mark.asyncio
async def test_render_failure_leaves_no_image_rows(orchestrator, store, settings, png_bytes, monkeypatch):
	real_encode = image_service._encode_variant

	def flaky_encode(image, width, quality):
		if width == 800:
			raise RuntimeError("encoder exploded")
		return real_encode(image, width, quality)

	monkeypatch.setattr(image_service, "_encode_variant", flaky_encode)

	task = await orchestrator.create_task(image_file=make_data_uri(png_bytes))
	await orchestrator.join(task.task_id)

	result = await orchestrator.get_task(task.task_id)
	assert result.status == TaskStatus.FAILED
	assert result.error == "Failed to process image: encoder exploded"
	assert result.images is None
	assert await count_rows(store, Image) == 0

	# The 1024 file written before the failure is left in place
	written = os.listdir(os.path.join(settings.OUTPUT_DIR, "inline_image_png", "1024"))
	assert len(written) == 1


def sample(name: str, status: str) -> float:
	return REGISTRY.get_sample_value(name, {"status": status}) or 0.0


@pytest.mark.asyncio
async def test_discarded_results_not_counted_as_failed(orchestrator, png_bytes, monkeypatch):
	async def already_terminal(task_id, variants):
		return False

	monkeypatch.setattr(orchestrator.store, "complete", already_terminal)
	failed_before = sample("image_tasks_total", "failed")
	discarded_before = sample("image_tasks_total", "discarded")

	task = await orchestrator.create_task(image_file=make_data_uri(png_bytes))
	await orchestrator.join(task.task_id)

	assert sample("image_tasks_total", "failed") == failed_before
	assert sample("image_tasks_total", "discarded") == discarded_before + 1
