from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.models.image import Image
from app.models.task import TaskStatus
from app.services.image_service import RenderedVariant


def variant(resolution: str, md5: str) -> RenderedVariant:
	return RenderedVariant(
		resolution=resolution,
		path=f"/output/photo_jpg/{resolution}/{md5}.jpg",
		md5=md5,
		size=1234,
		width=int(resolution),
		height=int(resolution) // 2,
	)


VARIANTS = [variant("1024", "a" * 32), variant("800", "b" * 32)]


async def count_images(store, task_id: str) -> int:
	async with store.session_factory() as db:
		return await db.scalar(select(func.count()).select_from(Image).where(Image.task_id == task_id))


@pytest.mark.asyncio
async def test_create_and_get(store):
	created = await store.create("task_1", 12.5)
	assert created.status == TaskStatus.PENDING

	loaded = await store.get("task_1")
	assert loaded.id == "task_1"
	assert loaded.price == 12.5
	assert loaded.status == TaskStatus.PENDING
	assert loaded.completed_at is None
	assert await store.get("task_missing") is None


@pytest.mark.asyncio
async def test_complete_writes_images_and_flips_status(store):
	await store.create("task_1", 10.0)
	await store.set_original_path("task_1", "/tmp/photo_1.png")

	assert await store.complete("task_1", VARIANTS) is True

	task = await store.get("task_1")
	assert task.status == TaskStatus.COMPLETED
	assert task.completed_at is not None
	assert task.original_path == "/tmp/photo_1.png"

	images = await store.list_images("task_1")
	assert sorted(i.resolution for i in images) == ["1024", "800"]
	assert {i.md5 for i in images} == {"a" * 32, "b" * 32}


@pytest.mark.asyncio
async def test_fail_after_complete_is_noop(store):
	await store.create("task_1", 10.0)
	await store.complete("task_1", VARIANTS)

	assert await store.fail("task_1", "too late") is False

	task = await store.get("task_1")
	assert task.status == TaskStatus.COMPLETED
	assert task.error is None


@pytest.mark.asyncio
async def test_complete_after_fail_writes_nothing(store):
	await store.create("task_1", 10.0)
	assert await store.fail("task_1", "fetch failed") is True

	assert await store.complete("task_1", VARIANTS) is False

	task = await store.get("task_1")
	assert task.status == TaskStatus.FAILED
	assert task.error == "fetch failed"
	assert await count_images(store, "task_1") == 0


@pytest.mark.asyncio
async def test_original_path_frozen_once_terminal(store):
	await store.create("task_1", 10.0)
	await store.fail("task_1", "boom")
	await store.set_original_path("task_1", "/tmp/late.png")

	assert (await store.get("task_1")).original_path is None


@pytest.mark.asyncio
async def test_timestamps_load_as_utc(store):
	await store.create("task_1", 10.0)
	await store.complete("task_1", VARIANTS)

	task = await store.get("task_1")
	for value in (task.created_at, task.updated_at, task.completed_at):
		assert value.utcoffset() == timedelta(0)
	for image in await store.list_images("task_1"):
		assert image.created_at.utcoffset() == timedelta(0)
