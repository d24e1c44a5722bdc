import base64
import io
from typing import AsyncGenerator, Dict

import httpx
import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image as PILImage

from app.config import Settings
from app.main import create_app, init_state, close_state
from app.services.task_service import TaskOrchestrator
from app.services.task_store import TaskStore


def make_image_bytes(width: int = 2000, height: int = 1000, fmt: str = "PNG", color=(200, 40, 40)) -> bytes:
	"""Render a solid test image in memory"""
	image = PILImage.new("RGB", (width, height), color)
	buffer = io.BytesIO()
	image.save(buffer, fmt)
	return buffer.getvalue()


def make_data_uri(content: bytes, mime: str = "image/png") -> str:
	return f"data:{mime};base64,{base64.b64encode(content).decode()}"


@pytest.fixture
def settings(tmp_path) -> Settings:
	"""Settings pointing every path at a throwaway directory"""
	return Settings(
		DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
		OUTPUT_DIR=str(tmp_path / "output"),
		TMP_DIR=str(tmp_path / "temp"),
		PROCESSING_TIMEOUT_SECONDS=30,
		SHUTDOWN_GRACE_SECONDS=1,
	)


@pytest.fixture
def remote_images() -> Dict[str, object]:
	"""URL -> httpx.Response (or exception, or async callable) served by the mock transport"""
	return {}


@pytest.fixture
def http_client(remote_images) -> httpx.AsyncClient:
	async def handler(request: httpx.Request) -> httpx.Response:
		entry = remote_images.get(str(request.url))
		if entry is None:
			return httpx.Response(404)
		if isinstance(entry, Exception):
			raise entry
		if callable(entry):
			return await entry(request)
		return entry

	return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
async def app(settings, http_client):
	"""Application with its services built against the test settings"""
	application = create_app(settings)
	await init_state(application, settings, http_client=http_client)
	yield application
	await close_state(application)


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
	"""Create a test client"""
	async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
		yield client


@pytest.fixture
def orchestrator(app) -> TaskOrchestrator:
	return app.state.orchestrator


@pytest.fixture
def store(app) -> TaskStore:
	return app.state.store


@pytest.fixture
def png_bytes() -> bytes:
	return make_image_bytes()
