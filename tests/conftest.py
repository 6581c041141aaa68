import io
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from design_pipeline.main import create_app
from design_pipeline.core.config import Settings
from design_pipeline.core.storage import LocalStorage
from design_pipeline.modules.designs.models import DesignJob
from design_pipeline.modules.designs.store import InMemoryJobStore
from design_pipeline.pipeline.clients import GenerationResult, IGenerativeImageClient, IPostProcessingClient
from design_pipeline.pipeline.orchestrator import PipelineOrchestrator
from design_pipeline.pipeline.runner import PipelineRunner


def _png(size=(8, 8), color=(255, 0, 0, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def png_factory():
    return _png


@pytest.fixture
def reference_png() -> bytes:
    return _png(color=(0, 0, 255, 255))


@pytest.fixture
def generated_png() -> bytes:
    return _png(color=(255, 0, 0, 255))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        GEMINI_API_KEY="test-gemini-key",
        PICSART_API_KEY="test-picsart-key",
        ENABLE_BG_REMOVAL=True,
        MAX_IMAGE_SIZE_BYTES=64 * 1024,
        MAX_BATCH_SIZE=3,
        GENERATION_TIMEOUT_SECONDS=2.0,
        POST_PROCESSING_TIMEOUT_SECONDS=2.0,
        PIPELINE_TIMEOUT_SECONDS=5.0,
        LOG_FORMAT_JSON=False
    )


@pytest.fixture
def storage(settings) -> LocalStorage:
    return LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def generation_client(generated_png):
    client = AsyncMock(spec=IGenerativeImageClient)
    client.generate.return_value = GenerationResult(images=[generated_png], candidate_count=1)
    return client


@pytest.fixture
def post_processing_client():
    client = AsyncMock(spec=IPostProcessingClient)
    client.remove_background.return_value = _png(color=(0, 255, 0, 0))
    client.upscale.return_value = _png(size=(16, 16))
    return client


@pytest.fixture
def orchestrator(job_store, storage, generation_client, post_processing_client) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        store=job_store,
        storage=storage,
        generation_client=generation_client,
        post_processing_client=post_processing_client,
        upscale_factor=2,
        generation_timeout=2.0,
        post_processing_timeout=2.0
    )


@pytest.fixture
def runner(orchestrator) -> PipelineRunner:
    return PipelineRunner(orchestrator, timeout=5.0)


@pytest.fixture
def make_job(job_store, storage, reference_png):
    """Create a queued job whose input image is already stored."""

    async def _make_job(**overrides) -> DesignJob:
        input_key = await storage.upload(reference_png, "shirt.png", folder="jobs/test")
        fields = {
            "original_filename": "shirt.png",
            "input_storage_key": input_key,
            "input_mime_type": "image/png",
            "remove_background": True,
        }
        fields.update(overrides)
        job = DesignJob(**fields)
        await job_store.create(job)
        return job

    return _make_job


@pytest.fixture
def app(settings, job_store, storage, generation_client, post_processing_client):
    return create_app(
        settings=settings,
        job_store=job_store,
        storage=storage,
        generation_client=generation_client,
        post_processing_client=post_processing_client
    )


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    # Run startup/shutdown so app.state is populated
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
