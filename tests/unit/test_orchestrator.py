import asyncio

import httpx
import pytest

from design_pipeline.core.exceptions import (
    GenerationError,
    PostProcessingError,
    JobNotFoundError,
    JobStateConflictError,
    InvalidStatusTransitionError
)
from design_pipeline.modules.designs.models import JobStatus
from design_pipeline.modules.designs.store import InMemoryJobStore
from design_pipeline.pipeline.clients import GenerationResult, PicsartClient
from design_pipeline.pipeline.orchestrator import PipelineOrchestrator
from design_pipeline.pipeline.runner import PipelineRunner


class RecordingJobStore(InMemoryJobStore):
    """Remembers every distinct status a job passed through."""

    def __init__(self):
        super().__init__()
        self.statuses = []
        self.snapshots = []

    async def update(self, job_id, **fields):
        job = await super().update(job_id, **fields)
        self.snapshots.append(job)
        if not self.statuses or self.statuses[-1] != job.status:
            self.statuses.append(job.status)
        return job


def _removebg_failure():
    return PostProcessingError("Background removal failed (HTTP 500): boom", operation="background_removal")


def _upscale_failure():
    return PostProcessingError("Image upscaling failed: Request timed out", operation="upscale")


@pytest.mark.asyncio
async def test_all_stages_succeed(runner, make_job, storage, post_processing_client):
    # Arrange
    job = await make_job(remove_background=True)

    # Act
    result = await runner.run(job.id)

    # Assert
    assert result.status == JobStatus.COMPLETE
    assert result.pipeline_errors == []
    assert result.error_message is None
    assert result.final_storage_key == result.upscaled_storage_key
    assert result.generated_storage_key is not None
    assert result.completed_at is not None

    # upscaling ran on the background-removed image
    removed = post_processing_client.remove_background.return_value
    post_processing_client.upscale.assert_awaited_once_with(removed, 2)


@pytest.mark.asyncio
async def test_background_removed_intermediate_is_deleted_after_upscale(
    storage, generation_client, post_processing_client, make_job
):
    store = RecordingJobStore()
    orchestrator = PipelineOrchestrator(store, storage, generation_client, post_processing_client)
    job = await make_job(remove_background=True)
    await store.create(job)

    result = await orchestrator.run(job.id)

    intermediate_keys = {s.background_removed_storage_key for s in store.snapshots} - {None}
    assert len(intermediate_keys) == 1
    assert not await storage.exists(intermediate_keys.pop())
    assert result.background_removed_storage_key is None
    assert await storage.exists(result.upscaled_storage_key)
    assert await storage.exists(result.generated_storage_key)


@pytest.mark.asyncio
async def test_status_sequence_is_monotonic(storage, generation_client, post_processing_client, make_job):
    store = RecordingJobStore()
    orchestrator = PipelineOrchestrator(store, storage, generation_client, post_processing_client)
    runner = PipelineRunner(orchestrator, timeout=5.0)
    job = await make_job(remove_background=True)
    await store.create(job)

    await runner.run(job.id)

    assert store.statuses == [
        JobStatus.GENERATING,
        JobStatus.GENERATED,
        JobStatus.REMOVING_BACKGROUND,
        JobStatus.UPSCALING,
        JobStatus.COMPLETE,
    ]


@pytest.mark.asyncio
async def test_background_removal_disabled_skips_stage(storage, generation_client, post_processing_client, make_job):
    store = RecordingJobStore()
    orchestrator = PipelineOrchestrator(store, storage, generation_client, post_processing_client)
    job = await make_job(remove_background=False)
    await store.create(job)

    result = await PipelineRunner(orchestrator).run(job.id)

    assert result.status == JobStatus.COMPLETE
    assert result.pipeline_errors == []
    assert JobStatus.REMOVING_BACKGROUND not in store.statuses
    post_processing_client.remove_background.assert_not_awaited()

    generated = await storage.read(result.generated_storage_key)
    post_processing_client.upscale.assert_awaited_once_with(generated, 2)


@pytest.mark.asyncio
async def test_background_removal_failure_falls_back_to_generated(runner, make_job, storage, post_processing_client):
    # Arrange
    post_processing_client.remove_background.side_effect = _removebg_failure()
    job = await make_job(remove_background=True)

    # Act
    result = await runner.run(job.id)

    # Assert
    assert result.status == JobStatus.PARTIAL_SUCCESS
    assert len(result.pipeline_errors) == 1
    assert result.pipeline_errors[0].stage == "Background removal"
    assert "HTTP 500" in result.pipeline_errors[0].message
    assert result.background_removed_storage_key is None
    assert result.final_storage_key == result.upscaled_storage_key

    generated = await storage.read(result.generated_storage_key)
    post_processing_client.upscale.assert_awaited_once_with(generated, 2)


@pytest.mark.asyncio
async def test_upscale_failure_keeps_background_removed_output(runner, make_job, storage, post_processing_client):
    post_processing_client.upscale.side_effect = _upscale_failure()
    job = await make_job(remove_background=True)

    result = await runner.run(job.id)

    assert result.status == JobStatus.PARTIAL_SUCCESS
    assert [e.stage for e in result.pipeline_errors] == ["Upscaling"]
    assert result.upscaled_storage_key is None
    assert result.final_storage_key == result.background_removed_storage_key
    assert await storage.read(result.final_storage_key) == post_processing_client.remove_background.return_value


@pytest.mark.asyncio
async def test_both_enhancements_fail(runner, make_job, post_processing_client):
    post_processing_client.remove_background.side_effect = _removebg_failure()
    post_processing_client.upscale.side_effect = _upscale_failure()
    job = await make_job(remove_background=True)

    result = await runner.run(job.id)

    assert result.status == JobStatus.FALLBACK_ONLY
    assert [e.stage for e in result.pipeline_errors] == ["Background removal", "Upscaling"]
    assert result.final_storage_key == result.generated_storage_key
    assert result.error_message is None


@pytest.mark.asyncio
async def test_upscale_failure_without_background_removal(runner, make_job, post_processing_client):
    post_processing_client.upscale.side_effect = _upscale_failure()
    job = await make_job(remove_background=False)

    result = await runner.run(job.id)

    assert result.status == JobStatus.PARTIAL_SUCCESS
    assert result.final_storage_key == result.generated_storage_key


@pytest.mark.asyncio
async def test_post_processing_not_configured(job_store, storage, generation_client, make_job):
    orchestrator = PipelineOrchestrator(job_store, storage, generation_client, post_processing_client=None)
    job = await make_job(remove_background=True)

    result = await PipelineRunner(orchestrator).run(job.id)

    assert result.status == JobStatus.COMPLETE
    assert result.pipeline_errors == []
    assert result.final_storage_key == result.generated_storage_key


@pytest.mark.asyncio
async def test_unexpected_enhancement_exception_is_recoverable(runner, make_job, post_processing_client):
    # Arrange
    post_processing_client.remove_background.side_effect = ValueError("unexpected shape")
    job = await make_job(remove_background=True)

    # Act
    result = await runner.run(job.id)

    # Assert
    assert result.status == JobStatus.PARTIAL_SUCCESS
    assert result.error_message is None
    assert result.pipeline_errors[0].stage == "Background removal"
    assert result.pipeline_errors[0].message == "Background removal failed: unexpected shape"
    assert result.final_storage_key == result.upscaled_storage_key


@pytest.mark.asyncio
async def test_malformed_picsart_payload_falls_back(job_store, storage, generation_client, make_job):
    def handler(request):
        return httpx.Response(200, json={"data": {"url": 123}})

    picsart = PicsartClient(
        api_key="picsart-key",
        base_url="https://picsart.test/tools/1.0",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    orchestrator = PipelineOrchestrator(job_store, storage, generation_client, picsart)
    job = await make_job(remove_background=True)

    result = await PipelineRunner(orchestrator).run(job.id)

    assert result.status == JobStatus.FALLBACK_ONLY
    assert [e.stage for e in result.pipeline_errors] == ["Background removal", "Upscaling"]
    assert all("Unexpected response format" in e.message for e in result.pipeline_errors)
    assert result.final_storage_key == result.generated_storage_key


@pytest.mark.asyncio
async def test_storage_failure_after_enhancement_is_fatal(runner, make_job, storage, monkeypatch):
    original_upload = storage.upload

    async def failing_upload(file_data, filename, folder="uploads", content_type="image/png"):
        if "background_removal" in filename:
            raise OSError("disk full")
        return await original_upload(file_data, filename, folder=folder, content_type=content_type)

    monkeypatch.setattr(storage, "upload", failing_upload)
    job = await make_job(remove_background=True)

    result = await runner.run(job.id)

    assert result.status == JobStatus.ERROR
    assert result.error_message == "Image processing failed: disk full"
    assert result.pipeline_errors == []


@pytest.mark.asyncio
async def test_optional_stage_timeout_is_recoverable(job_store, storage, generation_client, post_processing_client, make_job):
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    post_processing_client.upscale.side_effect = hang
    orchestrator = PipelineOrchestrator(
        job_store,
        storage,
        generation_client,
        post_processing_client,
        post_processing_timeout=0.05
    )
    job = await make_job(remove_background=True)

    result = await PipelineRunner(orchestrator).run(job.id)

    assert result.status == JobStatus.PARTIAL_SUCCESS
    assert result.pipeline_errors[0].message == "Upscaling timed out after 0.05 seconds"
    assert result.final_storage_key == result.background_removed_storage_key


# =============================================================================
# Fatal failures
# =============================================================================

@pytest.mark.asyncio
async def test_generation_refusal_ends_in_error(runner, make_job, generation_client, post_processing_client):
    # Arrange
    generation_client.generate.return_value = GenerationResult(
        text="I can't help with that request.",
        candidate_count=1
    )
    job = await make_job()

    # Act
    result = await runner.run(job.id)

    # Assert
    assert result.status == JobStatus.ERROR
    assert result.error_message == "Image generation failed. Model response: I can't help with that request."
    assert result.final_storage_key is None
    assert result.generated_storage_key is None
    assert not result.status.has_final_output
    post_processing_client.remove_background.assert_not_awaited()
    post_processing_client.upscale.assert_not_awaited()


@pytest.mark.asyncio
async def test_refusal_text_is_truncated(job_store, storage, generation_client, make_job):
    generation_client.generate.return_value = GenerationResult(text="x" * 500, candidate_count=1)
    orchestrator = PipelineOrchestrator(job_store, storage, generation_client, refusal_text_limit=200)
    job = await make_job()

    result = await PipelineRunner(orchestrator).run(job.id)

    assert result.error_message.endswith("x" * 200 + "...")
    assert "x" * 201 not in result.error_message


@pytest.mark.asyncio
async def test_no_candidates_ends_in_error(runner, make_job, generation_client):
    generation_client.generate.return_value = GenerationResult(candidate_count=0)
    job = await make_job()

    result = await runner.run(job.id)

    assert result.status == JobStatus.ERROR
    assert result.error_message == "No candidates returned from Gemini API"


@pytest.mark.asyncio
async def test_empty_candidate_ends_in_error(runner, make_job, generation_client):
    generation_client.generate.return_value = GenerationResult(candidate_count=1)
    job = await make_job()

    result = await runner.run(job.id)

    assert result.error_message == "No image or text response received from Gemini API"


@pytest.mark.asyncio
async def test_generation_api_error_ends_in_error(runner, make_job, generation_client):
    generation_client.generate.side_effect = GenerationError("Gemini API error (HTTP 429): quota", http_status=429)
    job = await make_job()

    result = await runner.run(job.id)

    assert result.status == JobStatus.ERROR
    assert result.error_message == "Gemini API error (HTTP 429): quota"


@pytest.mark.asyncio
async def test_undecodable_generated_image_ends_in_error(runner, make_job, generation_client):
    generation_client.generate.return_value = GenerationResult(images=[b"not an image"], candidate_count=1)
    job = await make_job()

    result = await runner.run(job.id)

    assert result.status == JobStatus.ERROR
    assert result.error_message.startswith("Generated image could not be decoded")


@pytest.mark.asyncio
async def test_unexpected_exception_ends_in_error(runner, make_job, generation_client):
    generation_client.generate.side_effect = RuntimeError("boom")
    job = await make_job()

    result = await runner.run(job.id)

    assert result.status == JobStatus.ERROR
    assert result.error_message == "Image processing failed: boom"


@pytest.mark.asyncio
async def test_missing_input_file_ends_in_error(runner, make_job, storage):
    job = await make_job()
    await storage.delete(job.input_storage_key)

    result = await runner.run(job.id)

    assert result.status == JobStatus.ERROR
    assert "File not found" in result.error_message


@pytest.mark.asyncio
async def test_generation_timeout(job_store, storage, generation_client, make_job):
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    generation_client.generate.side_effect = hang
    orchestrator = PipelineOrchestrator(job_store, storage, generation_client, generation_timeout=0.05)
    job = await make_job()

    result = await PipelineRunner(orchestrator).run(job.id)

    assert result.status == JobStatus.ERROR
    assert "timed out" in result.error_message


@pytest.mark.asyncio
async def test_pipeline_wall_clock_timeout(job_store, storage, generation_client, make_job):
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    generation_client.generate.side_effect = hang
    orchestrator = PipelineOrchestrator(job_store, storage, generation_client, generation_timeout=30.0)
    job = await make_job()

    result = await PipelineRunner(orchestrator, timeout=0.05).run(job.id)

    assert result.status == JobStatus.ERROR
    assert result.error_message == "Image processing timed out after 0.05 seconds"
    assert result.final_storage_key is None


# =============================================================================
# Claiming and terminal records
# =============================================================================

@pytest.mark.asyncio
async def test_run_unknown_job(runner):
    with pytest.raises(JobNotFoundError):
        await runner.run("missing")


@pytest.mark.asyncio
async def test_job_cannot_be_started_twice(runner, make_job, generation_client):
    job = await make_job()
    await runner.run(job.id)

    with pytest.raises(JobStateConflictError):
        await runner.run(job.id)

    generation_client.generate.assert_awaited_once()


@pytest.mark.asyncio
async def test_terminal_record_is_stable(runner, job_store, make_job):
    job = await make_job()
    finished = await runner.run(job.id)

    first = await job_store.get(job.id)
    second = await job_store.get(job.id)
    assert first == second == finished

    with pytest.raises(InvalidStatusTransitionError):
        await job_store.update(job.id, status=JobStatus.UPSCALING)
    with pytest.raises(InvalidStatusTransitionError):
        await job_store.update(job.id, status=JobStatus.ERROR, error_message="late failure")

    assert await job_store.get(job.id) == finished


@pytest.mark.asyncio
async def test_background_start_reaches_terminal_status(runner, job_store, make_job):
    job = await make_job()

    started = await runner.start(job.id)
    assert started.status == JobStatus.GENERATING

    await asyncio.gather(*list(runner._tasks))
    await asyncio.sleep(0)
    finished = await job_store.get(job.id)
    assert finished.status == JobStatus.COMPLETE
    assert runner.in_flight == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_jobs(job_store, storage, generation_client, make_job):
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    generation_client.generate.side_effect = hang
    orchestrator = PipelineOrchestrator(job_store, storage, generation_client, generation_timeout=30.0)
    runner = PipelineRunner(orchestrator, timeout=30.0)
    job = await make_job()

    await runner.start(job.id)
    await asyncio.sleep(0)
    await runner.shutdown()

    cancelled = await job_store.get(job.id)
    assert cancelled.status == JobStatus.ERROR
    assert cancelled.error_message == "Image processing was cancelled"
