"""
FastAPI Dependencies

Services are built once in the application lifespan and kept on
app.state; these helpers hand them to the endpoints.
"""

from fastapi import Request

from design_pipeline.core.config import Settings
from design_pipeline.core.storage import IStorage
from design_pipeline.modules.designs.store import IJobStore
from design_pipeline.pipeline.runner import PipelineRunner


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_job_store(request: Request) -> IJobStore:
    return request.app.state.job_store


def get_storage(request: Request) -> IStorage:
    return request.app.state.storage


def get_runner(request: Request) -> PipelineRunner:
    return request.app.state.runner
