"""
FastAPI dependency providers.

Each provider returns a process-level singleton so routes stay thin and tests
can swap implementations through ``app.dependency_overrides``.
"""

from ragmaster.agents.gateway import ModelGateway, get_gateway
from ragmaster.config.settings import Settings, get_settings
from ragmaster.ingestion.validation import UploadLimits
from ragmaster.runtime.queue import QueueEngine, get_queue_engine


def get_engine() -> QueueEngine:
    return get_queue_engine()


def get_model_gateway() -> ModelGateway:
    return get_gateway()


def get_app_settings() -> Settings:
    return get_settings()


def get_upload_limits() -> UploadLimits:
    return get_settings().upload_limits()
