"""
Structured Logging for the Design Pipeline

One structlog event per pipeline step (intake, stage start/finish, status
change, external call). Events carry the service name and environment and,
inside a LogContext, the job_id and pipeline stage, so a single job can be
followed across the asyncio tasks that run it. Configured API keys never
reach the output.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict, Iterable
from datetime import datetime
from contextvars import ContextVar

from design_pipeline.core.config import settings

job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

REDACTED = "***"

# Third-party loggers that are only interesting at WARNING and above
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "multipart", "PIL")


def add_service_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Stamp service identity plus the current job/stage onto the event."""
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    event_dict.setdefault("version", settings.APP_VERSION)

    job_id = job_id_var.get()
    if job_id:
        event_dict.setdefault("job_id", job_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
    return event_dict


def secret_redactor(secrets: Iterable[Optional[str]]):
    """
    Build a processor that masks the given secret values wherever they show
    up in string fields (upstream error bodies, exception text, URLs).
    """
    values = [s.strip() for s in secrets if s and s.strip()]

    def redact_secrets(
        logger: logging.Logger,
        method_name: str,
        event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        if not values:
            return event_dict
        for key, value in event_dict.items():
            if isinstance(value, str):
                for secret in values:
                    if secret in value:
                        value = value.replace(secret, REDACTED)
                event_dict[key] = value
        return event_dict

    return redact_secrets


def setup_logging(log_level: str = "INFO", json_format: bool = True):
    """
    Route stdlib logging to stdout and configure structlog on top of it.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines when True, colored console output otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_service_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            secret_redactor([settings.GEMINI_API_KEY, settings.PICSART_API_KEY]),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Scope job_id / stage for every event logged inside the block, including
    events from the clients and the store.

        with LogContext(job_id=job.id, stage=PipelineStage.UPSCALE.value):
            logger.info("stage_started", input_size=len(image_bytes))

    Nested contexts override only the fields they set and restore the outer
    values on exit.
    """

    def __init__(self, job_id: Optional[str] = None, stage: Optional[str] = None):
        self.job_id = job_id
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        if self.job_id:
            self._tokens.append((job_id_var, job_id_var.set(self.job_id)))
        if self.stage:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
        return False
