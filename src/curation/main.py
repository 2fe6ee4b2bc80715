"""FastAPI operations app for the curation pipeline.

Wires the curation services from configuration, runs the CurationRunner
in the background, and exposes liveness, readiness and Prometheus
metrics endpoints.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse

from .config import CurationSettings, get_settings
from .db import PostgresDatabase
from .events.emitter import EventEmitter, create_event_emitter
from .events.metrics import generate_metrics_output
from .feedback.loop import RetryFeedbackLoop
from .feedback.memory import InMemoryFeedbackRepository
from .feedback.repository import PostgresFeedbackRepository
from .gates.builtin import create_default_registry
from .gates.engine import QualityGateEngine
from .gates.memory import InMemoryGateResultRepository
from .gates.prerequisites import ItemPrerequisiteLookup
from .gates.repository import PostgresGateResultRepository
from .gates.similarity import ApprovedItemIndex, PostgresSimilarityIndex
from .leases.manager import WorkLeaseManager
from .leases.memory import InMemoryLeaseRepository
from .leases.repository import PostgresLeaseRepository
from .mapping.client import HttpTransformationClient
from .mapping.memory import InMemoryMappingRepository, InMemoryTransformationJobRepository
from .mapping.repository import PostgresMappingRepository, PostgresTransformationJobRepository
from .mapping.service import MappingService
from .mapping.transformation import TransformationService
from .progress.memory import InMemoryPipelineRepository
from .progress.repository import PostgresPipelineRepository
from .progress.service import PipelineService
from .runner import CurationRunner
from .state.machine import StateTransitionEngine
from .state.memory import InMemoryItemRepository
from .state.repository import PostgresItemRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class CurationServices:
    """Every wired service of one curation process."""

    event_emitter: EventEmitter
    lease_manager: WorkLeaseManager
    engine: StateTransitionEngine
    gate_engine: QualityGateEngine
    feedback_loop: RetryFeedbackLoop
    pipeline_service: PipelineService
    mapping_service: MappingService
    runner: CurationRunner
    transformation_service: Optional[TransformationService] = None
    transformation_client: Optional[HttpTransformationClient] = None
    database: Optional[PostgresDatabase] = None


# Global instances, initialized during lifespan startup
settings: CurationSettings
services: Optional[CurationServices] = None
runner_task: Optional[asyncio.Task] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: CurationSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Curation configuration:")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url, 13)}")
    logger.info(f"  DB Pool Size: {settings.db_min_pool_size}-{settings.db_max_pool_size}")
    logger.info(f"  Lease Stale Seconds: {settings.lease_stale_seconds}")
    logger.info(f"  Similarity Threshold: {settings.similarity_threshold}")
    logger.info(f"  Max Gate Attempts: {settings.max_gate_attempts}")
    logger.info(f"  Gate Timeout Seconds: {settings.gate_timeout_seconds}")
    logger.info(f"  Max Retries: {settings.max_retries}")
    logger.info(
        f"  Retry Backoff: {settings.retry_backoff_seconds}s "
        f"(max {settings.retry_backoff_max_seconds}s)"
    )
    logger.info(f"  Mapping Auto Threshold: {settings.mapping_auto_threshold}")
    logger.info(f"  Mapping Min Confidence: {settings.mapping_min_confidence}")
    logger.info(f"  Transformation URL: {settings.transformation_url or '<unset>'}")
    logger.info(f"  Transformation Max Retries: {settings.transformation_max_retries}")
    logger.info(f"  Poll Interval Seconds: {settings.poll_interval_seconds}")
    logger.info(f"  Batch Size: {settings.batch_size}")
    logger.info(f"  Auto Approve: {settings.auto_approve}")
    logger.info(f"  Event Sinks: {', '.join(settings.event_sinks)}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def build_services(
    cfg: CurationSettings,
    db: Optional[PostgresDatabase] = None,
    event_emitter: Optional[EventEmitter] = None,
) -> CurationServices:
    """Wire the curation services.

    Postgres repositories are used when a connected database is given,
    in-memory repositories otherwise.

    Args:
        cfg: Validated curation settings.
        db: Connected database, or None for in-memory storage.
        event_emitter: Overrides the emitter built from cfg.event_sinks.

    Returns:
        The wired services.
    """
    emitter = event_emitter or create_event_emitter(cfg.event_sinks)

    if db is not None:
        lease_repository = PostgresLeaseRepository(db)
        item_repository = PostgresItemRepository(db)
        gate_repository = PostgresGateResultRepository(db)
        feedback_repository = PostgresFeedbackRepository(db)
        pipeline_repository = PostgresPipelineRepository(db)
        mapping_repository = PostgresMappingRepository(db)
        job_repository = PostgresTransformationJobRepository(db)
        similarity_index = PostgresSimilarityIndex(db)
    else:
        lease_repository = InMemoryLeaseRepository()
        item_repository = InMemoryItemRepository()
        gate_repository = InMemoryGateResultRepository()
        feedback_repository = InMemoryFeedbackRepository()
        pipeline_repository = InMemoryPipelineRepository()
        mapping_repository = InMemoryMappingRepository()
        job_repository = InMemoryTransformationJobRepository()
        similarity_index = ApprovedItemIndex(item_repository)

    lease_manager = WorkLeaseManager(
        lease_repository,
        stale_after=timedelta(seconds=cfg.lease_stale_seconds),
        event_emitter=emitter,
    )
    engine = StateTransitionEngine(item_repository, event_emitter=emitter)
    gate_engine = QualityGateEngine(
        create_default_registry(
            similarity_index,
            cfg.similarity_threshold,
            prerequisite_lookup=ItemPrerequisiteLookup(item_repository),
        ),
        gate_repository,
        max_attempts=cfg.max_gate_attempts,
        gate_timeout_seconds=cfg.gate_timeout_seconds,
        event_emitter=emitter,
    )

    transformation_client = None
    if cfg.transformation_url:
        transformation_client = HttpTransformationClient(
            base_url=cfg.transformation_url,
            timeout=cfg.transformation_timeout_seconds,
        )

    feedback_loop = RetryFeedbackLoop(
        engine,
        feedback_repository,
        lease_manager,
        regenerator=transformation_client,
        max_retries=cfg.max_retries,
        backoff_seconds=cfg.retry_backoff_seconds,
        backoff_max_seconds=cfg.retry_backoff_max_seconds,
        event_emitter=emitter,
    )

    transformation_service = None
    if transformation_client is not None:
        transformation_service = TransformationService(
            mapping_repository,
            job_repository,
            engine,
            lease_manager,
            transformation_client,
            max_retries=cfg.transformation_max_retries,
            event_emitter=emitter,
        )

    runner = CurationRunner(
        engine,
        gate_engine,
        feedback_loop,
        lease_manager,
        batch_size=cfg.batch_size,
        poll_interval_seconds=cfg.poll_interval_seconds,
        auto_approve=cfg.auto_approve,
        event_emitter=emitter,
    )

    return CurationServices(
        event_emitter=emitter,
        lease_manager=lease_manager,
        engine=engine,
        gate_engine=gate_engine,
        feedback_loop=feedback_loop,
        pipeline_service=PipelineService(pipeline_repository, event_emitter=emitter),
        mapping_service=MappingService(
            mapping_repository,
            auto_map_threshold=cfg.mapping_auto_threshold,
            min_confidence=cfg.mapping_min_confidence,
        ),
        runner=runner,
        transformation_service=transformation_service,
        transformation_client=transformation_client,
        database=db,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Database connection and service wiring
    - Starting and stopping the background runner
    """
    global settings, services, runner_task

    logger.info("Curation pipeline starting up...")

    settings = get_settings()
    _log_configuration(settings)

    db = None
    if settings.database_url:
        db = PostgresDatabase(
            settings.database_url,
            min_pool_size=settings.db_min_pool_size,
            max_pool_size=settings.db_max_pool_size,
        )
        await db.connect()
    else:
        logger.warning("No database configured; using in-memory repositories")

    services = build_services(settings, db)
    runner_task = asyncio.create_task(services.runner.run_forever())

    logger.info("Curation pipeline started successfully")

    yield

    logger.info("Curation pipeline shutting down...")

    services.runner.stop()
    if runner_task is not None:
        await runner_task
        runner_task = None

    if services.transformation_client is not None:
        await services.transformation_client.close()
    await services.event_emitter.close()
    if services.database is not None:
        await services.database.disconnect()

    logger.info("Curation pipeline shutdown complete")


app = FastAPI(
    title="Curation Pipeline",
    description="Lifecycle, quality gates and retries for language-learning content",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is healthy.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Ready once services are wired, the runner is alive and, when a
    database is configured, it answers a health check.

    Returns:
        JSONResponse: 200 when ready, 503 otherwise.
    """
    if services is None:
        database_status = "unavailable"
        runner_status = "stopped"
    else:
        if services.database is None:
            database_status = "in_memory"
        elif await services.database.health_check():
            database_status = "healthy"
        else:
            database_status = "unhealthy"
        alive = runner_task is not None and not runner_task.done()
        runner_status = "running" if alive else "stopped"

    is_ready = database_status in ("healthy", "in_memory") and runner_status == "running"

    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={
            "status": "ready" if is_ready else "not_ready",
            "dependencies": {
                "database": database_status,
                "runner": runner_status,
            },
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint.

    Returns:
        Response: Prometheus-formatted metrics text.
    """
    return Response(
        content=generate_metrics_output(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.curation.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
