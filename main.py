# main.py
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request

from application.orchestrators.agent_orchestrator import AgentOrchestrator
from application.orchestrators.attempt_pipeline import TIER_HEADER, AttemptPipeline
from application.services.complexity_classifier import ComplexityClassifier
from application.services.consensus_engine import ConsensusEngine
from application.services.feedback_learner import FeedbackLearner
from application.services.ingestion import IngestionService
from application.services.model_router import ModelRouter
from application.workers.worker_pool import WorkerPool
from application.workflows.review_workflow import ReviewWorkflow
from domain.models.approval_workflow import (
    AttemptHistoryModel,
    EnqueueMessageModel,
    EnqueueResponseModel,
    QueueItemModel,
    QueueStatsModel,
)
from domain.models.message import InboundMessage
from domain.models.routing import ModelTier
from infrastructure.agents.specialists import build_analyzers
from infrastructure.ingestion.imap_source import ImapMailSource
from infrastructure.notifications.notifier import LoggingNotifier, WebhookNotifier
from infrastructure.providers.gateway import ModelGateway
from infrastructure.providers.keyword_provider import KeywordModelProvider
from infrastructure.providers.openai_provider import OpenAIModelProvider
from infrastructure.resilience.circuit_breaker import CircuitBreakerRegistry
from infrastructure.storage.base import QueueStore
from infrastructure.storage.memory_queue_store import InMemoryQueueStore
from infrastructure.storage.performance_repository import (
    InMemoryPerformanceRepository,
    PostgresPerformanceRepository,
)
from infrastructure.storage.postgres_queue_store import PostgresQueueStore
from infrastructure.web import review_api
from infrastructure.web.review_api import queue_item_model
from shared.clock import utc_now
from shared.config import Settings
from shared.logging import logger, setup_logging

VERSION = "1.0.0"

# Global application state
app_state: Dict[str, Any] = {}


def build_provider(settings: Settings):
    if settings.provider.provider == "openai":
        return OpenAIModelProvider(
            tier_models=settings.router.tier_models,
            api_key=settings.provider.openai_api_key,
            base_url=settings.provider.openai_base_url,
            timeout_seconds=settings.provider.request_timeout_seconds,
        )
    return KeywordModelProvider(tier_models=settings.router.tier_models)


async def build_components(settings: Settings) -> Dict[str, Any]:
    """Wire the triage engine; database_url=None runs fully in memory"""
    components: Dict[str, Any] = {"settings": settings}

    if settings.database_url:
        store = PostgresQueueStore(settings.database_url, settings.queue)
        await store.initialize()
        registry = CircuitBreakerRegistry(store.connection_pool)
        performance_repository = PostgresPerformanceRepository(store.connection_pool)
    else:
        logger.warning("DATABASE_URL not set, using the in-memory queue store")
        store = InMemoryQueueStore(settings.queue)
        await store.initialize()
        registry = CircuitBreakerRegistry()
        performance_repository = InMemoryPerformanceRepository()

    gateway = ModelGateway(
        build_provider(settings),
        max_concurrent_calls=settings.orchestrator.max_concurrent_provider_calls,
        registry=registry,
        config=settings.provider,
    )
    notifier = WebhookNotifier(settings.webhook_url) if settings.webhook_url else LoggingNotifier()
    learner = FeedbackLearner(performance_repository, settings.learning)

    review_workflow = ReviewWorkflow(store, notifier=notifier, learner=learner, config=settings.review)
    pipeline = AttemptPipeline(
        store=store,
        classifier=ComplexityClassifier(),
        router=ModelRouter(settings.router, adjustments=learner),
        orchestrator=AgentOrchestrator(build_analyzers(settings.orchestrator.analyzers, gateway),
                                       settings.orchestrator),
        consensus=ConsensusEngine(settings.consensus),
        review_workflow=review_workflow,
        learner=learner,
        notifier=notifier,
        config=settings.orchestrator,
    )
    ingestion = IngestionService(store)

    components.update(
        store=store,
        circuit_breaker_registry=registry,
        gateway=gateway,
        notifier=notifier,
        learner=learner,
        review_workflow=review_workflow,
        pipeline=pipeline,
        ingestion=ingestion,
        worker_pool=WorkerPool(store, pipeline, settings.worker, settings.queue),
    )

    if settings.imap_host:
        components["imap_source"] = ImapMailSource(
            ingestion,
            host=settings.imap_host,
            user=settings.imap_user or "",
            password=settings.imap_password or "",
            poll_seconds=settings.imap_poll_seconds,
        )
    return components


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""

    settings = Settings.from_env()
    setup_logging(level=settings.log_level, json_logs=settings.json_logs)
    logger.info("Starting inbound triage engine", version=VERSION)

    try:
        app_state.update(await build_components(settings))

        await app_state["learner"].start()
        await app_state["worker_pool"].start()
        if "imap_source" in app_state:
            await app_state["imap_source"].start()

        app_state["cleanup_task"] = asyncio.create_task(cleanup_completed_items())
        logger.info("Application initialized successfully")

    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("Shutting down inbound triage engine")

    if "cleanup_task" in app_state:
        app_state["cleanup_task"].cancel()
    if "imap_source" in app_state:
        await app_state["imap_source"].stop()
    await app_state["worker_pool"].stop()
    await app_state["learner"].stop()
    await app_state["notifier"].close()
    await app_state["gateway"].close()
    await app_state["store"].close()
    app_state.clear()


app = FastAPI(
    title="Inbound Triage Engine",
    description="Priority queue, tiered model routing and multi-analyzer consensus for inbound customer email",
    version=VERSION,
    lifespan=lifespan
)


# Dependency injection
async def get_store() -> QueueStore:
    return app_state["store"]


async def get_ingestion() -> IngestionService:
    return app_state["ingestion"]


async def get_review_workflow() -> ReviewWorkflow:
    return app_state["review_workflow"]


async def get_circuit_breaker_registry() -> CircuitBreakerRegistry:
    return app_state["circuit_breaker_registry"]


app.dependency_overrides[review_api.get_review_workflow] = get_review_workflow


@app.post("/messages", response_model=EnqueueResponseModel)
async def enqueue_message(
    request: EnqueueMessageModel,
    ingestion: IngestionService = Depends(get_ingestion),
    store: QueueStore = Depends(get_store)
):
    """Enqueue a structured inbound message"""

    try:
        headers = {}
        if request.requested_tier:
            headers[TIER_HEADER] = ModelTier(request.requested_tier.lower()).value

        message = InboundMessage(
            message_id=request.message_id,
            sender=request.sender,
            subject=request.subject,
            body=request.body,
            received_at=utc_now(),
            thread_id=request.thread_id,
            organization_id=request.organization_id,
            headers=headers,
        )
        item_id = await ingestion.enqueue(message, priority_hint=request.priority_hint)
        item = await store.get(item_id)

        return EnqueueResponseModel(
            queue_item_id=item_id,
            status=item.status.value,
            priority=item.priority.value,
        )

    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid message: {str(e)}")
    except Exception as e:
        logger.error("Failed to enqueue message", message_id=request.message_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to enqueue message: {str(e)}")


@app.post("/messages/raw", response_model=EnqueueResponseModel)
async def enqueue_raw_message(
    http_request: Request,
    priority_hint: Optional[str] = None,
    organization_id: Optional[str] = None,
    ingestion: IngestionService = Depends(get_ingestion),
    store: QueueStore = Depends(get_store)
):
    """Enqueue a raw RFC 822 message posted as the request body"""

    try:
        raw = await http_request.body()
        if not raw.strip():
            raise HTTPException(status_code=422, detail="Empty message body")

        item_id = await ingestion.enqueue(raw, priority_hint=priority_hint, organization_id=organization_id)
        item = await store.get(item_id)

        return EnqueueResponseModel(
            queue_item_id=item_id,
            status=item.status.value,
            priority=item.priority.value,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to enqueue raw message", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to enqueue raw message: {str(e)}")


@app.get("/queue/stats", response_model=QueueStatsModel)
async def get_queue_stats(
    organization_id: Optional[str] = None,
    store: QueueStore = Depends(get_store)
):
    """Item counts per status"""

    try:
        stats = await store.queue_stats(organization_id)
        return QueueStatsModel(total=stats.total, counts=stats.counts)

    except Exception as e:
        logger.error("Failed to get queue stats", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to get queue stats: {str(e)}")


@app.get("/queue/{item_id}", response_model=QueueItemModel)
async def get_queue_item(
    item_id: str,
    store: QueueStore = Depends(get_store)
):
    """Current state of one queue item"""

    try:
        item = await store.get(item_id)
        if not item:
            raise HTTPException(status_code=404, detail="Queue item not found")
        return queue_item_model(item)

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to get queue item", queue_item_id=item_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to get queue item: {str(e)}")


@app.get("/queue/{item_id}/attempts", response_model=AttemptHistoryModel)
async def get_attempt_history(
    item_id: str,
    store: QueueStore = Depends(get_store)
):
    """Append-only attempt log for one queue item"""

    try:
        item = await store.get(item_id)
        if not item:
            raise HTTPException(status_code=404, detail="Queue item not found")

        attempts = await store.list_attempts(item_id)
        return AttemptHistoryModel(
            queue_item_id=item_id,
            attempts=[
                {
                    "attempt_number": a.attempt_number,
                    "outcome": a.outcome,
                    "composite_score": a.composite_score,
                    "routing_decision": a.routing_decision,
                    "analysis_summaries": list(a.analysis_summaries),
                    "consensus": a.consensus,
                    "error": a.error,
                    "created_at": a.created_at.isoformat() if a.created_at else None,
                }
                for a in attempts
            ],
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to get attempt history", queue_item_id=item_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to get attempt history: {str(e)}")


@app.get("/health")
async def health_check(
    store: QueueStore = Depends(get_store),
    circuit_breaker_registry: CircuitBreakerRegistry = Depends(get_circuit_breaker_registry)
):
    """System health check"""

    try:
        stats = await store.queue_stats()
        circuit_status = await circuit_breaker_registry.get_all_status()

        open_circuits = [name for name, status in circuit_status.items()
                         if status["state"] == "open"]
        health_status = "healthy" if not open_circuits else "degraded"

        return {
            "status": health_status,
            "store": type(store).__name__,
            "queue": stats.counts,
            "workers_running": app_state["worker_pool"].running,
            "circuit_breakers": circuit_status,
            "open_circuits": open_circuits,
            "version": VERSION,
            "timestamp": utc_now().isoformat()
        }

    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e),
            "timestamp": utc_now().isoformat()
        }


@app.get("/")
async def root():
    """API root endpoint"""
    return {
        "service": "Inbound Triage Engine",
        "version": VERSION,
        "endpoints": {
            "enqueue": "POST /messages",
            "enqueue_raw": "POST /messages/raw",
            "queue_item": "GET /queue/{item_id}",
            "attempts": "GET /queue/{item_id}/attempts",
            "queue_stats": "GET /queue/stats",
            "review": "/review/*",
            "health_check": "GET /health"
        }
    }


app.include_router(review_api.router)


async def cleanup_completed_items():
    """Background task purging old terminal items"""
    while True:
        try:
            await asyncio.sleep(3600)  # Run every hour

            if "store" in app_state:
                settings = app_state["settings"]
                removed = await app_state["store"].cleanup_completed(settings.queue.cleanup_days)
                if removed > 0:
                    logger.info("Cleaned up completed items", count=removed)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Failed to clean up completed items", error=str(e))


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
    )
