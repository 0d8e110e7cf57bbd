# shared/logging.py
import structlog
import logging
import sys
from typing import Any, Dict, Optional

_SHARED_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]

# Configure structured logging
structlog.configure(
    processors=_SHARED_PROCESSORS + [structlog.processors.JSONRenderer()],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Get logger instance
logger = structlog.get_logger("triage")

# Configure standard library logging
logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=logging.INFO,
)

def setup_logging(level: str = "INFO", json_logs: bool = True):
    """Setup logging configuration"""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not json_logs:
        # Use human-readable format for development
        structlog.configure(
            processors=_SHARED_PROCESSORS + [structlog.dev.ConsoleRenderer()],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

def log_analyzer_execution(
    analyzer_kind: str,
    queue_item_id: str,
    execution_time_ms: int,
    tokens_used: int,
    success: bool,
    model_tier: Optional[str] = None,
    confidence: Optional[float] = None,
    error_message: Optional[str] = None
):
    """Log analyzer execution metrics"""
    extra_data = {
        "analyzer_kind": analyzer_kind,
        "queue_item_id": queue_item_id,
        "execution_time_ms": execution_time_ms,
        "tokens_used": tokens_used,
        "success": success,
        "model_tier": model_tier,
    }

    if confidence is not None:
        extra_data["confidence"] = confidence

    if error_message:
        extra_data["error_message"] = error_message
        logger.warning("Analyzer execution failed", **extra_data)
    else:
        logger.info("Analyzer execution completed", **extra_data)

def log_circuit_breaker_event(
    resource: str,
    event_type: str,
    state: str,
    failure_count: int,
    additional_context: Optional[Dict[str, Any]] = None
):
    """Log circuit breaker state changes"""
    extra_data = {
        "resource": resource,
        "event_type": event_type,
        "circuit_state": state,
        "failure_count": failure_count
    }

    if additional_context:
        extra_data.update(additional_context)

    logger.info("Circuit breaker event", **extra_data)

def log_review_request(
    queue_item_id: str,
    support_level: float,
    trigger: str,
    due_at: Optional[str] = None,
    assigned_reviewer: Optional[str] = None
):
    """Log human review requests"""
    logger.info("Review requested",
               queue_item_id=queue_item_id,
               support_level=support_level,
               trigger=trigger,
               due_at=due_at,
               assigned_reviewer=assigned_reviewer)

def log_routing_decision(
    queue_item_id: str,
    model_tier: str,
    source: str,
    composite_score: float,
    estimated_tokens: int,
    estimated_cost: float
):
    """Log model routing decisions; overrides are logged at warning level to stand out"""
    log = logger.warning if source == "override" else logger.info
    log("Routing decision",
        queue_item_id=queue_item_id,
        model_tier=model_tier,
        source=source,
        composite_score=composite_score,
        estimated_tokens=estimated_tokens,
        estimated_cost=estimated_cost)

def log_token_usage(
    queue_item_id: str,
    model_tier: str,
    estimated_tokens: int,
    tokens_used: int
):
    """Log estimated versus actual token usage per attempt"""
    logger.info("Token usage",
               queue_item_id=queue_item_id,
               model_tier=model_tier,
               estimated_tokens=estimated_tokens,
               tokens_used=tokens_used,
               over_estimate=tokens_used > estimated_tokens)

def log_attempt_outcome(
    queue_item_id: str,
    attempt_number: int,
    outcome: str,
    worker_id: Optional[str] = None,
    support_level: Optional[float] = None,
    error_message: Optional[str] = None
):
    """Log the final outcome of one processing attempt"""
    extra_data = {
        "queue_item_id": queue_item_id,
        "attempt_number": attempt_number,
        "outcome": outcome,
        "worker_id": worker_id,
    }

    if support_level is not None:
        extra_data["support_level"] = support_level

    if error_message:
        extra_data["error_message"] = error_message
        logger.error("Attempt failed", **extra_data)
    else:
        logger.info("Attempt finished", **extra_data)
