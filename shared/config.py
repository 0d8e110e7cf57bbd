# shared/config.py
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from domain.models.routing import ModelTier


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_tuple(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class QueueConfig:
    max_attempts: int = 3
    lease_seconds: float = 120.0
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 3600.0
    cleanup_days: int = 30

    def backoff_seconds(self, attempts: int) -> float:
        """Exponential delay before a failed item becomes claimable again"""
        exponent = max(attempts - 1, 0)
        return min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds)


@dataclass(frozen=True)
class RouterConfig:
    economy_max_score: float = 3.0
    standard_max_score: float = 7.0
    chars_per_token: int = 4
    per_analyzer_overhead_tokens: int = 350
    tier_models: Dict[ModelTier, str] = field(default_factory=lambda: {
        ModelTier.ECONOMY: "gpt-4o-mini",
        ModelTier.STANDARD: "gpt-4o",
        ModelTier.PREMIUM: "gpt-4",
    })
    cost_per_1k_tokens: Dict[ModelTier, float] = field(default_factory=lambda: {
        ModelTier.ECONOMY: 0.00015,
        ModelTier.STANDARD: 0.005,
        ModelTier.PREMIUM: 0.03,
    })
    response_multipliers: Dict[ModelTier, int] = field(default_factory=lambda: {
        ModelTier.ECONOMY: 2,
        ModelTier.STANDARD: 4,
        ModelTier.PREMIUM: 8,
    })


@dataclass(frozen=True)
class OrchestratorConfig:
    analyzers: Tuple[str, ...] = ("support", "sales", "dispute_billing", "relationship", "opportunity")
    analyzer_timeout_seconds: float = 30.0
    attempt_timeout_seconds: float = 90.0
    peer_wait_seconds: float = 2.0
    max_peer_depth: int = 1
    max_concurrent_provider_calls: int = 8
    analyzer_max_tokens: int = 800


@dataclass(frozen=True)
class ConsensusConfig:
    review_threshold: float = 0.66


@dataclass(frozen=True)
class ReviewConfig:
    sla_hours: float = 24.0


@dataclass(frozen=True)
class LearningConfig:
    override_threshold: float = 0.3
    min_samples: int = 5
    adjustment_step: float = 1.5
    max_adjustment: float = 3.0
    queue_size: int = 1000


@dataclass(frozen=True)
class WorkerConfig:
    worker_count: int = 4
    idle_poll_min_seconds: float = 0.5
    idle_poll_max_seconds: float = 10.0
    jitter_ratio: float = 0.25


@dataclass(frozen=True)
class ProviderConfig:
    provider: str = "keyword"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    request_timeout_seconds: float = 30.0
    breaker_failure_threshold: int = 5
    breaker_recovery_seconds: float = 120.0


@dataclass(frozen=True)
class Settings:
    """Top-level settings; database_url=None selects the in-memory queue store"""
    database_url: Optional[str] = None
    log_level: str = "INFO"
    json_logs: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    webhook_url: Optional[str] = None
    imap_host: Optional[str] = None
    imap_user: Optional[str] = None
    imap_password: Optional[str] = None
    imap_poll_seconds: float = 60.0
    queue: QueueConfig = field(default_factory=QueueConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (and a .env file when present)"""
        load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            json_logs=_env_bool("JSON_LOGS", True),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
            imap_host=os.getenv("IMAP_HOST"),
            imap_user=os.getenv("IMAP_USER"),
            imap_password=os.getenv("IMAP_PASSWORD"),
            imap_poll_seconds=float(os.getenv("IMAP_POLL_SECONDS", "60")),
            queue=QueueConfig(
                max_attempts=int(os.getenv("QUEUE_MAX_ATTEMPTS", "3")),
                lease_seconds=float(os.getenv("QUEUE_LEASE_SECONDS", "120")),
                backoff_base_seconds=float(os.getenv("QUEUE_BACKOFF_BASE_SECONDS", "30")),
                backoff_max_seconds=float(os.getenv("QUEUE_BACKOFF_MAX_SECONDS", "3600")),
                cleanup_days=int(os.getenv("QUEUE_CLEANUP_DAYS", "30")),
            ),
            orchestrator=OrchestratorConfig(
                analyzers=_env_tuple("ANALYZERS", OrchestratorConfig.analyzers),
                analyzer_timeout_seconds=float(os.getenv("ANALYZER_TIMEOUT_SECONDS", "30")),
                attempt_timeout_seconds=float(os.getenv("ATTEMPT_TIMEOUT_SECONDS", "90")),
                peer_wait_seconds=float(os.getenv("PEER_WAIT_SECONDS", "2")),
                max_concurrent_provider_calls=int(os.getenv("MAX_CONCURRENT_PROVIDER_CALLS", "8")),
            ),
            consensus=ConsensusConfig(
                review_threshold=float(os.getenv("REVIEW_THRESHOLD", "0.66")),
            ),
            review=ReviewConfig(
                sla_hours=float(os.getenv("REVIEW_SLA_HOURS", "24")),
            ),
            worker=WorkerConfig(
                worker_count=int(os.getenv("WORKER_COUNT", "4")),
            ),
            provider=ProviderConfig(
                provider=os.getenv("MODEL_PROVIDER", "keyword"),
                openai_api_key=os.getenv("OPENAI_API_KEY"),
                openai_base_url=os.getenv("OPENAI_BASE_URL"),
                request_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30")),
            ),
        )
