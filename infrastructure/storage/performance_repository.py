# infrastructure/storage/performance_repository.py
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import asyncpg

from domain.models.learning import PerformanceStats, ShapeTierStats
from domain.models.routing import ModelTier, TaskShape

StatsKey = Tuple[str, ModelTier]
AdjustmentKey = Tuple[TaskShape, ModelTier]


class PerformanceRepository(ABC):
    """Persistence for learner statistics and routing adjustments"""

    @abstractmethod
    async def save_analyzer_stats(self, analyzer_kind: str, model_tier: ModelTier,
                                  stats: PerformanceStats) -> None:
        ...

    @abstractmethod
    async def save_tier_adjustment(self, task_shape: TaskShape, model_tier: ModelTier,
                                   stats: ShapeTierStats, adjustment: float) -> None:
        ...

    @abstractmethod
    async def load_analyzer_stats(self) -> Dict[StatsKey, PerformanceStats]:
        ...

    @abstractmethod
    async def load_tier_stats(self) -> Dict[AdjustmentKey, Tuple[ShapeTierStats, float]]:
        ...


class InMemoryPerformanceRepository(PerformanceRepository):

    def __init__(self):
        self.analyzer_stats: Dict[StatsKey, PerformanceStats] = {}
        self.tier_stats: Dict[AdjustmentKey, Tuple[ShapeTierStats, float]] = {}

    async def save_analyzer_stats(self, analyzer_kind, model_tier, stats):
        self.analyzer_stats[(analyzer_kind, model_tier)] = PerformanceStats(
            stats.samples, stats.successes, stats.overrides, stats.confidence_sum)

    async def save_tier_adjustment(self, task_shape, model_tier, stats, adjustment):
        self.tier_stats[(task_shape, model_tier)] = (
            ShapeTierStats(stats.samples, stats.overrides, stats.preferred_higher, stats.preferred_lower),
            adjustment,
        )

    async def load_analyzer_stats(self):
        return dict(self.analyzer_stats)

    async def load_tier_stats(self):
        return dict(self.tier_stats)


class PostgresPerformanceRepository(PerformanceRepository):

    def __init__(self, db_pool: Optional[asyncpg.Pool]):
        self.db_pool = db_pool

    async def save_analyzer_stats(self, analyzer_kind, model_tier, stats):
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO analyzer_performance
                (analyzer_kind, model_tier, samples, successes, overrides, confidence_sum, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, CURRENT_TIMESTAMP)
                ON CONFLICT (analyzer_kind, model_tier) DO UPDATE SET
                samples = $3, successes = $4, overrides = $5, confidence_sum = $6,
                updated_at = CURRENT_TIMESTAMP
            """, analyzer_kind, model_tier.value, stats.samples, stats.successes,
                stats.overrides, stats.confidence_sum)

    async def save_tier_adjustment(self, task_shape, model_tier, stats, adjustment):
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO tier_adjustments
                (task_shape, model_tier, samples, overrides, preferred_higher, preferred_lower,
                 adjustment, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, CURRENT_TIMESTAMP)
                ON CONFLICT (task_shape, model_tier) DO UPDATE SET
                samples = $3, overrides = $4, preferred_higher = $5, preferred_lower = $6,
                adjustment = $7, updated_at = CURRENT_TIMESTAMP
            """, task_shape.value, model_tier.value, stats.samples, stats.overrides,
                stats.preferred_higher, stats.preferred_lower, adjustment)

    async def load_analyzer_stats(self):
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT analyzer_kind, model_tier, samples, successes, overrides, confidence_sum
                FROM analyzer_performance
            """)
        return {
            (row['analyzer_kind'], ModelTier(row['model_tier'])): PerformanceStats(
                samples=row['samples'],
                successes=row['successes'],
                overrides=row['overrides'],
                confidence_sum=row['confidence_sum'],
            )
            for row in rows
        }

    async def load_tier_stats(self):
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT task_shape, model_tier, samples, overrides, preferred_higher,
                       preferred_lower, adjustment
                FROM tier_adjustments
            """)
        return {
            (TaskShape(row['task_shape']), ModelTier(row['model_tier'])): (
                ShapeTierStats(
                    samples=row['samples'],
                    overrides=row['overrides'],
                    preferred_higher=row['preferred_higher'],
                    preferred_lower=row['preferred_lower'],
                ),
                row['adjustment'],
            )
            for row in rows
        }
