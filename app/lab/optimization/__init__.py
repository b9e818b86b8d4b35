from app.lab.optimization.base import BaseOptimizationStrategy, OptimizationContext, OptimizationResult
from app.lab.optimization.batching import BatchProcessor, BatchRequest, BatchResult
from app.lab.optimization.caching import CachingStrategy
from app.lab.optimization.model_selection import ModelSelectionStrategy
from app.lab.optimization.prompt_compressor import PromptCompressor
from app.lab.optimization.registry import (
    StrategyRanking,
    StrategyRegistry,
    build_default_registry,
    calculate_priority,
)

__all__ = [
    "BaseOptimizationStrategy",
    "BatchProcessor",
    "BatchRequest",
    "BatchResult",
    "CachingStrategy",
    "ModelSelectionStrategy",
    "OptimizationContext",
    "OptimizationResult",
    "PromptCompressor",
    "StrategyRanking",
    "StrategyRegistry",
    "build_default_registry",
    "calculate_priority",
]
