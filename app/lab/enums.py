from __future__ import annotations

from enum import Enum


class Provider(str, Enum):
    openai = "openai"
    anthropic = "anthropic"
    google = "google"


class IsolationLevel(str, Enum):
    user = "user"
    experiment = "experiment"


class ExperimentStatus(str, Enum):
    draft = "draft"
    running = "running"
    completed = "completed"
    archived = "archived"


class StrategyCategory(str, Enum):
    prompt = "prompt"
    caching = "caching"
    batching = "batching"
    model = "model"


class OptimizationPriority(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


class LoadPattern(str, Enum):
    steady = "steady"  # 平稳
    peak = "peak"  # 工作日高峰
    seasonal = "seasonal"  # 30 天正弦波动
    burst = "burst"  # 随机突发


class TimePeriod(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"
