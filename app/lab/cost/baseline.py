from __future__ import annotations

import uuid
from typing import Any, Iterable, Optional, Sequence

from loguru import logger
from sqlalchemy import DateTime, Float, Integer, String, bindparam, text

from app.lab.db import Queryable
from app.lab.entities import APICallRecord, Baseline
from app.lab.rounding import round_half_up
from app.lab.sandbox.session import utcnow

DEFAULT_SCENARIO = "default"
MAX_SCENARIO_LENGTH = 64

_BASELINE_COLUMNS = dict(
    id=String(),
    experiment_id=String(),
    scenario=String(),
    average_cost=Float(),
    total_tokens=Integer(),
    average_latency_ms=Integer(),
    call_count=Integer(),
    created_at=DateTime(timezone=True),
)

_UPSERT_SQL = text(
    """
    INSERT INTO lab_baselines (
        id, experiment_id, scenario, average_cost,
        total_tokens, average_latency_ms, call_count, created_at
    ) VALUES (
        :id, :experiment_id, :scenario, :average_cost,
        :total_tokens, :average_latency_ms, :call_count, :created_at
    )
    ON CONFLICT (experiment_id, scenario)
    DO UPDATE SET
        average_cost = excluded.average_cost,
        total_tokens = excluded.total_tokens,
        average_latency_ms = excluded.average_latency_ms,
        call_count = excluded.call_count,
        created_at = excluded.created_at
    """
).bindparams(bindparam("created_at", type_=DateTime(timezone=True)))

_SELECT_ONE_SQL = text(
    """
    SELECT id, experiment_id, scenario, average_cost, total_tokens,
           average_latency_ms, call_count, created_at
    FROM lab_baselines
    WHERE experiment_id = :experiment_id AND scenario = :scenario
    LIMIT 1
    """
).columns(**_BASELINE_COLUMNS)

_LIST_SQL = text(
    """
    SELECT id, experiment_id, scenario, average_cost, total_tokens,
           average_latency_ms, call_count, created_at
    FROM lab_baselines
    WHERE experiment_id = :experiment_id
    ORDER BY created_at DESC
    """
).columns(**_BASELINE_COLUMNS)

_LINK_EXPERIMENT_SQL = text("UPDATE lab_experiments SET baseline_id = :baseline_id WHERE id = :experiment_id")


def normalize_scenario(scenario: Optional[str]) -> str:
    normalized = (scenario or "").strip().lower() or DEFAULT_SCENARIO
    if len(normalized) > MAX_SCENARIO_LENGTH:
        raise ValueError(f"Scenario names must be between 1 and {MAX_SCENARIO_LENGTH} characters")
    return normalized


class BaselineManager:
    """
    实验基线管理

    - 同一 (experiment_id, scenario) 重复创建会覆盖旧值（upsert）
    - default 场景的基线会回写到 lab_experiments.baseline_id
    """

    def __init__(self, db: Queryable):
        self._db = db

    def create_baseline(
        self,
        experiment_id: str,
        calls: Sequence[APICallRecord],
        scenario: Optional[str] = None,
    ) -> Baseline:
        if not calls:
            raise ValueError("At least one API call is required to create a baseline")

        normalized = normalize_scenario(scenario)
        metrics = _calculate_metrics(calls)

        self._db.query(
            _UPSERT_SQL,
            {
                "id": str(uuid.uuid4()),
                "experiment_id": experiment_id,
                "scenario": normalized,
                "created_at": utcnow(),
                **metrics,
            },
        )
        # upsert 命中冲突时 id 保持旧值，需回查
        baseline = self.get_baseline(experiment_id, normalized)

        if normalized == DEFAULT_SCENARIO:
            self._db.query(
                _LINK_EXPERIMENT_SQL,
                {"baseline_id": baseline.id, "experiment_id": experiment_id},
            )

        logger.info(
            f"[BaselineManager] 基线已保存: experiment={experiment_id}, scenario={normalized}, "
            f"calls={metrics['call_count']}, avg_cost={metrics['average_cost']}"
        )
        return baseline

    def get_baseline(self, experiment_id: str, scenario: str = DEFAULT_SCENARIO) -> Optional[Baseline]:
        rows = self._db.query(
            _SELECT_ONE_SQL,
            {"experiment_id": experiment_id, "scenario": normalize_scenario(scenario)},
        )
        return _map_row(rows[0]) if rows else None

    def list_baselines(self, experiment_id: str) -> list[Baseline]:
        rows = self._db.query(_LIST_SQL, {"experiment_id": experiment_id})
        return [_map_row(row) for row in rows]


def _calculate_metrics(calls: Iterable[APICallRecord]) -> dict[str, Any]:
    call_count = 0
    total_cost = 0.0
    total_tokens = 0
    total_latency = 0
    for call in calls:
        call_count += 1
        total_cost += call.cost
        total_tokens += call.input_tokens + call.output_tokens + call.system_tokens
        total_latency += call.latency_ms

    return {
        "average_cost": round(total_cost / call_count, 6),
        "total_tokens": total_tokens,
        "average_latency_ms": round_half_up(total_latency / call_count),
        "call_count": call_count,
    }


def _map_row(row: dict[str, Any]) -> Baseline:
    return Baseline(
        id=row["id"],
        experiment_id=row["experiment_id"],
        scenario=row["scenario"],
        average_cost=float(row["average_cost"]),
        total_tokens=int(row["total_tokens"]),
        average_latency_ms=int(row["average_latency_ms"]),
        call_count=int(row["call_count"]),
        created_at=row.get("created_at"),
    )
