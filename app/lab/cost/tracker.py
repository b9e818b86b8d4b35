from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from loguru import logger
from sqlalchemy import DateTime, Float, Integer, String, bindparam, text

from app.lab.db import Queryable
from app.lab.entities import APICallRecord, TokenBreakdown
from app.lab.enums import Provider
from app.lab.cost.pricing import calculate_cost
from app.lab.rounding import round_half_up
from app.lab.sandbox.session import utcnow


@dataclass(frozen=True)
class ExperimentCostSummary:
    experiment_id: str
    call_count: int
    total_cost: float
    total_tokens: TokenBreakdown
    average_latency_ms: int


_CALL_COLUMNS = dict(
    id=String(),
    experiment_id=String(),
    session_id=String(),
    provider=String(),
    model=String(),
    input_tokens=Integer(),
    output_tokens=Integer(),
    system_tokens=Integer(),
    cost=Float(),
    latency_ms=Integer(),
    occurred_at=DateTime(timezone=True),
)

_INSERT_CALL_SQL = text(
    """
    INSERT INTO lab_api_calls (
        id, experiment_id, session_id, provider, model,
        input_tokens, output_tokens, system_tokens,
        cost, latency_ms, occurred_at
    ) VALUES (
        :id, :experiment_id, :session_id, :provider, :model,
        :input_tokens, :output_tokens, :system_tokens,
        :cost, :latency_ms, :occurred_at
    )
    """
).bindparams(bindparam("occurred_at", type_=DateTime(timezone=True)))

_SUMMARY_SQL = text(
    """
    SELECT
        COUNT(*) AS call_count,
        COALESCE(SUM(cost), 0) AS total_cost,
        COALESCE(SUM(input_tokens), 0) AS total_input_tokens,
        COALESCE(SUM(output_tokens), 0) AS total_output_tokens,
        COALESCE(SUM(system_tokens), 0) AS total_system_tokens,
        COALESCE(AVG(latency_ms), 0) AS avg_latency_ms
    FROM lab_api_calls
    WHERE experiment_id = :experiment_id
    """
)

_RECENT_SQL = text(
    """
    SELECT id, experiment_id, session_id, provider, model,
           input_tokens, output_tokens, system_tokens,
           cost, latency_ms, occurred_at
    FROM lab_api_calls
    WHERE experiment_id = :experiment_id
    ORDER BY occurred_at DESC
    LIMIT :limit
    """
).columns(**_CALL_COLUMNS)


class CostTracker:
    """
    调用记账

    每次调用计算一次价格并落一行 lab_api_calls；汇总全部交给 SQL 聚合。
    """

    def __init__(self, db: Queryable):
        self._db = db

    def record_call(
        self,
        *,
        experiment_id: str,
        session_id: str,
        provider: Provider,
        model: str,
        tokens: TokenBreakdown,
        latency_ms: int,
        timestamp: Optional[datetime] = None,
    ) -> APICallRecord:
        occurred_at = timestamp or utcnow()
        cost_result = calculate_cost(provider, model, tokens)
        record_id = str(uuid.uuid4())
        provider_value = Provider(provider).value

        self._db.query(
            _INSERT_CALL_SQL,
            {
                "id": record_id,
                "experiment_id": experiment_id,
                "session_id": session_id,
                "provider": provider_value,
                "model": model,
                "input_tokens": tokens.input_tokens,
                "output_tokens": tokens.output_tokens,
                "system_tokens": tokens.system_tokens,
                "cost": cost_result.cost,
                "latency_ms": int(latency_ms),
                "occurred_at": occurred_at,
            },
        )
        logger.debug(
            f"[CostTracker] 记录调用: experiment={experiment_id}, session={session_id}, "
            f"model={model}, tokens={tokens.total}, cost={cost_result.cost}"
        )

        return APICallRecord(
            id=record_id,
            experiment_id=experiment_id,
            session_id=session_id,
            provider=provider_value,
            model=model,
            input_tokens=tokens.input_tokens,
            output_tokens=tokens.output_tokens,
            system_tokens=tokens.system_tokens,
            cost=cost_result.cost,
            latency_ms=int(latency_ms),
            timestamp=occurred_at,
            breakdown=cost_result.breakdown,
        )

    def get_experiment_summary(self, experiment_id: str) -> ExperimentCostSummary:
        rows = self._db.query(_SUMMARY_SQL, {"experiment_id": experiment_id})
        row = rows[0] if rows else {}
        return ExperimentCostSummary(
            experiment_id=experiment_id,
            call_count=int(row.get("call_count") or 0),
            total_cost=float(row.get("total_cost") or 0),
            total_tokens=TokenBreakdown(
                input_tokens=int(row.get("total_input_tokens") or 0),
                output_tokens=int(row.get("total_output_tokens") or 0),
                system_tokens=int(row.get("total_system_tokens") or 0),
            ),
            average_latency_ms=round_half_up(float(row.get("avg_latency_ms") or 0)),
        )

    def get_recent_calls(self, experiment_id: str, limit: int = 50) -> list[APICallRecord]:
        rows = self._db.query(_RECENT_SQL, {"experiment_id": experiment_id, "limit": int(limit)})
        return [_map_row(row) for row in rows]


def _map_row(row: dict[str, Any]) -> APICallRecord:
    tokens = TokenBreakdown(
        input_tokens=int(row["input_tokens"]),
        output_tokens=int(row["output_tokens"]),
        system_tokens=int(row["system_tokens"]),
    )
    breakdown = calculate_cost(row["provider"], row["model"], tokens).breakdown
    return APICallRecord(
        id=row["id"],
        experiment_id=row["experiment_id"],
        session_id=row["session_id"],
        provider=row["provider"],
        model=row["model"],
        input_tokens=tokens.input_tokens,
        output_tokens=tokens.output_tokens,
        system_tokens=tokens.system_tokens,
        cost=float(row["cost"]),
        latency_ms=int(row["latency_ms"]),
        timestamp=row["occurred_at"],
        breakdown=breakdown,
    )
