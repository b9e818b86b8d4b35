from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LabExperiment(Base):
    __tablename__ = "lab_experiments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="draft")
    baseline_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class LabAPICall(Base):
    __tablename__ = "lab_api_calls"
    __table_args__ = (
        Index("idx_lab_api_calls_experiment_id", "experiment_id"),
        Index("idx_lab_api_calls_occurred_at", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    experiment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("lab_experiments.id", ondelete="CASCADE")
    )
    session_id: Mapped[str] = mapped_column(String(36))
    provider: Mapped[str] = mapped_column(String(64))
    model: Mapped[str] = mapped_column(String(128))
    input_tokens: Mapped[int] = mapped_column(Integer)
    output_tokens: Mapped[int] = mapped_column(Integer)
    system_tokens: Mapped[int] = mapped_column(Integer)
    cost: Mapped[float] = mapped_column(Numeric(12, 6, asdecimal=False))
    latency_ms: Mapped[int] = mapped_column(Integer)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class LabBaseline(Base):
    """实验基线：同一 (experiment_id, scenario) 只保留一行，重复创建即覆盖。"""

    __tablename__ = "lab_baselines"
    __table_args__ = (
        UniqueConstraint("experiment_id", "scenario", name="uq_lab_baseline_exp_scenario"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    experiment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("lab_experiments.id", ondelete="CASCADE"), index=True
    )
    scenario: Mapped[str] = mapped_column(String(64), default="default")
    average_cost: Mapped[float] = mapped_column(Numeric(12, 6, asdecimal=False))
    total_tokens: Mapped[int] = mapped_column(BigInteger)
    average_latency_ms: Mapped[int] = mapped_column(Integer)
    call_count: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class LabUserProgress(Base):
    __tablename__ = "lab_user_progress"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    experiments_completed: Mapped[int] = mapped_column(Integer, default=0)
    total_cost_savings: Mapped[float] = mapped_column(Numeric(14, 2, asdecimal=False), default=0)
    badges_earned: Mapped[list] = mapped_column(JSON, default=list)
    challenges_completed: Mapped[list] = mapped_column(JSON, default=list)
    skill_level: Mapped[int] = mapped_column(Integer, default=1)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


LAB_TABLES = [
    LabExperiment.__table__,
    LabAPICall.__table__,
    LabBaseline.__table__,
    LabUserProgress.__table__,
]
