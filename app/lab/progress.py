"""
用户学习进度

每个用户一行 lab_user_progress：完成的实验数、累计节省金额、徽章、挑战、技能等级。
首次读取时自动建行，之后的更新都基于已存在的行。
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import JSON, DateTime, Float, Integer, String, bindparam, text

from app.lab.db import Queryable
from app.lab.entities import UserProgress
from app.lab.sandbox.session import utcnow

DEFAULT_SKILL_LEVEL = 1

_PROGRESS_COLUMNS = dict(
    user_id=String(),
    experiments_completed=Integer(),
    total_cost_savings=Float(),
    badges_earned=JSON(),
    challenges_completed=JSON(),
    skill_level=Integer(),
    last_activity=DateTime(timezone=True),
)

_SELECT_SQL = text(
    """
    SELECT user_id, experiments_completed, total_cost_savings, badges_earned,
           challenges_completed, skill_level, last_activity
    FROM lab_user_progress
    WHERE user_id = :user_id
    """
).columns(**_PROGRESS_COLUMNS)

_INIT_SQL = text(
    """
    INSERT INTO lab_user_progress (
        user_id, experiments_completed, total_cost_savings, badges_earned,
        challenges_completed, skill_level, last_activity
    ) VALUES (
        :user_id, 0, 0, :empty, :empty, :skill_level, :now
    )
    ON CONFLICT (user_id) DO NOTHING
    """
).bindparams(bindparam("empty", type_=JSON()), bindparam("now", type_=DateTime(timezone=True)))

_COMPLETE_EXPERIMENT_SQL = text(
    """
    INSERT INTO lab_user_progress (
        user_id, experiments_completed, total_cost_savings, badges_earned,
        challenges_completed, skill_level, last_activity
    ) VALUES (
        :user_id, 1, :cost_savings, :empty, :empty, :skill_level, :now
    )
    ON CONFLICT (user_id)
    DO UPDATE SET
        experiments_completed = lab_user_progress.experiments_completed + 1,
        total_cost_savings = lab_user_progress.total_cost_savings + :cost_savings,
        last_activity = :now
    """
).bindparams(bindparam("empty", type_=JSON()), bindparam("now", type_=DateTime(timezone=True)))

_UPDATE_BADGES_SQL = text(
    "UPDATE lab_user_progress SET badges_earned = :items, last_activity = :now WHERE user_id = :user_id"
).bindparams(bindparam("items", type_=JSON()), bindparam("now", type_=DateTime(timezone=True)))

_UPDATE_CHALLENGES_SQL = text(
    "UPDATE lab_user_progress SET challenges_completed = :items, last_activity = :now WHERE user_id = :user_id"
).bindparams(bindparam("items", type_=JSON()), bindparam("now", type_=DateTime(timezone=True)))

_UPDATE_SKILL_SQL = text(
    "UPDATE lab_user_progress SET skill_level = :skill_level, last_activity = :now WHERE user_id = :user_id"
).bindparams(bindparam("now", type_=DateTime(timezone=True)))


class ProgressTracker:
    def __init__(self, db: Queryable):
        self._db = db

    def get_progress(self, user_id: str) -> UserProgress:
        rows = self._db.query(_SELECT_SQL, {"user_id": user_id})
        if rows:
            return _map_row(rows[0])

        self._db.query(
            _INIT_SQL,
            {"user_id": user_id, "empty": [], "skill_level": DEFAULT_SKILL_LEVEL, "now": utcnow()},
        )
        return _map_row(self._db.query(_SELECT_SQL, {"user_id": user_id})[0])

    def update_experiment_completed(self, user_id: str, cost_savings: float) -> UserProgress:
        if cost_savings < 0:
            raise ValueError("cost_savings must be non-negative")

        self._db.query(
            _COMPLETE_EXPERIMENT_SQL,
            {
                "user_id": user_id,
                "cost_savings": round(float(cost_savings), 2),
                "empty": [],
                "skill_level": DEFAULT_SKILL_LEVEL,
                "now": utcnow(),
            },
        )
        logger.info(f"[ProgressTracker] 实验完成: user={user_id}, cost_savings={cost_savings}")
        return self.get_progress(user_id)

    def award_badge(self, user_id: str, badge_id: str) -> UserProgress:
        progress = self.get_progress(user_id)
        if badge_id in progress.badges_earned:
            return progress

        self._db.query(
            _UPDATE_BADGES_SQL,
            {"user_id": user_id, "items": [*progress.badges_earned, badge_id], "now": utcnow()},
        )
        logger.info(f"[ProgressTracker] 获得徽章: user={user_id}, badge={badge_id}")
        return self.get_progress(user_id)

    def complete_challenge(self, user_id: str, challenge_id: str) -> UserProgress:
        progress = self.get_progress(user_id)
        if challenge_id in progress.challenges_completed:
            return progress

        self._db.query(
            _UPDATE_CHALLENGES_SQL,
            {"user_id": user_id, "items": [*progress.challenges_completed, challenge_id], "now": utcnow()},
        )
        return self.get_progress(user_id)

    def update_skill_level(self, user_id: str, level: int) -> UserProgress:
        if level < DEFAULT_SKILL_LEVEL:
            raise ValueError(f"skill level must be at least {DEFAULT_SKILL_LEVEL}")

        # 先保证行存在，UPDATE 才有目标
        self.get_progress(user_id)
        self._db.query(_UPDATE_SKILL_SQL, {"user_id": user_id, "skill_level": int(level), "now": utcnow()})
        return self.get_progress(user_id)

    def get_recommendations(self, user_id: str) -> list[str]:
        return recommend(self.get_progress(user_id))


def recommend(progress: UserProgress) -> list[str]:
    """按进度给出下一步建议，顺序固定"""
    recommendations = []
    if progress.experiments_completed == 0:
        recommendations.append("开始第一个实验，了解 API 成本优化的基础")
    if progress.experiments_completed > 0 and not progress.challenges_completed:
        recommendations.append("尝试挑战，检验一下优化技巧")
    if progress.total_cost_savings < 10:
        recommendations.append("试试提示词压缩策略，先拿到第一笔成本节省")
    if len(progress.badges_earned) < 3:
        recommendations.append("多拿几枚徽章，证明你的优化能力")
    if progress.skill_level < 5:
        recommendations.append("学习更高级的优化技巧，提升技能等级")
    return recommendations


def _map_row(row: dict[str, Any]) -> UserProgress:
    return UserProgress(
        user_id=row["user_id"],
        experiments_completed=int(row["experiments_completed"]),
        total_cost_savings=float(row["total_cost_savings"]),
        skill_level=int(row["skill_level"]),
        badges_earned=tuple(row.get("badges_earned") or ()),
        challenges_completed=tuple(row.get("challenges_completed") or ()),
        last_activity=row.get("last_activity"),
    )
