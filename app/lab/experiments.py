from __future__ import annotations

import uuid
from typing import Any, Optional

from loguru import logger
from sqlalchemy import DateTime, String, bindparam, text

from app.lab.db import Queryable
from app.lab.entities import Experiment
from app.lab.enums import ExperimentStatus
from app.lab.sandbox.session import utcnow

_EXPERIMENT_COLUMNS = dict(
    id=String(),
    user_id=String(),
    name=String(),
    description=String(),
    status=String(),
    baseline_id=String(),
    created_at=DateTime(timezone=True),
)

_INSERT_SQL = text(
    """
    INSERT INTO lab_experiments (id, user_id, name, description, status, created_at, updated_at)
    VALUES (:id, :user_id, :name, :description, :status, :created_at, :created_at)
    """
).bindparams(bindparam("created_at", type_=DateTime(timezone=True)))

_SELECT_SQL = text(
    """
    SELECT id, user_id, name, description, status, baseline_id, created_at
    FROM lab_experiments
    WHERE id = :id
    """
).columns(**_EXPERIMENT_COLUMNS)

_UPDATE_STATUS_SQL = text(
    "UPDATE lab_experiments SET status = :status, updated_at = :updated_at WHERE id = :id"
).bindparams(bindparam("updated_at", type_=DateTime(timezone=True)))


class ExperimentRepository:
    """lab_experiments 的薄封装：调用记录与基线都挂在实验下面"""

    def __init__(self, db: Queryable):
        self._db = db

    def create_experiment(self, user_id: str, name: str, description: Optional[str] = None) -> Experiment:
        name = (name or "").strip()
        if not name:
            raise ValueError("Experiment name is required")

        experiment_id = str(uuid.uuid4())
        self._db.query(
            _INSERT_SQL,
            {
                "id": experiment_id,
                "user_id": user_id,
                "name": name,
                "description": description,
                "status": ExperimentStatus.draft.value,
                "created_at": utcnow(),
            },
        )
        logger.info(f"[ExperimentRepository] 创建实验: experiment={experiment_id}, user={user_id}")
        return self.get_experiment(experiment_id)

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        rows = self._db.query(_SELECT_SQL, {"id": experiment_id})
        return _map_row(rows[0]) if rows else None

    def update_status(self, experiment_id: str, status: ExperimentStatus) -> Optional[Experiment]:
        self._db.query(
            _UPDATE_STATUS_SQL,
            {"id": experiment_id, "status": ExperimentStatus(status).value, "updated_at": utcnow()},
        )
        return self.get_experiment(experiment_id)


def _map_row(row: dict[str, Any]) -> Experiment:
    return Experiment(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row.get("description"),
        status=ExperimentStatus(row["status"]),
        baseline_id=row.get("baseline_id"),
        created_at=row.get("created_at"),
    )
