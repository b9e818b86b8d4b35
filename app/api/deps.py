# 依赖注入（如获取 DB 会话、实验室服务单例）
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.lab.cost.baseline import BaselineManager
from app.lab.cost.tracker import CostTracker
from app.lab.db import SqlAlchemyQueryable
from app.lab.experiments import ExperimentRepository
from app.lab.progress import ProgressTracker
from app.lab.service import LabService, build_lab_service


# 这是一个生成器函数
def get_db():
    db = SessionLocal()  # 1. 建立连接
    try:
        yield db         # 2. 把连接“借”给接口用（暂停在这里）
    finally:
        db.close()       # 3. 等接口用完了，自动回来执行这一行，关闭连接


# 会话表、Key 保险箱都在进程内存里，整个进程只能有一份
@lru_cache(maxsize=1)
def get_lab_service() -> LabService:
    return build_lab_service(
        resource_limits=settings.resource_limits(),
        encryption_key_hex=settings.LAB_ENCRYPTION_KEY,
        shared_openai_key=settings.LAB_SHARED_OPENAI_KEY or None,
        provider_timeout=settings.LAB_PROVIDER_TIMEOUT_SECONDS,
    )


def get_cost_tracker(db: Session = Depends(get_db)) -> CostTracker:
    return CostTracker(SqlAlchemyQueryable(db))


def get_baseline_manager(db: Session = Depends(get_db)) -> BaselineManager:
    return BaselineManager(SqlAlchemyQueryable(db))


def get_experiment_repository(db: Session = Depends(get_db)) -> ExperimentRepository:
    return ExperimentRepository(SqlAlchemyQueryable(db))


def get_progress_tracker(db: Session = Depends(get_db)) -> ProgressTracker:
    return ProgressTracker(SqlAlchemyQueryable(db))
