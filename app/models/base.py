"""基础 Model 类，统一继承自数据库 Base。"""

from app.core.database import Base  # 实验室表统一从这里拿 Base

__all__ = ["Base"]
