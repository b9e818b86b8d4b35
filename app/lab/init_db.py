"""实验室模块建表脚本。

用法：
python -m app.lab.init_db

注意：连接串来自 .env 的 LAB_DATABASE_URL（或 DATABASE_URL），未配置时落到本地 sqlite。
"""

from loguru import logger

from app.core.database import Base, engine

# 确保模型被导入后注册到 Base.metadata
from app.models.lab import LAB_TABLES


def main() -> None:
    Base.metadata.create_all(bind=engine, tables=LAB_TABLES)
    logger.info(f"[lab] tables ensured: {[t.name for t in LAB_TABLES]}")


if __name__ == "__main__":
    main()
