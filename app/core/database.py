# 数据库连接池生成器
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from app.core.config import settings

# 1. 连接字符串来自 Settings（LAB_DATABASE_URL / DATABASE_URL / .env）
# 本地开发默认落到 sqlite 文件；生产填 postgresql+psycopg2://用户名:密码@地址:端口/数据库名
SQLALCHEMY_DATABASE_URL = settings.LAB_DATABASE_URL

# 2. 创建数据库引擎 (Engine)
# pool_pre_ping=True: 每次从池子里拿连接前，先 ping 一下数据库，确保连接是活的
# sqlite 需要放开 check_same_thread，否则 FastAPI 线程池里会报错
_connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

# 3. SessionLocal 工厂：每次请求由 deps.get_db 产生一个新的数据库会话
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 4. 所有的 Model 都要继承这个 Base
Base = declarative_base()
