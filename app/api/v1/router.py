# 路由汇总
from fastapi import APIRouter
from app.api.v1.endpoints import lab

api_router = APIRouter()

# 挂载 API 成本优化实验室模块 (访问地址: /api/v1/lab/...)
api_router.include_router(lab.router, prefix="/lab", tags=["API成本优化实验室"])
