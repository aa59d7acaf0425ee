"""
MatFlow API 路由模块
"""

from fastapi import APIRouter

from .materials import router as materials_router

# 创建主路由器
api_router = APIRouter()

# 注册核心路由
api_router.include_router(materials_router, prefix="/materials", tags=["Materials"])
