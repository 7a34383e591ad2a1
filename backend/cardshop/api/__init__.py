"""
API 路由注册
"""
from fastapi import APIRouter
from cardshop.api.shop import router as shop_router
from cardshop.api.admin import router as admin_router

api_router = APIRouter(prefix="/api")

# 注册子路由
api_router.include_router(shop_router)
api_router.include_router(admin_router)
