"""
发卡站 - 后端服务入口
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from cardshop.core.config import get_settings
from cardshop.core.database import init_db
from cardshop.core.exceptions import ErrorCode, ShopError
from cardshop.api import api_router
from cardshop.services.scheduler import start_scheduler, stop_scheduler
from cardshop.core.security import get_current_admin
from fastapi import Depends
from fastapi.openapi.docs import get_swagger_ui_html, get_redoc_html
import logging

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()

# 业务异常 -> HTTP 状态码
ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.PRODUCT_UNAVAILABLE: 404,
    ErrorCode.PRODUCT_NOT_FOUND: 404,
    ErrorCode.CARD_KEY_NOT_FOUND: 404,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.OUT_OF_STOCK: 409,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.NOT_EDITABLE: 409,
    ErrorCode.DUPLICATE_KEY: 409,
    ErrorCode.ORDER_CANCELED: 409,
    ErrorCode.ALREADY_DELIVERED: 409,
    ErrorCode.CORRUPT_CIPHERTEXT: 500,
    ErrorCode.COLLISION_EXHAUSTED: 500,
}

# 数据完整性类错误不向外暴露细节
OPAQUE_ERRORS = {ErrorCode.CORRUPT_CIPHERTEXT, ErrorCode.COLLISION_EXHAUSTED}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时
    logger.info("🚀 正在启动发卡站后端服务...")

    # 初始化数据库
    await init_db()
    logger.info("✅ 数据库初始化完成")

    # 启动定时任务（启动时先清理一次过期预留）
    start_scheduler()
    logger.info("✅ 定时任务已启动")

    yield

    # 关闭时
    stop_scheduler()
    logger.info("👋 服务已关闭")


# 创建 FastAPI 应用
app = FastAPI(
    title="发卡站",
    description="卡密自动发货：库存预留、订单状态机、过期回收",
    version="1.0.0",
    lifespan=lifespan,
    # 禁用默认文档路由（由下方自定义路由接管，并增加密码保护）
    docs_url=None,
    redoc_url=None,
    openapi_url=None
)

# 配置 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由 (API)
app.include_router(api_router)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    """统一的业务异常响应"""
    status_code = ERROR_STATUS.get(exc.code, 400)
    if exc.code in OPAQUE_ERRORS:
        logger.error(f"{request.method} {request.url.path} 失败: {exc.code.value} {exc.message}")
        detail = "服务器内部错误，请联系商家处理"
    else:
        detail = exc.message
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "code": exc.code.value},
    )


# --- 路由：文档安全保护 ---
# 只有通过 Basic Auth 的管理员才能看到文档
# 注意：生产环境 enable_docs 仍然控制是否彻底关闭，如果开启则强制要求密码

if settings.enable_docs:
    @app.get("/docs", include_in_schema=False)
    async def get_swagger_documentation(username: str = Depends(get_current_admin)):
        """受保护的 Swagger UI"""
        return get_swagger_ui_html(openapi_url="/openapi.json", title="API 文档 - 发卡站")

    @app.get("/redoc", include_in_schema=False)
    async def get_redoc_documentation(username: str = Depends(get_current_admin)):
        """受保护的 ReDoc"""
        return get_redoc_html(openapi_url="/openapi.json", title="API 文档 - 发卡站")

    @app.get("/openapi.json", include_in_schema=False)
    async def get_open_api_endpoint(username: str = Depends(get_current_admin)):
        """受保护的 OpenAPI Schema"""
        return app.openapi()


@app.get("/")
async def root():
    """健康检查"""
    return {
        "service": "发卡站",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cardshop.main:app", host=settings.host, port=settings.port, reload=settings.debug)
