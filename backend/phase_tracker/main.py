"""
FastAPI 应用入口
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from phase_tracker.config import settings, validate_config
from phase_tracker.dependencies import get_registry
from phase_tracker.routers import combat_plans_router

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# 创建 FastAPI 应用
app = FastAPI(
    title="Phase Tracker API",
    description="战斗阶段规划、动作链与移动预算",
    version="0.1.0",
)

# 配置 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(combat_plans_router, prefix=settings.api_prefix)


@app.on_event("startup")
async def startup_event():
    """应用启动时的初始化"""
    print("=" * 60)
    print("Phase Tracker 启动中...")
    print("=" * 60)

    if validate_config():
        print("✓ 配置验证通过")
    else:
        print("✗ 配置验证失败，请检查环境变量")

    registry = get_registry()
    registry.start_holder()
    print(f"✓ 规划存储: {settings.plan_store_backend}")
    print(f"✓ 动作目录: {registry.catalog.source} ({len(registry.catalog)} actions, v{registry.catalog.version})")
    print("✓ API 文档: http://localhost:8000/docs")
    print("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """应用关闭时的清理"""
    await get_registry().stop_holder()


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": "Phase Tracker API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """健康检查"""
    registry = get_registry()
    return {
        "status": "healthy",
        "combats": registry.list_ids(),
        "catalog_version": registry.catalog.version,
    }

