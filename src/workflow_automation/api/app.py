"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from typing import Dict, Any

from .routers import workflows, executions, events, scheduler, monitoring
from .middleware import RequestLoggingMiddleware
from .. import __version__
from ..bootstrap import build_components
from ..config import EngineSettings


logger = logging.getLogger(__name__)


# 全局实例
app_state: Dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting Workflow Automation API...")

    # 测试中可以预先放入引擎，跳过数据库初始化
    if app_state.get("engine") is None:
        settings = EngineSettings.from_env()
        app_state.update(await build_components(settings))

    logger.info("Workflow Automation API started successfully")

    yield

    logger.info("Shutting down Workflow Automation API...")

    db_manager = app_state.pop("db_manager", None)
    if db_manager is not None:
        await db_manager.close()
    app_state.clear()

    logger.info("Workflow Automation API shut down successfully")


# 创建FastAPI应用
app = FastAPI(
    title="Workflow Automation API",
    description="记录驱动的工作流自动化引擎 RESTful API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

# 注册路由
app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
app.include_router(events.router, prefix="/api/v1/events", tags=["events"])
app.include_router(scheduler.router, prefix="/api/v1/scheduler", tags=["scheduler"])
app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])


# 全局异常处理
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """全局异常处理器"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request.state.request_id if hasattr(request.state, "request_id") else None
        }
    )


@app.get("/", tags=["root"])
async def root():
    """API根路径"""
    return {
        "name": "Workflow Automation API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
        "health": "/api/v1/monitoring/health"
    }


def get_app_state() -> Dict[str, Any]:
    """获取应用状态"""
    return app_state
