"""
Workflow Automation API 主入口
"""
import os
import logging
import uvicorn
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from workflow_automation.api import app


if __name__ == "__main__":
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    reload = os.getenv("API_RELOAD", "false").lower() == "true"
    workers = int(os.getenv("API_WORKERS", "1"))

    if reload:
        # 开发模式
        uvicorn.run(
            "workflow_automation.api:app",
            host=host,
            port=port,
            reload=True,
            log_level="info"
        )
    else:
        # 生产模式
        uvicorn.run(
            app,
            host=host,
            port=port,
            workers=workers,
            log_level="info"
        )
