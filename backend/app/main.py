import os
import sys
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 添加当前目录到Python路径
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

# 导入核心配置和日志
from core.config import config
from core.logging import setup_logging

# 导入API路由
from api.routes import create_inference_router, create_model_router, create_server_router
from services.runtime_service import LocalRuntime

# 配置日志（在其他初始化之前）
logger = setup_logging()


def create_app(runtime: Optional[LocalRuntime] = None, startup_settings: Optional[dict] = None) -> FastAPI:
    """
    创建应用

    Args:
        runtime: 本地运行时，默认新建
        startup_settings: 启动设置，默认 {"prewarm_models": config.PREWARM_MODELS}
    """
    runtime = runtime or LocalRuntime()
    if startup_settings is None:
        startup_settings = {"prewarm_models": config.PREWARM_MODELS}

    app = FastAPI(title="Local Inference Runtime API", version="1.0.0")
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册API路由
    app.include_router(create_model_router(runtime))
    app.include_router(create_server_router(runtime))
    app.include_router(create_inference_router(runtime))

    @app.on_event("startup")
    async def startup_event():
        """应用启动事件 - 创建目录、清理下载残留、扫描模型、预热服务"""
        try:
            logger.info("=" * 60)
            logger.info("服务启动中...")
            logger.info("=" * 60)

            config.ensure_dirs()
            results = await runtime.initialize_at_startup(startup_settings)
            for backend, result in results.items():
                logger.info(f"{backend}: {result}")

            logger.info("=" * 60)
            logger.info("服务启动完成")
            logger.info("=" * 60)
        except Exception as e:
            logger.error(f"启动初始化失败: {str(e)}", exc_info=True)

    @app.on_event("shutdown")
    async def shutdown_event():
        """应用关闭事件 - 停止所有服务进程"""
        try:
            await runtime.shutdown()
        except Exception as e:
            logger.error(f"清理资源失败: {str(e)}")

    @app.get("/api/ping")
    async def ping():
        return {"pong": True}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    # 直接传入 app，关闭 reload，确保使用当前文件内定义的应用实例
    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT, reload=False,
                limit_concurrency=50)
