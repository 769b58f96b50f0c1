"""
API路由模块初始化
"""
from .model_routes import create_model_router
from .server_routes import create_server_router
from .inference_routes import create_inference_router

__all__ = ['create_model_router', 'create_server_router', 'create_inference_router']
