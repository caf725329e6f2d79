"""
API 路由包
"""
from .combat_plans import router as combat_plans_router

__all__ = [
    "combat_plans_router",
]
