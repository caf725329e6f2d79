"""
配置管理模块
"""
import logging
import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

# 加载环境变量
load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """应用配置"""

    # Firestore 配置
    google_application_credentials: str = os.getenv(
        "GOOGLE_APPLICATION_CREDENTIALS",
        "./firebase-credentials.json",
    )
    firestore_database: str = os.getenv("FIRESTORE_DATABASE", "(default)")
    plan_collection: str = os.getenv("PHASE_TRACKER_PLAN_COLLECTION", "combat_plans")
    plan_store_backend: Literal["memory", "firestore"] = os.getenv("PHASE_TRACKER_PLAN_STORE", "memory")

    # 规划面板
    rounds_shown: int = int(os.getenv("PHASE_TRACKER_ROUNDS_SHOWN", "1"))
    history_rounds: int = int(os.getenv("PHASE_TRACKER_HISTORY_ROUNDS", "5"))
    ap_per_slot: float = float(os.getenv("PHASE_TRACKER_AP_PER_SLOT", "1"))

    # 动作目录覆盖（JSON 数组，留空使用内置默认值）
    actions_config: str = os.getenv("PHASE_TRACKER_ACTIONS_CONFIG", "")

    # 移动限制
    movement_enforcement: bool = _env_bool("PHASE_TRACKER_MOVEMENT_ENFORCEMENT", "true")

    # API 配置
    api_prefix: str = "/api"
    cors_origins: list = ["*"]

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


# 全局配置实例
settings = Settings()


def validate_config() -> bool:
    """
    验证配置是否完整

    Returns:
        bool: 配置是否有效
    """
    ok = True
    if not 1 <= settings.rounds_shown <= 5:
        logger.warning("PHASE_TRACKER_ROUNDS_SHOWN 超出范围 (1..5): %s", settings.rounds_shown)
        ok = False
    if settings.ap_per_slot <= 0:
        logger.warning("PHASE_TRACKER_AP_PER_SLOT 必须为正数: %s", settings.ap_per_slot)
        ok = False
    if settings.plan_store_backend == "firestore" and not os.path.exists(settings.google_application_credentials):
        logger.warning("Firebase 凭证文件不存在: %s", settings.google_application_credentials)
        ok = False
    return ok
