"""
战斗规划数据模型

每个战斗参与者一份 CombatantPlan，保存在战斗状态的
``combatants.<combatant_id>`` 路径下；状态的其余部分是 ``meta``。
"""
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from ..catalog import INSTANT_AVAILABLE, NO_ACTION

# 专注类开关（最多同时开启 2 个，由写入边界保证）
CONC_FLAG_NAMES: Tuple[str, ...] = (
    "concentration",
    "hold_position",
    "partial_dodge_block",
    "spell_preparation",
    "hold_action",
)
IMMEDIATE_CONC_FLAGS: Tuple[str, ...] = CONC_FLAG_NAMES[:4]
MAX_ACTIVE_CONC_FLAGS = 2


class ConcentrationFlags(BaseModel):
    """专注类开关"""

    concentration: bool = False
    hold_position: bool = False
    partial_dodge_block: bool = False
    spell_preparation: bool = False
    hold_action: bool = False

    def count_on(self) -> int:
        return sum(1 for name in CONC_FLAG_NAMES if getattr(self, name))

    def any_immediate(self) -> bool:
        return any(getattr(self, name) for name in IMMEDIATE_CONC_FLAGS)

    def is_on(self, name: str) -> bool:
        return bool(getattr(self, name, False))

    def with_flag(self, name: str, value: bool) -> "ConcentrationFlags":
        if name not in CONC_FLAG_NAMES:
            raise ValueError(f"unknown concentration flag: {name}")
        return self.model_copy(update={name: bool(value)})


class HoldActionMeta(BaseModel):
    """Hold Action 元数据（仅在 hold_action 开启时有值）"""

    pending_key: Optional[str] = None
    held_label: Optional[str] = None
    held_action: Optional[str] = None


class CombatantPlan(BaseModel):
    """单个参与者的规划状态"""

    # ===== 基础信息 =====
    bonus_count: int = 0
    instant_action: str = INSTANT_AVAILABLE

    # ===== 专注 =====
    conc_flags: ConcentrationFlags = Field(default_factory=ConcentrationFlags)
    concentrating: Optional[bool] = None  # 旧版布尔值，映射到 concentration
    hold_action: HoldActionMeta = Field(default_factory=HoldActionMeta)

    # ===== 槽位规划 =====
    plan_actions: Dict[str, str] = Field(default_factory=dict)
    plan_auto: Dict[str, bool] = Field(default_factory=dict)
    plan_costs: Dict[str, Optional[float]] = Field(default_factory=dict)
    finish_early: Dict[str, bool] = Field(default_factory=dict)

    # ===== 提醒记录 =====
    mental_focus_start_round: int = 0
    mental_focus_ack_round: int = 0
    endurance_ack_round: int = 0

    @field_validator("bonus_count", mode="before")
    @classmethod
    def _clamp_bonus_count(cls, value: Any) -> int:
        try:
            count = int(float(value))
        except (TypeError, ValueError):
            return 0
        return max(0, min(4, count))

    @field_validator("instant_action", mode="before")
    @classmethod
    def _default_instant(cls, value: Any) -> str:
        if value is None or value == "":
            return INSTANT_AVAILABLE
        return str(value)

    @field_validator("plan_actions", mode="before")
    @classmethod
    def _stringify_actions(cls, value: Any) -> Dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {str(k): (NO_ACTION if v is None else str(v)) for k, v in value.items()}

    @field_validator("conc_flags", "hold_action", mode="before")
    @classmethod
    def _none_to_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("mental_focus_start_round", "mental_focus_ack_round", "endurance_ack_round", mode="before")
    @classmethod
    def _round_or_zero(cls, value: Any) -> int:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0

    def flags(self) -> ConcentrationFlags:
        """Effective flags, honouring the legacy ``concentrating`` boolean."""
        if self.concentrating and not self.conc_flags.concentration:
            return self.conc_flags.with_flag("concentration", True)
        return self.conc_flags

    def action_at(self, key: str) -> str:
        return self.plan_actions.get(key, NO_ACTION) or NO_ACTION

    @property
    def instant_available(self) -> bool:
        return self.instant_action in ("", INSTANT_AVAILABLE)

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]], combatant_id: str) -> "CombatantPlan":
        """Lazily materialise a plan; absent combatants get a default plan."""
        combatants = (state or {}).get("combatants") or {}
        raw = combatants.get(combatant_id) or {}
        return cls.model_validate(raw)


class CombatMeta(BaseModel):
    """战斗级元数据（虚拟回合追踪）"""

    virtual_round: int = 1
    last_phase: Optional[int] = None
    last_phase_count: Optional[int] = None
    last_turn: Optional[int] = None


def empty_combat_state() -> Dict[str, Any]:
    return {"combatants": {}, "meta": {}}


def plan_path(combatant_id: str, field: str) -> str:
    return f"combatants.{combatant_id}.{field}"
