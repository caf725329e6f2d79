"""Data models for combat planning."""

from .plan import (
    CONC_FLAG_NAMES,
    IMMEDIATE_CONC_FLAGS,
    MAX_ACTIVE_CONC_FLAGS,
    CombatantPlan,
    CombatMeta,
    ConcentrationFlags,
    HoldActionMeta,
    empty_combat_state,
    plan_path,
)

__all__ = [
    "CONC_FLAG_NAMES",
    "IMMEDIATE_CONC_FLAGS",
    "MAX_ACTIVE_CONC_FLAGS",
    "CombatantPlan",
    "CombatMeta",
    "ConcentrationFlags",
    "HoldActionMeta",
    "empty_combat_state",
    "plan_path",
]
