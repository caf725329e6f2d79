"""Combat planning package."""

from .catalog import MOVE_ACTION_KEY, NO_ACTION, ActionCatalog, ActionDefinition, load_action_catalog
from .phases import PhaseSlot, SlotWindow, build_cap_by_key, build_phases, build_phases_for_analysis
from .chains import ChainPhaseResult, ChainUIAnalysis, analyze_chains_for_ui, evaluate_chains_with_penalty
from .movement import GridGeometry, MoveDecision, MovementGovernor, MovementStore, TokenRef

__all__ = [
    "MOVE_ACTION_KEY",
    "NO_ACTION",
    "ActionCatalog",
    "ActionDefinition",
    "load_action_catalog",
    "PhaseSlot",
    "SlotWindow",
    "build_cap_by_key",
    "build_phases",
    "build_phases_for_analysis",
    "ChainPhaseResult",
    "ChainUIAnalysis",
    "analyze_chains_for_ui",
    "evaluate_chains_with_penalty",
    "GridGeometry",
    "MoveDecision",
    "MovementGovernor",
    "MovementStore",
    "TokenRef",
]
