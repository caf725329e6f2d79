"""Action catalog: built-in defaults plus an optional JSON override.

The catalog never ends up empty. A missing, malformed or empty override
falls back to the defaults, and an override that omits default actions gets
them appended so nothing silently disappears from the selectors.
"""
from __future__ import annotations

import hashlib
import json
import logging
import math
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MOVE_ACTION_KEY = "move-bmr"
NO_ACTION = "none"
INSTANT_AVAILABLE = "available"


class ActionDefinition(BaseModel):
    """单个动作定义（加载后不可变）"""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    min_cost: float = 0.0
    max_cost: float = 0.0
    icon: str = ""

    @property
    def is_range(self) -> bool:
        return self.max_cost > self.min_cost

    @property
    def upper_cost(self) -> float:
        return self.max_cost

    def cost_text(self) -> str:
        if self.min_cost == self.max_cost:
            return _fmt_cost(self.min_cost)
        return f"{_fmt_cost(self.min_cost)}-{_fmt_cost(self.max_cost)}"


def _fmt_cost(value: float) -> str:
    return f"{value:g}"


# ===== 内置默认动作 =====

DEFAULT_ACTIONS: Tuple[Dict[str, Any], ...] = (
    {"key": "drop-item", "label": "Drop Item (Instant)", "min_cost": 0, "max_cost": 0, "icon": "fa-solid fa-hand"},
    {"key": "shift-item", "label": "Shift Item to Other Hand", "min_cost": 1, "max_cost": 1, "icon": "fa-solid fa-right-left"},
    {"key": "draw-weapon", "label": "Draw Weapon/Item", "min_cost": 1, "max_cost": 1, "icon": "fa-solid fa-hand-sparkles"},
    {"key": "get-item", "label": "Get Item from Ground", "min_cost": 3, "max_cost": 3, "icon": "fa-solid fa-box-open"},
    {"key": MOVE_ACTION_KEY, "label": "Move Your BMR", "min_cost": 1, "max_cost": 1, "icon": "fa-solid fa-person-running"},
    {"key": "maneuver", "label": "Maneuver", "min_cost": 1, "max_cost": 1, "icon": "fa-solid fa-person-walking"},
    {"key": "prone-stand", "label": "Drop Prone / Stand Up", "min_cost": 2, "max_cost": 2, "icon": "fa-solid fa-person-falling"},
    {"key": "mount-dismount", "label": "Mount / Dismount", "min_cost": 4, "max_cost": 4, "icon": "fa-solid fa-horse"},
    {"key": "melee", "label": "Melee", "min_cost": 2, "max_cost": 4, "icon": "fa-solid fa-swords"},
    {"key": "ranged", "label": "Ranged Attack", "min_cost": 1, "max_cost": 3, "icon": "fa-solid fa-bullseye"},
    {"key": "draw-ammo", "label": "Draw Ammo and Load", "min_cost": 1, "max_cost": 1, "icon": "fa-solid fa-boxes-stacked"},
    {"key": "string-bow", "label": "String Bow", "min_cost": 6, "max_cost": 6, "icon": "fa-solid fa-bow-arrow"},
    {"key": "load-light-crossbow", "label": "Load Light or Hand Crossbow", "min_cost": 6, "max_cost": 6, "icon": "fa-solid fa-bow-arrow"},
    {"key": "load-heavy-crossbow", "label": "Load Heavy Crossbow", "min_cost": 14, "max_cost": 14, "icon": "fa-solid fa-bow-arrow"},
    {"key": "full-dodge-block", "label": "Full Dodge / Full Block", "min_cost": 4, "max_cost": 4, "icon": "fa-solid fa-shield"},
    {"key": "cast-spell", "label": "Cast Spell", "min_cost": 2, "max_cost": 4, "icon": "fa-solid fa-wand-sparkles"},
    {"key": "cast-inst", "label": "Cast Instantaneous Spell (Instant)", "min_cost": 0, "max_cost": 0, "icon": "fa-solid fa-bolt-lightning"},
    {"key": "perception", "label": "Perception", "min_cost": 0, "max_cost": 2, "icon": "fa-solid fa-eye"},
    {"key": "eat-drink", "label": "Eat or Drink (Herb/Potion)", "min_cost": 2, "max_cost": 2, "icon": "fa-solid fa-mug-hot"},
    {"key": "pick-lock", "label": "Pick Lock / Disarm Trap", "min_cost": 20, "max_cost": 20, "icon": "fa-solid fa-key"},
)


def default_actions() -> List[ActionDefinition]:
    return [ActionDefinition(**entry) for entry in DEFAULT_ACTIONS]


class ActionCatalog:
    """Ordered, versioned registry of action definitions."""

    def __init__(self, actions: Sequence[ActionDefinition], source: str = "defaults") -> None:
        self._actions: Tuple[ActionDefinition, ...] = tuple(actions)
        self._by_key: Dict[str, ActionDefinition] = {}
        for action in self._actions:
            self._by_key.setdefault(action.key, action)
        self.source = source
        payload = json.dumps([a.model_dump() for a in self._actions], sort_keys=True)
        self.version = hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]

    def __iter__(self) -> Iterator[ActionDefinition]:
        return iter(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    @property
    def actions(self) -> Tuple[ActionDefinition, ...]:
        return self._actions

    def keys(self) -> List[str]:
        return [a.key for a in self._actions]

    def get(self, key: Optional[str]) -> Optional[ActionDefinition]:
        if key is None:
            return None
        return self._by_key.get(key)

    def is_range(self, key: Optional[str]) -> bool:
        action = self.get(key)
        return bool(action and action.is_range)

    def max_upper_cost(self) -> float:
        best = 0.0
        for action in self._actions:
            if math.isfinite(action.max_cost):
                best = max(best, action.max_cost)
        return best

    def instant_keys(self) -> List[str]:
        """Keys of instantaneous actions (minimum cost 0)."""
        return [a.key for a in self._actions if a.min_cost == 0]

    def for_phase_selectors(self) -> "ActionCatalog":
        """
        Catalog as seen by phase slots.

        Instantaneous actions cost at least one slot when planned into a phase,
        so ``min_cost`` 0 becomes 1 and ``max_cost`` becomes ``max(1, max_cost)``.
        """
        adjusted = []
        for action in self._actions:
            if action.min_cost == 0:
                action = action.model_copy(update={"min_cost": 1.0, "max_cost": max(1.0, action.max_cost)})
            adjusted.append(action)
        return ActionCatalog(adjusted, source=self.source)

    def label_for(self, key: Optional[str]) -> str:
        """History label: blanks show as "-", unknown keys show verbatim."""
        text = str(key if key is not None else NO_ACTION)
        if not text or text in (NO_ACTION, "-"):
            return "-"
        if text == MOVE_ACTION_KEY:
            return "Move Your BMR"
        action = self.get(text)
        return action.label if action else text


class CatalogLoadResult(BaseModel):
    """Outcome of loading the catalog, so callers can tell which path was taken."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    catalog: ActionCatalog
    used_defaults: bool
    errors: List[str] = Field(default_factory=list)
    merged_default_keys: List[str] = Field(default_factory=list)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _first_present(entry: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if entry.get(name) is not None:
            return entry[name]
    return None


def _clean_entry(index: int, entry: Any, errors: List[str]) -> Optional[ActionDefinition]:
    if not isinstance(entry, dict):
        errors.append(f"entry {index}: not an object")
        return None
    key = str(entry.get("key") if entry.get("key") is not None else "").strip()
    label = str(entry.get("label") if entry.get("label") is not None else "").strip()
    if not key or not label:
        errors.append(f"entry {index}: key and label are required")
        return None

    raw_min = _first_present(entry, "minCost", "min_cost", "cost")
    min_cost = _to_number(raw_min) if raw_min is not None else 0.0
    raw_max = _first_present(entry, "maxCost", "max_cost", "cost")
    max_cost = _to_number(raw_max) if raw_max is not None else min_cost
    if not math.isfinite(min_cost) or not math.isfinite(max_cost):
        errors.append(f"entry {index} ({key}): costs must be finite numbers")
        return None

    icon = entry.get("icon")
    return ActionDefinition(
        key=key,
        label=label,
        min_cost=max(0.0, min_cost),
        max_cost=max(0.0, max_cost),
        icon=str(icon if icon is not None else "").strip(),
    )


def load_action_catalog(raw: Any = None) -> CatalogLoadResult:
    """
    Build the catalog from an override (JSON string or list of dicts).

    Never raises: problems are reported through ``errors`` and the defaults
    are used whenever nothing usable survives validation.
    """
    errors: List[str] = []
    parsed: Any = None
    if isinstance(raw, list):
        parsed = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            errors.append(f"invalid JSON: {exc.msg}")
            parsed = None
        if parsed is not None and not isinstance(parsed, list):
            errors.append("override must be a JSON array")
            parsed = None
    elif raw is not None and not isinstance(raw, str):
        errors.append("override must be a JSON string or a list")

    if not parsed:
        if errors:
            logger.info("动作目录覆盖无效，使用默认值: %s", "; ".join(errors))
        return CatalogLoadResult(catalog=ActionCatalog(default_actions()), used_defaults=True, errors=errors)

    cleaned: List[ActionDefinition] = []
    for index, entry in enumerate(parsed):
        action = _clean_entry(index, entry, errors)
        if action is not None:
            cleaned.append(action)

    if not cleaned:
        logger.info("动作目录覆盖没有有效条目，使用默认值")
        return CatalogLoadResult(catalog=ActionCatalog(default_actions()), used_defaults=True, errors=errors)

    seen = {a.key for a in cleaned}
    merged: List[str] = []
    for default in default_actions():
        if default.key in seen:
            continue
        cleaned.append(default)
        merged.append(default.key)

    return CatalogLoadResult(
        catalog=ActionCatalog(cleaned, source="override"),
        used_defaults=False,
        errors=errors,
        merged_default_keys=merged,
    )


# ── 选择器选项 ──

def selector_options(actions: Sequence[ActionDefinition], current: Optional[str]) -> List[Dict[str, Any]]:
    """Options for a phase slot selector: "-" followed by every action with its cost."""
    if not actions:
        actions = default_actions()
    options = [{"value": NO_ACTION, "label": "-", "selected": current in (None, "", NO_ACTION)}]
    for action in actions:
        options.append({
            "value": action.key,
            "label": f"{action.label} ({action.cost_text()})",
            "selected": action.key == current,
        })
    return options


def instant_options(actions: Sequence[ActionDefinition], current: Optional[str]) -> List[Dict[str, Any]]:
    """Options for the per-round instantaneous action selector."""
    if not actions:
        actions = default_actions()
    options = [{
        "value": INSTANT_AVAILABLE,
        "label": "Instantaneous Action Available",
        "selected": current in (None, "", INSTANT_AVAILABLE),
    }]
    for action in actions:
        if action.min_cost != 0:
            continue
        label = "Perception (0) -50" if action.key == "perception" else f"{action.label} ({action.cost_text()})"
        options.append({"value": action.key, "label": label, "selected": action.key == current})
    return options
