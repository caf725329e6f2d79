"""
Pace tables and actor movement stats.

Two independent pace models are used:

- Incidental movement (a non-Move action is planned): four tiers of the
  effective BMR, Creep 1/8 .. Run 3/4, each with a fixed penalty.
- Explicit Move: the round total is classified against BMR multiplier
  bands, Creep 0.5x .. Dash 5x.
"""
from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


MOVE_EPS_FT = 0.05
LIGHT_LOAD_FRACTION = 0.15


# ===== 附带移动（非 Move 动作） =====

class PhasePaceRow(BaseModel):
    pace: str
    frac: float
    penalty: int
    penalty_text: str


PHASE_PACE_TABLE: Tuple[PhasePaceRow, ...] = (
    PhasePaceRow(pace="Creep", frac=1 / 8, penalty=0, penalty_text="—"),
    PhasePaceRow(pace="Walk", frac=1 / 4, penalty=-25, penalty_text="-25"),
    PhasePaceRow(pace="Jog", frac=1 / 2, penalty=-50, penalty_text="-50"),
    PhasePaceRow(pace="Run", frac=3 / 4, penalty=-75, penalty_text="-75"),
)


def phase_pace_index(pace: Optional[str]) -> int:
    name = str(pace or "").strip().lower()
    for idx, row in enumerate(PHASE_PACE_TABLE):
        if row.pace.lower() == name:
            return idx
    return 3


def normalize_phase_cap_pace(pace: Optional[str]) -> str:
    """Anything faster than Run still caps incidental movement at Run."""
    name = normalize_pace_name(pace)
    if name in ("Creep", "Walk", "Jog", "Run"):
        return name
    return "Run"


def phase_pace_cap_frac(pace: Optional[str]) -> float:
    for row in PHASE_PACE_TABLE:
        if row.pace == str(pace or "Run"):
            return row.frac
    return 0.75


def min_phase_cap_pace(a: str, b: str) -> str:
    return a if phase_pace_index(a) <= phase_pace_index(b) else b


def compute_incidental_cap_pace(
    default_cap: str = "Run",
    load_max_pace: Optional[str] = None,
    conc_on_count: int = 0,
) -> str:
    cap = normalize_phase_cap_pace(default_cap)
    if load_max_pace:
        cap = min_phase_cap_pace(cap, normalize_phase_cap_pace(load_max_pace))
    if conc_on_count >= 2:
        cap = "Creep"
    return cap


def infer_phase_pace_penalty(used_ft: float, bmr_effective: float, cap_pace: str = "Run") -> PhasePaceRow:
    """Slowest tier (up to ``cap_pace``) whose threshold accommodates ``used_ft``."""
    used = max(0.0, float(used_ft or 0))
    bmr = max(0.0, float(bmr_effective or 0))
    cap_idx = phase_pace_index(cap_pace)
    if not bmr > 0:
        return PhasePaceRow(pace="—", frac=0.0, penalty=0, penalty_text="—")
    for row in PHASE_PACE_TABLE[: cap_idx + 1]:
        if used <= row.frac * bmr + MOVE_EPS_FT:
            return row
    return PHASE_PACE_TABLE[cap_idx]


# ===== 回合总距离（Move 动作） =====

PACE_ORDER: Tuple[str, ...] = ("Creep", "Walk", "Jog", "Run", "Sprint", "Dash")

_PACE_MULTIPLIERS: Dict[str, float] = {
    "Creep": 0.5,
    "Walk": 1,
    "Jog": 2,
    "Run": 3,
    "Sprint": 4,
    "Dash": 5,
}


def normalize_pace_name(raw: Any) -> str:
    text = str(raw if raw is not None else "").strip().lower()
    if not text:
        return ""
    if "creep" in text:
        return "Creep"
    if "walk" in text:
        return "Walk"
    if "jog" in text:
        return "Jog"
    if "dash" in text or "dead run" in text or "flat out" in text or "run fast" in text:
        return "Dash"
    if "run" in text:
        return "Run"
    if "sprint" in text:
        return "Sprint"
    return text[:1].upper() + text[1:]


def pace_order_index(pace: Optional[str]) -> int:
    try:
        return PACE_ORDER.index(pace)
    except ValueError:
        return 999


def pace_multiplier(pace: Optional[str]) -> Optional[float]:
    return _PACE_MULTIPLIERS.get(normalize_pace_name(pace))


def cap_multiplier_for_bmr_table(dash_ok: bool, max_pace: Optional[str]) -> float:
    """
    Round cap as a multiple of BMR: Dash 5x when permitted, else Sprint 4x,
    further limited by a load-derived max pace. A reported Sprint cap does not
    block Dash once Dash is otherwise permitted.
    """
    cap = 5.0 if dash_ok else 4.0
    mult = pace_multiplier(max_pace)
    if mult is not None and mult > 0 and not (dash_ok and mult == 4):
        cap = min(cap, mult)
    return cap


class PaceClassification(BaseModel):
    pace: str
    mult: float
    cap_ft: float
    cap_mult: float


def infer_pace_from_bmr_table(
    dist_total: float,
    bmr: float,
    dash_ok: bool,
    max_pace: Optional[str] = None,
) -> PaceClassification:
    cap_mult = cap_multiplier_for_bmr_table(bool(dash_ok), max_pace)
    valid_bmr = bmr is not None and math.isfinite(bmr) and bmr > 0
    cap_ft = bmr * cap_mult if valid_bmr else 0.0

    if dist_total is None or not math.isfinite(dist_total) or dist_total <= 0 or not valid_bmr:
        return PaceClassification(pace="Walk", mult=1, cap_ft=cap_ft, cap_mult=cap_mult)
    if cap_mult <= 0.5 + 1e-9:
        return PaceClassification(pace="Creep", mult=0.5, cap_ft=cap_ft, cap_mult=cap_mult)

    bands = [(p, m) for p, m in _PACE_MULTIPLIERS.items() if m <= cap_mult + 1e-9]
    chosen = bands[0]
    for pace, mult in bands:
        chosen = (pace, mult)
        if dist_total <= bmr * mult + MOVE_EPS_FT:
            break
    return PaceClassification(pace=chosen[0], mult=chosen[1], cap_ft=cap_ft, cap_mult=cap_mult)


# ===== 角色移动数据 =====

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

_PER_PHASE_FIELDS = (
    "perPhase", "perPhaseDistance", "per_phase", "phaseDistance", "distancePerPhase",
    "perPhaseFt", "perPhaseFeet", "phase", "pp",
)
_PENALTY_FIELDS = (
    "penalty", "penaltyAP", "penaltyAp", "apCost", "AP", "ap", "modifier", "mod", "malus", "pen", "notes", "note",
)
_LOAD_FRACTION_FIELDS = (
    "loadFraction", "loadRatio", "loadPercent", "loadPct", "pctLoad", "encumbrancePct",
)
_ENCUMBRANCE_FIELDS = ("percent", "pct", "loadPercent", "loadPct", "carriedPct", "ratio")


def to_num_or_none(value: Any) -> Optional[float]:
    """Parse numbers, tolerating unit-suffixed strings such as ``"20 ft"``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = _NUMBER_RE.search(value.strip().replace(",", ""))
        if not match:
            return None
        number = float(match.group(0))
        return number if math.isfinite(number) else None
    return None


def _first_number(*candidates: Any) -> Optional[float]:
    """First candidate that parses; unparseable values fall through to the next."""
    for candidate in candidates:
        number = to_num_or_none(candidate)
        if number is not None:
            return number
    return None


def _read_per_phase(entry: Dict[str, Any]) -> Optional[float]:
    for name in _PER_PHASE_FIELDS:
        if name in entry:
            number = to_num_or_none(entry[name])
            if number is not None:
                return number
    for name, value in entry.items():
        lowered = str(name).lower()
        if "perphase" in lowered or "phase" in lowered or lowered == "pp":
            number = to_num_or_none(value)
            if number is not None:
                return number
    return None


def _read_penalty_text(entry: Dict[str, Any]) -> str:
    for name in _PENALTY_FIELDS:
        if name in entry:
            return str(entry[name] if entry[name] is not None else "").strip()
    for name, value in entry.items():
        lowered = str(name).lower()
        if "penal" in lowered or "apcost" in lowered or "modifier" in lowered or lowered in ("ap", "mod", "malus"):
            return str(value if value is not None else "").strip()
    return ""


class PaceRate(BaseModel):
    """一行配速数据"""

    pace: str
    per_phase: float
    penalty_text: str = ""
    allowed: bool = True
    blocked: bool = False


def _matches_selected(option: Any, selected: Any) -> bool:
    if not isinstance(option, dict):
        return False
    wanted = str(selected).lower()
    for name in ("value", "label", "name", "key", "type", "mode"):
        value = option.get(name)
        if value is not None and str(value).lower() == wanted:
            return True
    return False


def resolve_movement_option(block: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Pick the selected movement option out of a list- or dict-shaped ``options``."""
    selected = block.get("selected")
    options = block.get("options")
    if isinstance(options, list):
        index = to_num_or_none(selected)
        if index is not None and 0 <= index < len(options) and index == int(index):
            return options[int(index)], None
        if selected is not None:
            return next((o for o in options if _matches_selected(o, selected)), None), None
    elif isinstance(options, dict) and selected is not None:
        if selected in options:
            return options[selected], str(selected)
        wanted = str(selected).lower()
        for key, option in options.items():
            if str(key).lower() == wanted or _matches_selected(option, selected):
                return option, str(key)
    return None, None


class ActorMovementStats(BaseModel):
    """
    角色移动数据

    ``raw_rates`` keeps the pace table as reported; ``pace_rates()`` applies
    the Dash gate, the max pace cap and the BMR fallback.
    """

    bmr: Optional[float] = None
    option_label: str = "Movement"
    max_pace: Optional[str] = None
    raw_rates: List[PaceRate] = Field(default_factory=list)
    load_fraction: Optional[float] = None
    carried_weight: Optional[float] = None
    body_weight: Optional[float] = None

    @classmethod
    def from_movement_block(cls, block: Optional[Dict[str, Any]], actor_system: Optional[Dict[str, Any]] = None) -> "ActorMovementStats":
        if not isinstance(block, dict):
            return cls(option_label="Unknown")
        system = actor_system or {}
        option, option_key = resolve_movement_option(block)
        opt = option if isinstance(option, dict) else {}

        label = next(
            (v for v in (opt.get("label"), opt.get("name"), opt.get("value"), option_key, block.get("selected")) if v is not None),
            "Movement",
        )
        raw_max = opt.get("maxPace") or block.get("maxPace")
        rates_src = opt.get("paceRates") if isinstance(opt.get("paceRates"), list) else block.get("paceRates")

        rates: List[PaceRate] = []
        for entry in rates_src if isinstance(rates_src, list) else []:
            if not isinstance(entry, dict):
                continue
            pace = normalize_pace_name(entry.get("name") or entry.get("pace") or entry.get("label"))
            if not pace:
                continue
            per_phase = _read_per_phase(entry)
            if per_phase is None:
                continue
            blocked = (
                entry.get("maxPaceReached") is True
                or entry.get("blocked") is True
                or entry.get("allowed") is False
                or entry.get("disabled") is True
            )
            rates.append(PaceRate(
                pace=pace,
                per_phase=per_phase,
                penalty_text=_read_penalty_text(entry),
                blocked=blocked,
            ))

        encumbrance = system.get("encumbrance") if isinstance(system.get("encumbrance"), dict) else {}
        enc_value = encumbrance.get("value") if isinstance(encumbrance.get("value"), dict) else {}
        load_raw = _first_number(
            *(opt.get(name) for name in _LOAD_FRACTION_FIELDS),
            *(block.get(name) for name in _LOAD_FRACTION_FIELDS[:5]),
            *(encumbrance.get(name) for name in _ENCUMBRANCE_FIELDS),
            enc_value.get("percent"),
            enc_value.get("pct"),
        )

        weight = system.get("weight")
        body_weight = _first_number(
            opt.get("bodyWeight"), opt.get("weight"),
            block.get("bodyWeight"), block.get("weight"),
            weight.get("value") if isinstance(weight, dict) else weight,
        )
        carried = _first_number(
            opt.get("currentLoad"), opt.get("carried"),
            block.get("currentLoad"), block.get("load"), block.get("carried"),
            encumbrance.get("carried"),
        )

        return cls(
            bmr=to_num_or_none(block.get("bmr")),
            option_label=str(label).strip(),
            max_pace=normalize_pace_name(raw_max) if raw_max else None,
            raw_rates=rates,
            load_fraction=normalize_load_fraction(load_raw),
            carried_weight=carried,
            body_weight=body_weight,
        )

    # ── 负重判定 ──

    def dash_eligible_by_load(self) -> bool:
        """Carried load at or under 15% of body weight; unknown load is permitted."""
        if self.load_fraction is not None:
            return self.load_fraction <= LIGHT_LOAD_FRACTION
        carried, body = self.carried_weight, self.body_weight
        if carried is None or body is None or carried <= 0 or body <= 0:
            return True
        return carried / body <= LIGHT_LOAD_FRACTION

    def light_load_at_most_15(self) -> bool:
        """Strict check for the 1.25x Move boost."""
        if self.load_fraction is not None:
            return self.load_fraction <= LIGHT_LOAD_FRACTION
        carried, body = self.carried_weight, self.body_weight
        if carried is not None and body is not None and carried >= 0 and body > 0:
            return carried / body <= LIGHT_LOAD_FRACTION
        return self._light_load_from_option()

    def _light_load_from_option(self) -> bool:
        if self.max_pace == "Dash":
            return True
        dash = next((r for r in self.raw_rates if r.pace == "Dash"), None)
        if dash is None or dash.blocked:
            return False
        return dash.per_phase > 0

    # ── 配速表 ──

    def pace_rates(self) -> List[PaceRate]:
        eligible = self.dash_eligible_by_load()
        rates: List[PaceRate] = []
        for rate in self.raw_rates:
            allowed = True
            if rate.pace == "Dash" and (rate.blocked or rate.per_phase <= 0 or not eligible):
                allowed = False
            rates.append(rate.model_copy(update={"allowed": allowed}))

        if self.max_pace:
            cap_idx = pace_order_index(self.max_pace)
            rates = [r for r in rates if pace_order_index(r.pace) <= cap_idx]
        if not rates and self.bmr is not None:
            rates = [PaceRate(pace="Walk", per_phase=self.bmr)]
        return sorted(rates, key=lambda r: r.per_phase)

    def dash_rate(self) -> Optional[PaceRate]:
        return next((r for r in self.pace_rates() if r.pace == "Dash" and r.allowed and r.per_phase > 0), None)


def normalize_load_fraction(value: Optional[float]) -> Optional[float]:
    """0.15, 15 and "15%" all mean fifteen percent."""
    if value is None or not math.isfinite(value):
        return None
    if value > 1.5:
        value = value / 100
    return max(0.0, min(10.0, value))
