"""
Chain evaluator.

A chain is a run of consecutive sub-slots holding the same action key that
together pay for the action's cost. Two passes share the same window:

- ``evaluate_chains_with_penalty``: per-slot contribution, broke/lost status
  and range-cost shortfall penalty, relative to the evaluation "now".
- ``analyze_chains_for_ui``: per-key indexes (invalid / complete / penalty /
  need) used to decorate individual selectors.

Both are pure functions of their inputs. Unknown action keys contribute
nothing and never raise.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .catalog import ActionCatalog, NO_ACTION
from .phases import EPS, PhaseSlot, base_cap

PENALTY_PER_AP = -25


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _shortfall_penalty(max_cost: float, spent: float) -> Tuple[int, int]:
    steps = round_half_up(max(0.0, max_cost - spent))
    return steps, PENALTY_PER_AP * steps


def _cap_lookup(cap_by_key: Optional[Mapping[str, float]], default: float):
    def cap_for(key: str) -> float:
        if cap_by_key is not None:
            value = cap_by_key.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
        return default
    return cap_for


def _is_costed(catalog: ActionCatalog, key: str) -> bool:
    action = catalog.get(key)
    return bool(key != NO_ACTION and action is not None and action.upper_cost > 0)


@dataclass
class ChainPhaseResult:
    """Per internal slot outcome of the chain scan."""

    contribution: float = 0.0
    broke: bool = False
    penalty: int = 0
    lost: bool = False
    expected_action: str = ""

    def status_label(self) -> str:
        if self.lost:
            return "LOST"
        if self.broke:
            return "BROKEN" if self.penalty != 0 else "LOST"
        if self.contribution > 0:
            return f"+{self.contribution:g} AP"
        return ""


def evaluate_chains_with_penalty(
    phases: Sequence[PhaseSlot],
    plan_actions: Mapping[str, str],
    catalog: ActionCatalog,
    current_round: int,
    current_slot: int,
    cap_by_key: Optional[Mapping[str, float]] = None,
    finish_early: Optional[Mapping[str, bool]] = None,
    concentrating: bool = False,
    budget_per_slot: float = 1.0,
) -> List[ChainPhaseResult]:
    """
    Scan the window once, returning one ``ChainPhaseResult`` per slot.

    Chains only start in slots strictly before (current_round, current_slot).
    A break in a future slot stops the simulation without penalty. A range
    action that already met its minimum ends silently on a gap.
    """
    cap_for = _cap_lookup(cap_by_key, base_cap(concentrating, budget_per_slot))
    cur_slot = int(min(20, max(1, current_slot or 1)))
    cur_round = int(min(9999, max(1, current_round or 1)))
    finish_early = finish_early or {}

    results: List[ChainPhaseResult] = []

    action: Optional[str] = None
    remaining = 0.0
    spent = 0.0
    min_cost = 0.0
    max_cost = 0.0
    is_range = False
    spent_idxs: List[int] = []

    def start_chain(key: str) -> None:
        nonlocal action, remaining, spent, min_cost, max_cost, is_range, spent_idxs
        meta = catalog.get(key)
        action = key
        min_cost = meta.min_cost if meta else 0.0
        max_cost = meta.max_cost if meta else min_cost
        is_range = max_cost > min_cost
        remaining = max_cost if is_range else min_cost
        spent = 0.0
        spent_idxs = []

    def reset_chain() -> None:
        nonlocal action, remaining, spent, min_cost, max_cost, is_range, spent_idxs
        action = None
        remaining = spent = min_cost = max_cost = 0.0
        is_range = False
        spent_idxs = []

    for idx, ph in enumerate(phases):
        is_past = ph.round < cur_round or (ph.round == cur_round and ph.slot < cur_slot)
        is_current = ph.round == cur_round and ph.slot == cur_slot
        is_future = not is_past and not is_current

        km, kb = ph.main_key, ph.bonus_key
        main_sel = plan_actions.get(km, NO_ACTION) or NO_ACTION
        bonus_sel = (plan_actions.get(kb, NO_ACTION) or NO_ACTION) if ph.has_bonus else NO_ACTION

        result = ChainPhaseResult()
        results.append(result)

        if action is None and is_past:
            if _is_costed(catalog, main_sel):
                start_chain(main_sel)
            elif _is_costed(catalog, bonus_sel):
                start_chain(bonus_sel)

        if action is None:
            continue

        contribution = 0.0
        if main_sel == action:
            contribution += cap_for(km)
        if ph.has_bonus and bonus_sel == action:
            contribution += cap_for(kb)
        result.contribution = contribution

        if contribution <= EPS:
            if is_future:
                reset_chain()
                continue
            if is_range and spent + EPS >= min_cost:
                reset_chain()
                continue

            for lost_idx in spent_idxs:
                results[lost_idx].lost = True
            result.broke = True
            result.expected_action = action
            if is_range:
                result.penalty = _shortfall_penalty(max_cost, spent)[1]
            reset_chain()
            continue

        if is_past:
            spent_idxs.append(idx)
        spent += contribution
        remaining -= contribution

        if is_range:
            fin_main = main_sel == action and bool(finish_early.get(km))
            fin_bonus = ph.has_bonus and bonus_sel == action and bool(finish_early.get(kb))
            if fin_main or fin_bonus:
                reset_chain()
                continue

        if remaining <= EPS:
            reset_chain()

    return results


@dataclass
class ChainUIAnalysis:
    """Per-selector decoration derived from the chain scan."""

    invalid: Set[str] = field(default_factory=set)
    complete: Set[str] = field(default_factory=set)
    penalty_text: Dict[str, str] = field(default_factory=dict)
    short: Dict[str, str] = field(default_factory=dict)
    need: Dict[str, str] = field(default_factory=dict)

    def first_complete_in(self, keys: Iterable[str]) -> Optional[str]:
        for key in keys:
            if key in self.complete:
                return key
        return None


@dataclass
class _PhaseEntry:
    ph: PhaseSlot
    km: str
    kb: str
    main_sel: str
    bonus_sel: str


def analyze_chains_for_ui(
    phases: Sequence[PhaseSlot],
    plan_actions: Mapping[str, str],
    catalog: ActionCatalog,
    current_round: int,
    current_slot: int,
    cap_by_key: Optional[Mapping[str, float]] = None,
    finish_early: Optional[Mapping[str, bool]] = None,
    concentrating: bool = False,
    budget_per_slot: float = 1.0,
) -> ChainUIAnalysis:
    """
    Walk the window once per distinct action and index selector states.

    Every chain targets the action's upper cost. Completing a chain resets
    tracking immediately, so the same action picked on the very next sub-slot
    starts a new chain instead of extending the finished one.
    """
    out = ChainUIAnalysis()
    cap_for = _cap_lookup(cap_by_key, base_cap(concentrating, budget_per_slot))
    cur_slot = int(min(20, max(1, current_slot or 1)))
    cur_round = max(1, int(current_round or 1))
    finish_early = finish_early or {}

    entries: List[_PhaseEntry] = []
    for ph in phases:
        main_sel = plan_actions.get(ph.main_key, NO_ACTION) or NO_ACTION
        bonus_sel = (plan_actions.get(ph.bonus_key, NO_ACTION) or NO_ACTION) if ph.has_bonus else NO_ACTION
        entries.append(_PhaseEntry(ph, ph.main_key, ph.bonus_key, main_sel, bonus_sel))

    present: List[str] = []
    for entry in entries:
        for sel in (entry.main_sel, entry.bonus_sel):
            if sel and sel != NO_ACTION and sel not in present:
                present.append(sel)

    def before_current(ph: PhaseSlot) -> bool:
        return ph.round < cur_round or (ph.round == cur_round and ph.slot < cur_slot)

    def is_current(ph: PhaseSlot) -> bool:
        return ph.round == cur_round and ph.slot == cur_slot

    def set_penalty(key: str, spent: float, min_cost: float, max_cost: float) -> None:
        if spent + EPS >= min_cost:
            steps, pen = _shortfall_penalty(max_cost, spent)
            if steps > 0:
                out.penalty_text[key] = str(pen)
            else:
                out.penalty_text.pop(key, None)
        else:
            out.penalty_text.pop(key, None)

    for action_key in present:
        meta = catalog.get(action_key)
        if meta is None:
            continue
        mn, mx = meta.min_cost, meta.max_cost
        target = mx
        if target <= 0:
            continue
        ranged = mx > mn

        chain = {"active": False, "start": None, "end": None, "keys": [], "spent": 0.0}

        def reset() -> None:
            chain.update(active=False, start=None, end=None, keys=[], spent=0.0)

        def begin(ph: PhaseSlot) -> None:
            chain.update(active=True, start=ph, end=ph, keys=[], spent=0.0)

        def finalize() -> None:
            if not chain["active"]:
                return
            if chain["spent"] + EPS >= target:
                reset()
                return
            end_ph = chain["end"] or chain["start"]
            start_ph = chain["start"] or end_ph
            if end_ph is None or start_ph is None:
                reset()
                return

            min_met = ranged and chain["spent"] + EPS >= mn
            if before_current(start_ph) and before_current(end_ph) and not min_met:
                out.invalid.update(chain["keys"])

                right_before = (
                    (end_ph.round == cur_round and end_ph.slot == cur_slot - 1)
                    or (cur_slot == 1 and end_ph.round == cur_round - 1 and end_ph.slot == 4)
                )
                if right_before:
                    cur = next((e for e in entries if is_current(e.ph)), None)
                    if cur is not None:
                        cur_main = cur.main_sel
                        cur_bonus = cur.bonus_sel if cur.ph.has_bonus else NO_ACTION
                        continues = cur_main == action_key or (cur.ph.has_bonus and cur_bonus == action_key)
                        if not continues:
                            out.need[cur.km] = action_key
                            if cur.ph.has_bonus:
                                out.need[cur.kb] = action_key
                            if cur_main != NO_ACTION and cur_main != action_key:
                                out.invalid.add(cur.km)
                            if cur.ph.has_bonus and cur_bonus != NO_ACTION and cur_bonus != action_key:
                                out.invalid.add(cur.kb)
                            if cur_main == NO_ACTION and (not cur.ph.has_bonus or cur_bonus == NO_ACTION):
                                out.invalid.add(cur.km)
            reset()

        def contribute(key: str, ph: PhaseSlot) -> None:
            chain["end"] = ph
            chain["spent"] += cap_for(key)
            if before_current(ph) or is_current(ph):
                chain["keys"].append(key)

            if ranged and finish_early.get(key):
                set_penalty(key, chain["spent"], mn, mx)
                out.complete.add(key)
                reset()
                return
            if ranged:
                set_penalty(key, chain["spent"], mn, mx)
            if chain["spent"] + EPS >= target:
                out.complete.add(key)
                reset()

        for entry in entries:
            keys = []
            if entry.main_sel == action_key:
                keys.append(entry.km)
            if entry.ph.has_bonus and entry.bonus_sel == action_key:
                keys.append(entry.kb)

            if not keys:
                finalize()
                continue
            if not chain["active"]:
                begin(entry.ph)
            for key in keys:
                if not chain["active"]:
                    begin(entry.ph)
                contribute(key, entry.ph)

        finalize()

    for key in out.complete:
        out.invalid.discard(key)
    for key in out.penalty_text:
        out.invalid.discard(key)
    for key in out.short:
        out.invalid.discard(key)
    return out


def aggregate_status(results: Iterable[ChainPhaseResult]) -> str:
    """Status for a displayed phase spanning several internal slots."""
    results = list(results)
    if any(r.lost for r in results):
        return "LOST"
    if any(r.broke for r in results):
        return "BROKEN"
    total = sum(r.contribution for r in results)
    return f"+{total:g} AP" if total > 0 else ""


# ── 旧版自动填充 ──

def apply_autofill_to_plan(
    phases: Sequence[PhaseSlot],
    catalog: ActionCatalog,
    plan_actions: Mapping[str, str],
    plan_auto: Mapping[str, bool],
    plan_costs: Mapping[str, Optional[float]],
    concentrating: bool = False,
    budget_per_slot: float = 1.0,
) -> Tuple[Dict[str, str], Dict[str, bool], Dict[str, Optional[float]]]:
    """
    Re-run forward auto-fill after the bonus sub-slot layout changed.

    Previously auto-filled keys are blanked first. Each manual start slot then
    fills empty sub-slots forward until its minimum cost is paid, stopping at
    the next manual start.
    """
    cap = base_cap(concentrating, budget_per_slot)
    slots: List[str] = []
    for ph in phases:
        slots.extend(ph.keys())

    cleaned: Dict[str, str] = dict(plan_actions)
    auto_prev: Dict[str, bool] = dict(plan_auto)
    costs: Dict[str, Optional[float]] = dict(plan_costs)
    new_auto: Dict[str, bool] = dict(plan_auto)

    for key, was_auto in auto_prev.items():
        if was_auto:
            cleaned[key] = NO_ACTION
            costs[key] = None
            new_auto[key] = False

    for i, start_key in enumerate(slots):
        action_key = cleaned.get(start_key, NO_ACTION)
        if not _is_costed(catalog, action_key):
            continue
        remaining = catalog.get(action_key).min_cost
        costs[start_key] = remaining
        if remaining <= 0:
            continue
        new_auto[start_key] = False

        for j in range(i, len(slots)):
            if remaining <= EPS:
                break
            key = slots[j]
            if j != i:
                ahead = cleaned.get(key, NO_ACTION)
                if _is_costed(catalog, ahead) and not auto_prev.get(key):
                    break
            if cleaned.get(key, NO_ACTION) == NO_ACTION:
                cleaned[key] = action_key
                new_auto[key] = key != start_key
            remaining -= cap

    return cleaned, new_auto, costs
