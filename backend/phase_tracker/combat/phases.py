"""
Phase/slot model.

Every round has exactly four internal slots. A displayed phase covers
``slots_per_phase`` consecutive internal slots, so chain math does not depend
on how many phases the turn-order collaborator shows. Each internal slot has a
main sub-slot and, when the bonus count reaches it, a bonus sub-slot; bonus
sub-slots are granted from the last slot of the round backwards.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .catalog import NO_ACTION
from .models.plan import ConcentrationFlags, HoldActionMeta

INTERNAL_SLOTS = 4
EPS = 1e-9

MAIN = "m"
BONUS = "b"

_SLOT_KEY_RE = re.compile(r"^r(\d+)p(\d+)([mb])$")


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def has_bonus_in_phase(slot: int, bonus_count: int) -> bool:
    """bonus_count=1 gives slot 4 a bonus sub-slot, bonus_count=4 gives all four."""
    threshold = INTERNAL_SLOTS + 1 - clamp(int(bonus_count or 0), 0, INTERNAL_SLOTS)
    return slot >= threshold


def phase_key(round_number: int, slot: int, kind: str) -> str:
    return f"r{round_number}p{slot}{kind}"


def incidental_key(round_number: int, start: int, end: int) -> str:
    return f"i{round_number}p{start}-{end}"


@dataclass(frozen=True)
class SlotKey:
    """(round, internal slot, main|bonus)"""

    round: int
    slot: int
    kind: str = MAIN

    def __str__(self) -> str:
        return phase_key(self.round, self.slot, self.kind)

    @classmethod
    def parse(cls, text: str) -> Optional["SlotKey"]:
        match = _SLOT_KEY_RE.match(str(text or ""))
        if not match:
            return None
        return cls(int(match.group(1)), int(match.group(2)), match.group(3))


@dataclass
class PhaseSlot:
    """One internal slot of the evaluation window."""

    round: int
    slot: int
    has_bonus: bool
    round_offset: int = 0

    @property
    def main_key(self) -> str:
        return phase_key(self.round, self.slot, MAIN)

    @property
    def bonus_key(self) -> str:
        return phase_key(self.round, self.slot, BONUS)

    @property
    def position(self) -> Tuple[int, int]:
        return (self.round, self.slot)

    def keys(self) -> List[str]:
        return [self.main_key, self.bonus_key] if self.has_bonus else [self.main_key]


def build_phases(
    base_round: int,
    rounds_shown: int,
    bonus_count: int,
    phase_count: int = INTERNAL_SLOTS,
) -> List[PhaseSlot]:
    pc = int(clamp(int(phase_count or INTERNAL_SLOTS), 1, 20))
    phases: List[PhaseSlot] = []
    for offset in range(max(0, int(rounds_shown))):
        for slot in range(1, pc + 1):
            phases.append(PhaseSlot(
                round=base_round + offset,
                slot=slot,
                has_bonus=has_bonus_in_phase(slot, bonus_count),
                round_offset=offset,
            ))
    return phases


def build_phases_for_analysis(
    current_round: int,
    rounds_shown: int,
    bonus_count: int,
    max_upper_cost: float,
    plan_actions: Optional[Mapping[str, str]] = None,
    phase_count: int = INTERNAL_SLOTS,
) -> List[PhaseSlot]:
    """
    Window for chain math: enough earlier rounds to cover the longest chain.

    Worst case is concentrating (half capacity per slot), so a chain of cost C
    spans ``ceil(C / 2)`` rounds of four slots. Slots that already recorded a
    bonus selection keep their bonus sub-slot even if the bonus count was
    lowered afterwards.
    """
    current_round = max(1, int(current_round or 1))
    lookback = int(clamp(math.ceil(max_upper_cost / 2), 0, 4))
    base_round = max(1, current_round - lookback)
    offset_to_current = current_round - base_round
    analysis_rounds = int(clamp(offset_to_current + int(rounds_shown or 1), 1, 9))

    phases = build_phases(base_round, analysis_rounds, bonus_count, phase_count)
    if plan_actions:
        for ph in phases:
            value = plan_actions.get(ph.bonus_key, NO_ACTION)
            if value and value != NO_ACTION:
                ph.has_bonus = True
    return phases


def _budget(budget_per_slot: Any) -> float:
    try:
        base = float(budget_per_slot)
    except (TypeError, ValueError):
        return 1.0
    return base if math.isfinite(base) and base > 0 else 1.0


def base_cap(concentrating: bool, budget_per_slot: float = 1.0) -> float:
    b = _budget(budget_per_slot)
    return b / 2 if concentrating else b


def window_keys(phases: Iterable[PhaseSlot]) -> List[str]:
    keys: List[str] = []
    for ph in phases:
        keys.extend(ph.keys())
    return keys


def build_cap_by_key(
    phases: Iterable[PhaseSlot],
    flags: ConcentrationFlags,
    hold_meta: Optional[HoldActionMeta] = None,
    budget_per_slot: float = 1.0,
) -> Dict[str, float]:
    """
    Per-sub-slot action point capacity.

    Any immediate concentration flag halves every slot. Hold Action on its own
    keeps full capacity up to and including the held slot and halves the rest.
    """
    keys = window_keys(phases)
    b = _budget(budget_per_slot)
    immediate_on = flags.any_immediate()
    hold_on = flags.hold_action

    pending_key = hold_meta.pending_key if hold_meta else None
    pending_idx = keys.index(pending_key) if pending_key in keys else -1

    caps: Dict[str, float] = {}
    for idx, key in enumerate(keys):
        cap = b
        if immediate_on:
            cap = b / 2
        elif hold_on:
            if pending_idx >= 0:
                cap = b if idx <= pending_idx else b / 2
            else:
                cap = b / 2
        caps[key] = cap
    return caps


@dataclass(frozen=True)
class SlotWindow:
    """The internal slot range covered by the current displayed phase."""

    round: int
    phase: int
    phase_count: int
    slots_per_phase: int
    start: int
    end: int

    @classmethod
    def from_turn(cls, round_number: int, phase: int, phase_count: int, slots_per_phase: Any) -> "SlotWindow":
        round_number = max(1, int(round_number or 1))
        pc = int(clamp(int(phase_count or INTERNAL_SLOTS), 1, 20))
        try:
            spp = int(clamp(int(float(slots_per_phase)), 1, INTERNAL_SLOTS))
        except (TypeError, ValueError):
            spp = 1
        cur = int(clamp(int(phase or 1), 1, pc))
        start = int(clamp((cur - 1) * spp + 1, 1, INTERNAL_SLOTS))
        end = int(clamp(start + spp - 1, 1, INTERNAL_SLOTS))
        return cls(round=round_number, phase=cur, phase_count=pc, slots_per_phase=spp, start=start, end=end)

    def slots(self) -> range:
        return range(self.start, self.end + 1)

    def keys(self) -> List[str]:
        keys: List[str] = []
        for slot in self.slots():
            keys.append(phase_key(self.round, slot, MAIN))
            keys.append(phase_key(self.round, slot, BONUS))
        return keys

    def contains(self, key: str) -> bool:
        parsed = SlotKey.parse(key)
        return bool(parsed and parsed.round == self.round and self.start <= parsed.slot <= self.end)

    def window_id(self, combat_id: str) -> str:
        return f"{combat_id}:{self.round}:{self.start}-{self.end}"

    @property
    def incidental_key(self) -> str:
        return incidental_key(self.round, self.start, self.end)

    @property
    def is_last_group(self) -> bool:
        return self.end == INTERNAL_SLOTS

    def chain_eval_slot(self, plan_actions: Mapping[str, str]) -> int:
        """
        Rightmost slot of the group that already has a selection, else the first.

        Chains that continue across a round boundary are not broken before the
        user has picked anything in the new group.
        """
        current = self.start
        for slot in self.slots():
            main = plan_actions.get(phase_key(self.round, slot, MAIN), NO_ACTION)
            bonus = plan_actions.get(phase_key(self.round, slot, BONUS), NO_ACTION)
            if main != NO_ACTION or bonus != NO_ACTION:
                current = slot
        return current


def group_range_for_slot(slot: int, slots_per_phase: int) -> Tuple[int, int]:
    spp = int(clamp(int(slots_per_phase or 1), 1, INTERNAL_SLOTS))
    start = ((int(slot) - 1) // spp) * spp + 1
    end = min(INTERNAL_SLOTS, start + spp - 1)
    return start, end


def prev_action_phase_range(
    round_number: int,
    start: int,
    end: int,
    slots_per_phase: int,
    internal_count: int = INTERNAL_SLOTS,
) -> Tuple[int, int, int]:
    """
    (round, start, end) of the slot group before the given one.

    Wraps into the previous round's final group; round 0 means there is none.
    """
    spp = int(clamp(int(slots_per_phase or 1), 1, 4))
    ic = int(clamp(int(internal_count or INTERNAL_SLOTS), 1, 99))
    if not round_number or round_number < 1:
        return (0, 1, 1)
    if start - spp >= 1:
        return (round_number, start - spp, end - spp)
    prev_round = round_number - 1
    if prev_round < 1:
        return (0, 1, 1)
    return (prev_round, int(clamp(ic - spp + 1, 1, ic)), ic)
