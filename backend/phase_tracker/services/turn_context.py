"""
回合上下文

The planning core only needs ``{round, phase, phase_count, ap_per_phase}``.
Where those come from is the provider's business: a static value for tests
and direct integrations, or a scan of the host's combat document.
"""
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from phase_tracker.combat.models import CombatMeta

logger = logging.getLogger(__name__)

_PHASE_KEYS = {"phase", "currentPhase", "phaseIndex", "phaseNumber"}
_PHASE_COUNT_KEYS = {"phaseCount", "phasesCount", "numPhases"}
_ROUND_KEYS = {"round", "currentRound", "roundNumber", "roundIndex"}
_AP_KEYS = {"apPerPhase", "apPerActionPhase", "actionPointsPerPhase", "apPhase", "phaseAP"}

_PHASE_OF_RE = re.compile(r"Phase\s*(\d+)\s*of\s*(\d+)", re.IGNORECASE)
_AP_TEXT_RES = (
    re.compile(
        r"Spend\s*([0-9]+(?:\.[0-9]+)?)\s*AP\s*(?:/\s*Phase|/\s*Action\s*Phase|per\s*Phase|per\s*Action\s*Phase)",
        re.IGNORECASE,
    ),
    re.compile(r"AP\s*per\s*(?:Action\s*)?Phase\s*:?\s*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE),
)


class TurnContext(BaseModel):
    """当前回合/阶段"""

    round: int = 1
    phase: int = 1
    phase_count: int = 4
    ap_per_phase: float = 1.0
    turn: int = 0

    @property
    def slots_per_phase(self) -> int:
        return int(max(1, min(4, self.ap_per_phase)))


class TurnContextProvider(ABC):
    """Adapter over the turn-order collaborator."""

    @abstractmethod
    def get_context(self) -> TurnContext:
        ...


class StaticTurnContextProvider(TurnContextProvider):
    def __init__(self, context: Optional[TurnContext] = None) -> None:
        self.context = context or TurnContext()

    def get_context(self) -> TurnContext:
        return self.context

    def set(self, **changes: Any) -> TurnContext:
        self.context = self.context.model_copy(update=changes)
        return self.context


def _to_num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _dig(source: Any, *path: str) -> Any:
    node = source
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def deep_find_number(obj: Any, keys: Iterable[str], max_depth: int = 5) -> Optional[float]:
    """Breadth-first per level: direct keys first, then children, up to ``max_depth``."""
    keys = set(keys)
    seen = set()

    def walk(node: Any, depth: int) -> Optional[float]:
        if not isinstance(node, dict) or id(node) in seen or depth > max_depth:
            return None
        seen.add(id(node))
        for key, value in node.items():
            if key in keys:
                number = _to_num(value)
                if number is not None:
                    return number
        for value in node.values():
            if isinstance(value, dict):
                found = walk(value, depth + 1)
                if found is not None:
                    return found
        return None

    return walk(obj, 0)


class HostCombatTurnContextProvider(TurnContextProvider):
    """
    Reads round/phase from a host combat document (plain dict).

    Known field paths are tried first, then a bounded deep scan of
    ``system`` and ``flags``. Tracker sidebar text such as "Phase 2 of 4" or
    "Spend 2 AP per Phase" overrides what the document says. Unknown phase
    holds at 1; it is never derived from the turn index.
    """

    def __init__(self, combat_doc: Optional[Dict[str, Any]] = None, tracker_text: str = "") -> None:
        self.combat_doc = combat_doc or {}
        self.tracker_text = tracker_text or ""

    def update(self, combat_doc: Optional[Dict[str, Any]] = None, tracker_text: Optional[str] = None) -> None:
        if combat_doc is not None:
            self.combat_doc = combat_doc
        if tracker_text is not None:
            self.tracker_text = tracker_text

    def _first(self, paths: List[tuple]) -> Optional[float]:
        for path in paths:
            number = _to_num(_dig(self.combat_doc, *path))
            if number is not None:
                return number
        return None

    def _scan(self, keys: Iterable[str]) -> Optional[float]:
        doc = self.combat_doc
        found = deep_find_number(doc.get("system"), keys)
        if found is None:
            found = deep_find_number(doc.get("flags"), keys)
        return found

    def _phase(self) -> Optional[float]:
        phase = self._first([
            ("system", "phase"),
            ("system", "currentPhase"),
            ("system", "phases", "current"),
            ("flags", "rmu", "phase"),
            ("flags", "rmu", "currentPhase"),
            ("flags", "rmu", "combat", "phase"),
            ("flags", "rmusystem", "phase"),
        ])
        return phase if phase is not None else self._scan(_PHASE_KEYS)

    def _phase_count(self) -> Optional[float]:
        count = self._first([
            ("system", "phaseCount"),
            ("system", "phases", "count"),
            ("flags", "rmu", "phaseCount"),
            ("flags", "rmu", "combat", "phaseCount"),
        ])
        return count if count is not None else self._scan(_PHASE_COUNT_KEYS)

    def _round(self) -> int:
        values = []
        for path in [
            ("round",),
            ("system", "round"),
            ("system", "currentRound"),
            ("system", "combat", "round"),
            ("flags", "rmu", "round"),
            ("flags", "rmu", "combat", "round"),
            ("flags", "rmusystem", "round"),
            ("flags", "rmu", "currentRound"),
        ]:
            number = _to_num(_dig(self.combat_doc, *path))
            if number is not None:
                values.append(number)
        deep = self._scan(_ROUND_KEYS)
        if deep is not None:
            values.append(deep)

        round_number = 1.0
        for value in values:
            if value > round_number:
                round_number = value
        return max(1, int(round_number))

    def ap_per_phase(self) -> float:
        ap = self._first([
            ("system", "apPerPhase"),
            ("system", "actionPointsPerPhase"),
            ("system", "apPerActionPhase"),
            ("flags", "rmu", "apPerPhase"),
            ("flags", "rmu", "combat", "apPerPhase"),
        ])
        if ap is None:
            ap = self._scan(_AP_KEYS)
        if ap is None:
            text = " ".join(self.tracker_text.split())
            for pattern in _AP_TEXT_RES:
                match = pattern.search(text)
                if match:
                    ap = _to_num(match.group(1))
                    break
        if ap is None or ap <= 0:
            ap = 1.0
        return max(0.25, min(20.0, ap))

    def get_context(self) -> TurnContext:
        phase = self._phase()
        phase_count = self._phase_count()
        if not phase_count:
            phase_count = 4
        if phase is None:
            phase = 1

        match = _PHASE_OF_RE.search(self.tracker_text)
        if match:
            p, pc = int(match.group(1)), int(match.group(2))
            if 1 <= pc <= 20:
                phase_count = pc
                if 1 <= p <= pc:
                    phase = p

        phase_count = int(phase_count)
        turn = _to_num(self.combat_doc.get("turn"))
        return TurnContext(
            round=self._round(),
            phase=int(max(1, min(phase_count, phase))),
            phase_count=phase_count,
            ap_per_phase=self.ap_per_phase(),
            turn=int(turn) if turn is not None else 0,
        )


# ===== 虚拟回合 =====

class VirtualRoundTracker:
    """
    Counts rounds for reminders when the host never advances its round.

    Follows the detected round once it is above 1; otherwise advances on a
    phase wrap or a turn wrap.
    """

    def __init__(self, meta: Optional[CombatMeta] = None) -> None:
        self.meta = meta or CombatMeta()

    def update(self, ctx: TurnContext) -> CombatMeta:
        meta = self.meta
        vr = meta.virtual_round if meta.virtual_round and meta.virtual_round > 0 else 1
        phase = ctx.phase
        phase_count = ctx.phase_count or 4
        turn = ctx.turn

        if ctx.round > 1:
            vr = ctx.round
        else:
            last_phase = meta.last_phase if meta.last_phase is not None else phase
            last_count = meta.last_phase_count or phase_count
            last_turn = meta.last_turn if meta.last_turn is not None else turn
            wrapped_by_phase = (phase_count > 1 and phase == 1 and last_phase == last_count) or phase < last_phase
            if wrapped_by_phase or turn < last_turn:
                vr += 1

        self.meta = CombatMeta(virtual_round=vr, last_phase=phase, last_phase_count=phase_count, last_turn=turn)
        return self.meta


def reminder_round(detected_round: Optional[int], virtual_round: Optional[int] = None) -> int:
    """Best available round for periodic reminders."""
    if detected_round is not None and detected_round > 1:
        return int(detected_round)
    if virtual_round is not None and virtual_round > 1:
        return int(virtual_round)
    if detected_round is not None and detected_round >= 1:
        return int(detected_round)
    return 1
