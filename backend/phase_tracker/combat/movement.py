"""
Movement budget governor.

Decides, for the token of the acting combatant, how much of a requested
position change is allowed in the current slot group and the current round.

Two modes, chosen from the current group's selections:
- explicit Move: some sub-slot of the group is ``move-bmr``; distance is
  allocated slot by slot under per-slot caps and a round cap.
- incidental: the group holds other actions; a single per-group cap derived
  from the incidental pace table applies.

Tracks, previews and carry-over snapshots live in a ``MovementStore`` owned
by one combat session. Nothing here raises on missing movement data: an actor
without a usable BMR is simply not enforced.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .catalog import MOVE_ACTION_KEY, NO_ACTION
from .models.plan import CombatantPlan
from .pace import (
    MOVE_EPS_FT,
    ActorMovementStats,
    cap_multiplier_for_bmr_table,
    compute_incidental_cap_pace,
    infer_pace_from_bmr_table,
    infer_phase_pace_penalty,
    normalize_pace_name,
    pace_order_index,
    phase_pace_cap_frac,
)
from .phases import (
    BONUS,
    INTERNAL_SLOTS,
    MAIN,
    PhaseSlot,
    SlotKey,
    SlotWindow,
    group_range_for_slot,
    incidental_key,
    phase_key,
    prev_action_phase_range,
)

logger = logging.getLogger(__name__)

ALLOC_EPS = 1e-6
RESYNC_PX = 2
BOOST_FACTOR = 1.25

# 用户可见提示
MSG_NO_SELECTION = "Movement disabled: no actions selected in this phase."
MSG_LOAD_CAP = "Move blocked: LOAD pace cap reached."
MSG_SLOT_LIMIT = "Move limit reached for this phase."
MSG_PHASE_CAP = "Move blocked: phase movement cap reached."
MSG_CLAMPED = "Move clamped to remaining allowance."
MSG_UNDONE = "Movement undone (a Move selector changed). Move actions in this phase were cleared."

_BLANK_SELECTIONS = {"none", "-", "—", "–", "", "null", "undefined"}


# ===== 几何 =====

@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass
class TokenRef:
    """Token position (top-left, pixels) and footprint (grid squares)."""

    token_id: str
    x: float
    y: float
    width: float = 1.0
    height: float = 1.0

    @property
    def top_left(self) -> Point:
        return Point(float(self.x), float(self.y))


@dataclass
class GridGeometry:
    """Scene grid: pixel size of one square and the distance it represents."""

    size: float = 100.0
    distance: float = 5.0
    gridless: bool = False

    def center(self, x: float, y: float, width: float = 1.0, height: float = 1.0) -> Point:
        return Point(x + self.size * (width or 1) / 2, y + self.size * (height or 1) / 2)

    def top_left(self, center: Point, width: float = 1.0, height: float = 1.0) -> Point:
        return Point(center.x - self.size * (width or 1) / 2, center.y - self.size * (height or 1) / 2)

    def measure(self, a: Point, b: Point) -> float:
        if self.size <= 0:
            return 0.0
        return math.hypot(b.x - a.x, b.y - a.y) / self.size * self.distance

    def snap(self, x: float, y: float) -> Point:
        if self.gridless or self.size <= 0:
            return Point(x, y)
        return Point(round(x / self.size) * self.size, round(y / self.size) * self.size)


# ===== 状态 =====

@dataclass
class MoveTrack:
    """Committed movement of one token in the current round."""

    window_id: Optional[str] = None
    origin: Optional[Point] = None
    origin_top_left: Optional[Point] = None
    last_center: Optional[Point] = None
    used_by_slot: Dict[str, float] = field(default_factory=dict)
    points: List[Point] = field(default_factory=list)

    def used(self, key: str) -> float:
        return float(self.used_by_slot.get(key, 0.0) or 0.0)

    def restart_at(self, window_id: Optional[str], center: Point, top_left: Optional[Point]) -> None:
        self.window_id = window_id
        self.origin = center
        self.origin_top_left = top_left
        self.last_center = center
        self.points = [center]

    def sum_range(self, round_number: int, start: int, end: int) -> float:
        if round_number <= 0 or start <= 0 or end <= 0 or end < start:
            return 0.0
        total = 0.0
        for slot in range(start, end + 1):
            total += self.used(phase_key(round_number, slot, MAIN))
            total += self.used(phase_key(round_number, slot, BONUS))
        return total + self.used(incidental_key(round_number, start, end))

    def round_total(self, round_number: int) -> float:
        prefix = f"r{round_number}p"
        return sum(float(v or 0) for k, v in self.used_by_slot.items() if k.startswith(prefix))

    def round_total_up_to(self, round_number: int, slot: int) -> float:
        total = 0.0
        for ip in range(1, max(1, min(99, int(slot))) + 1):
            total += self.used(phase_key(round_number, ip, MAIN))
            total += self.used(phase_key(round_number, ip, BONUS))
        return total


@dataclass
class MovePreview:
    """Uncommitted allocation of an in-progress drag."""

    window_id: str
    round: int
    mode: str
    allocations: Dict[str, float]
    allocated_total: float
    per_slot_max: Dict[str, float]
    active_slot_key: Optional[str] = None


@dataclass
class CarryOverSnapshot:
    """Last group's total of the previous round, kept across the round reset."""

    combat_id: str
    round: int
    start: int
    end: int
    total_ft: float


@dataclass
class PendingMove:
    """Allocation to commit once the host confirms the position change."""

    mode: str
    token_id: str
    old_center: Point
    new_center: Point
    allocations: Dict[str, float]
    per_slot_max: Dict[str, float]
    window_id: str


@dataclass
class MoveDecision:
    """accept / clamp / reject, plus an optional user-facing notice."""

    outcome: str
    x: Optional[float] = None
    y: Optional[float] = None
    warning: Optional[str] = None
    info: Optional[str] = None
    pending: Optional[PendingMove] = None
    enforced: bool = True

    @property
    def allowed(self) -> bool:
        return self.outcome != "reject"

    @classmethod
    def accept(cls, pending: Optional[PendingMove] = None, enforced: bool = True) -> "MoveDecision":
        return cls(outcome="accept", pending=pending, enforced=enforced)

    @classmethod
    def reject(cls, warning: str) -> "MoveDecision":
        return cls(outcome="reject", warning=warning)


class MovementStore:
    """Per-combat movement caches; torn down with the combat."""

    def __init__(self) -> None:
        self.tracks: Dict[str, MoveTrack] = {}
        self.previews: Dict[str, MovePreview] = {}
        self.carry: Dict[str, CarryOverSnapshot] = {}

    def clear(self) -> None:
        self.tracks.clear()
        self.previews.clear()
        self.carry.clear()


@dataclass
class MovementContext:
    """What the governor needs to know about the acting combatant."""

    combat_id: str
    window: SlotWindow
    plan: CombatantPlan
    stats: ActorMovementStats

    @property
    def conc_count(self) -> int:
        return self.plan.flags().count_on()

    @property
    def instant_available(self) -> bool:
        return self.plan.instant_action in (None, "", "available")

    def last_slot_is_move(self) -> bool:
        r = self.window.round
        return (
            self.plan.action_at(phase_key(r, INTERNAL_SLOTS, MAIN)) == MOVE_ACTION_KEY
            or self.plan.action_at(phase_key(r, INTERNAL_SLOTS, BONUS)) == MOVE_ACTION_KEY
        )


def has_any_selection(plan_actions: Mapping[str, str], window: SlotWindow) -> bool:
    for key in window.keys():
        value = str(plan_actions.get(key, NO_ACTION) if plan_actions.get(key) is not None else NO_ACTION)
        if value.strip().lower() not in _BLANK_SELECTIONS:
            return True
    return False


def move_slot_keys(plan_actions: Mapping[str, str], window: SlotWindow) -> List[str]:
    return [k for k in window.keys() if plan_actions.get(k, NO_ACTION) == MOVE_ACTION_KEY]


def allocate_across_slots(
    keys: Sequence[str],
    used_by_slot: Mapping[str, float],
    segment_ft: float,
    per_slot_max: Mapping[str, float],
) -> Tuple[Dict[str, float], float]:
    """Fill slots in order up to each residual cap; returns (allocations, overflow)."""
    remaining = segment_ft
    allocations: Dict[str, float] = {}
    for key in keys:
        cap = max(0.0, float(per_slot_max.get(key, 0.0) or 0.0) - float(used_by_slot.get(key, 0.0) or 0.0))
        if cap <= 0:
            continue
        take = min(cap, remaining)
        if take > 0:
            allocations[key] = allocations.get(key, 0.0) + take
            remaining -= take
            if remaining <= ALLOC_EPS:
                break
    return allocations, max(0.0, remaining)


@dataclass
class _MoveLimits:
    per_slot_max: Dict[str, float]
    bmr_base_total: float
    max_pace_used: Optional[str]
    can_dash: bool
    boosted: bool
    remaining_total: float


class MovementGovernor:
    """Movement enforcement for one combat."""

    def __init__(
        self,
        store: Optional[MovementStore] = None,
        geometry: Optional[GridGeometry] = None,
        enabled: bool = True,
    ) -> None:
        self.store = store or MovementStore()
        self.geometry = geometry or GridGeometry()
        self.enabled = enabled

    # ── 内部计算 ──

    def _ensure_track(self, token: TokenRef, window_id: str) -> MoveTrack:
        g = self.geometry
        old_center = g.center(token.x, token.y, token.width, token.height)
        track = self.store.tracks.get(token.token_id)
        if track is None:
            track = MoveTrack()
            track.restart_at(window_id, old_center, token.top_left)
            self.store.tracks[token.token_id] = track
        elif track.window_id != window_id or track.last_center is None:
            track.restart_at(window_id, old_center, token.top_left)

        last = track.last_center
        if last is not None and (abs(last.x - old_center.x) > RESYNC_PX or abs(last.y - old_center.y) > RESYNC_PX):
            track.last_center = old_center
            track.points = [old_center]
        return track

    def _prev_moved(self, track: Optional[MoveTrack], token_id: str, ctx: MovementContext, start: int, end: int) -> float:
        prev_round, prev_start, prev_end = prev_action_phase_range(
            ctx.window.round, start, end, ctx.window.slots_per_phase, INTERNAL_SLOTS,
        )
        if prev_round < 1:
            return 0.0
        moved = track.sum_range(prev_round, prev_start, prev_end) if track else 0.0
        if moved <= MOVE_EPS_FT:
            snap = self.store.carry.get(token_id)
            if (
                snap is not None
                and snap.combat_id == ctx.combat_id
                and snap.round == prev_round
                and snap.start == prev_start
                and snap.end == prev_end
            ):
                moved = snap.total_ft
        return moved

    def _boost_allowed(self, track: Optional[MoveTrack], token_id: str, ctx: MovementContext, start: int, end: int) -> bool:
        raw_bmr = ctx.stats.bmr or 0.0
        conc = ctx.conc_count
        effective = raw_bmr * 0.5 if conc == 1 else raw_bmr
        prev_moved = self._prev_moved(track, token_id, ctx, start, end)
        moved_enough = prev_moved >= 0.5 * effective - MOVE_EPS_FT
        return bool(ctx.stats.light_load_at_most_15() and moved_enough and conc == 0)

    def _move_limits(self, track: MoveTrack, token_id: str, ctx: MovementContext, keys: Sequence[str]) -> _MoveLimits:
        raw_bmr = float(ctx.stats.bmr or 0.0)
        conc = ctx.conc_count
        window = ctx.window

        boosted = self._boost_allowed(track, token_id, ctx, window.start, window.end)

        base_cap = raw_bmr
        bmr_base_total = raw_bmr
        max_pace_used = ctx.stats.max_pace
        dash_scale = 1.0
        if conc == 1:
            base_cap = bmr_base_total = raw_bmr * 0.5
            dash_scale = 0.5
        elif conc >= 2:
            base_cap = raw_bmr * 0.5
            bmr_base_total = raw_bmr
            max_pace_used = "Creep"

        dash = next((r for r in ctx.stats.pace_rates() if r.pace == "Dash" and r.allowed), None)
        can_dash = bool(
            conc < 2
            and ctx.instant_available
            and dash is not None
            and ctx.stats.dash_eligible_by_load()
            and ctx.last_slot_is_move()
            and window.end == INTERNAL_SLOTS
        )

        per_slot_max: Dict[str, float] = {}
        for key in keys:
            parsed = SlotKey.parse(key)
            if can_dash and parsed is not None and parsed.slot == INTERNAL_SLOTS:
                per_slot_max[key] = dash.per_phase * dash_scale
            else:
                per_slot_max[key] = base_cap * BOOST_FACTOR if boosted else base_cap

        before = track.round_total(window.round)
        dash_ok_total = bool(conc < 2 and ctx.instant_available and ctx.stats.light_load_at_most_15())
        cap_mult = cap_multiplier_for_bmr_table(dash_ok_total, max_pace_used)
        cap_total = cap_mult * bmr_base_total if bmr_base_total > 0 else math.inf
        return _MoveLimits(
            per_slot_max=per_slot_max,
            bmr_base_total=bmr_base_total,
            max_pace_used=max_pace_used,
            can_dash=can_dash,
            boosted=boosted,
            remaining_total=cap_total - before,
        )

    def _incidental_cap(self, ctx: MovementContext) -> Tuple[str, float, float]:
        raw_bmr = float(ctx.stats.bmr or 0.0)
        conc = ctx.conc_count
        cap_pace = compute_incidental_cap_pace("Run", ctx.stats.max_pace, conc)
        bmr_effective = raw_bmr * 0.5 if conc == 1 else raw_bmr
        return cap_pace, bmr_effective, max(0.0, bmr_effective * phase_pace_cap_frac(cap_pace))

    def _clamped_position(self, token: TokenRef, target: Point, scale: float) -> Point:
        nx = token.x + (target.x - token.x) * scale
        ny = token.y + (target.y - token.y) * scale
        return self.geometry.snap(nx, ny)

    # ── 对外接口 ──

    def request_move(
        self,
        token: TokenRef,
        target_x: float,
        target_y: float,
        ctx: MovementContext,
        user_id: Optional[str] = None,
        enforcing_user_id: Optional[str] = None,
    ) -> MoveDecision:
        """
        Decide a proposed position change of the acting token.

        Returns accept (with the allocation to commit), clamp (shortened along
        the same direction) or reject. Nothing is tracked when enforcement is
        off or the move belongs to another user.
        """
        if not self.enabled:
            return MoveDecision.accept(enforced=False)
        if user_id and enforcing_user_id and user_id != enforcing_user_id:
            return MoveDecision.accept(enforced=False)

        plan_actions = ctx.plan.plan_actions
        window = ctx.window
        if not has_any_selection(plan_actions, window):
            logger.info("token %s 移动被拒绝: 当前阶段无动作", token.token_id)
            return MoveDecision.reject(MSG_NO_SELECTION)

        keys = move_slot_keys(plan_actions, window)
        window_id = window.window_id(ctx.combat_id)
        track = self._ensure_track(token, window_id)

        g = self.geometry
        target = Point(float(target_x), float(target_y))
        new_center = g.center(target.x, target.y, token.width, token.height)
        segment = g.measure(track.last_center, new_center)
        if not math.isfinite(segment) or segment <= 0:
            return MoveDecision.accept(enforced=False)
        raw_bmr = ctx.stats.bmr
        if raw_bmr is None or not math.isfinite(raw_bmr) or raw_bmr <= 0:
            return MoveDecision.accept(enforced=False)

        if keys:
            limits = self._move_limits(track, token.token_id, ctx, keys)
            remaining_total = limits.remaining_total
            if math.isfinite(remaining_total) and remaining_total <= MOVE_EPS_FT:
                logger.info("token %s 移动被拒绝: 回合配速上限", token.token_id)
                return MoveDecision.reject(MSG_LOAD_CAP)
            seg_allowed = min(segment, max(0.0, remaining_total)) if math.isfinite(remaining_total) else segment
            total_clamped = segment - seg_allowed > MOVE_EPS_FT

            allocations, overflow = allocate_across_slots(keys, track.used_by_slot, seg_allowed, limits.per_slot_max)
            allocated_total = sum(allocations.values())
            if allocated_total <= ALLOC_EPS:
                logger.info("token %s 移动被拒绝: 本阶段额度已用完", token.token_id)
                return MoveDecision.reject(MSG_SLOT_LIMIT)

            if overflow > MOVE_EPS_FT or total_clamped:
                scale = allocated_total / segment if segment > 0 else 0.0
                pos = self._clamped_position(token, target, scale)
                clamped_center = g.center(pos.x, pos.y, token.width, token.height)
                actual = g.measure(track.last_center, clamped_center)
                alloc_scale = max(0.0, min(1.0, actual / allocated_total)) if allocated_total > 0 else 1.0
                allocations = {k: v * alloc_scale for k, v in allocations.items()}
                pending = PendingMove("move", token.token_id, track.last_center, clamped_center,
                                      allocations, limits.per_slot_max, window_id)
                return MoveDecision(outcome="clamp", x=pos.x, y=pos.y, info=MSG_CLAMPED, pending=pending)

            pending = PendingMove("move", token.token_id, track.last_center, new_center,
                                  allocations, limits.per_slot_max, window_id)
            return MoveDecision.accept(pending)

        _, _, cap_ft = self._incidental_cap(ctx)
        inc_key = window.incidental_key
        remaining = cap_ft - track.used(inc_key)
        if not cap_ft > 0 or remaining <= MOVE_EPS_FT:
            return MoveDecision.reject(MSG_PHASE_CAP)
        allowed = min(segment, max(0.0, remaining))
        overflow = max(0.0, segment - allowed)
        if allowed <= ALLOC_EPS:
            return MoveDecision.reject(MSG_PHASE_CAP)

        per_slot_max = {inc_key: cap_ft}
        if overflow > MOVE_EPS_FT:
            scale = allowed / segment if segment > 0 else 0.0
            pos = self._clamped_position(token, target, scale)
            clamped_center = g.center(pos.x, pos.y, token.width, token.height)
            actual = g.measure(track.last_center, clamped_center)
            pending = PendingMove("incidental", token.token_id, track.last_center, clamped_center,
                                  {inc_key: max(0.0, min(allowed, actual))}, per_slot_max, window_id)
            return MoveDecision(outcome="clamp", x=pos.x, y=pos.y, pending=pending)

        pending = PendingMove("incidental", token.token_id, track.last_center, new_center,
                              {inc_key: allowed}, per_slot_max, window_id)
        return MoveDecision.accept(pending)

    def commit(self, pending: Optional[PendingMove]) -> None:
        """Apply a confirmed allocation to the token's track."""
        if pending is None:
            return
        track = self.store.tracks.get(pending.token_id)
        if track is None:
            return
        for key, value in pending.allocations.items():
            track.used_by_slot[key] = track.used(key) + float(value or 0)
        track.last_center = pending.new_center
        track.points.append(pending.new_center)
        self.store.previews.pop(pending.token_id, None)

    def preview(self, token: TokenRef, current_x: float, current_y: float, ctx: MovementContext) -> Optional[MovePreview]:
        """Live allocation for a drag in progress; never rejects, never commits."""
        if not self.enabled:
            return None
        token_id = token.token_id
        plan_actions = ctx.plan.plan_actions
        window = ctx.window
        if not has_any_selection(plan_actions, window):
            self.store.previews.pop(token_id, None)
            return None

        window_id = window.window_id(ctx.combat_id)
        g = self.geometry
        track = self.store.tracks.get(token_id)
        if track is None or track.window_id != window_id or track.last_center is None:
            track = track or MoveTrack()
            track.restart_at(window_id, g.center(token.x, token.y, token.width, token.height), token.top_left)
            self.store.tracks[token_id] = track

        segment = g.measure(track.last_center, g.center(current_x, current_y, token.width, token.height))
        if not math.isfinite(segment) or segment <= 0:
            self.store.previews.pop(token_id, None)
            return None
        raw_bmr = ctx.stats.bmr
        if raw_bmr is None or not math.isfinite(raw_bmr) or raw_bmr <= 0:
            return None

        keys = move_slot_keys(plan_actions, window)
        if keys:
            limits = self._move_limits(track, token_id, ctx, keys)
            remaining_total = limits.remaining_total
            if math.isfinite(remaining_total) and remaining_total <= MOVE_EPS_FT:
                return None
            seg_allowed = min(segment, max(0.0, remaining_total)) if math.isfinite(remaining_total) else segment
            allocations, _ = allocate_across_slots(keys, track.used_by_slot, seg_allowed, limits.per_slot_max)
            allocated_net = max(0.0, min(segment, sum(allocations.values())))
            active = None
            for key in keys:
                if allocations.get(key, 0.0) > ALLOC_EPS:
                    active = key
            pv = MovePreview(window_id, window.round, "move", allocations, allocated_net, limits.per_slot_max, active)
            self.store.previews[token_id] = pv
            return pv

        _, _, cap_ft = self._incidental_cap(ctx)
        inc_key = window.incidental_key
        remaining = cap_ft - track.used(inc_key)
        allowed = min(segment, max(0.0, remaining))
        if not cap_ft > 0 or remaining <= MOVE_EPS_FT or allowed <= ALLOC_EPS:
            self.store.previews.pop(token_id, None)
            return None
        pv = MovePreview(window_id, window.round, "incidental", {inc_key: allowed}, allowed, {inc_key: cap_ft}, inc_key)
        self.store.previews[token_id] = pv
        return pv

    def clear_preview(self, token_id: str) -> None:
        self.store.previews.pop(token_id, None)

    # ── 生命周期 ──

    def on_turn_advance(self) -> None:
        """Keep usage, but start a fresh origin for the next group."""
        for track in self.store.tracks.values():
            track.window_id = None
            track.last_center = None
            track.points = []

    def on_round_change(self, combat_id: str, new_round: int, slots_per_phase: int) -> None:
        prev_round = int(new_round) - 1
        if prev_round >= 1:
            spp = max(1, min(INTERNAL_SLOTS, int(slots_per_phase or 1)))
            start = max(1, min(INTERNAL_SLOTS, INTERNAL_SLOTS - spp + 1))
            for token_id, track in self.store.tracks.items():
                self.store.carry[token_id] = CarryOverSnapshot(
                    combat_id=combat_id,
                    round=prev_round,
                    start=start,
                    end=INTERNAL_SLOTS,
                    total_ft=track.sum_range(prev_round, start, INTERNAL_SLOTS),
                )
        self.store.tracks.clear()
        self.store.previews.clear()

    def clear(self) -> None:
        self.store.clear()

    def reset_group(self, token: TokenRef, ctx: MovementContext) -> Optional[Point]:
        """
        Return the token to where it started the current group.

        Clears the group's Move and incidental usage without touching any
        selector. Returns the top-left to move the token to, or None when the
        group has no movement to reset.
        """
        track = self.store.tracks.get(token.token_id)
        if track is None:
            return None
        window = ctx.window
        keys = window.keys() + [window.incidental_key]
        used = any(track.used(k) > ALLOC_EPS for k in keys)
        origin_center = track.origin or (track.points[0] if track.points else track.last_center)
        if not used or (track.origin_top_left is None and origin_center is None):
            return None

        g = self.geometry
        if track.origin_top_left is not None:
            top_left = track.origin_top_left
        else:
            top_left = g.top_left(origin_center, token.width, token.height)
        center = origin_center or g.center(top_left.x, top_left.y, token.width, token.height)

        for key in keys:
            track.used_by_slot.pop(key, None)
        track.restart_at(window.window_id(ctx.combat_id), center, top_left)
        self.store.previews.pop(token.token_id, None)
        return top_left

    def undo_group(self, token: TokenRef, ctx: MovementContext) -> Tuple[Optional[Point], Set[str]]:
        """
        Undo the current group's Move usage after a Move selector changed.

        Returns the top-left to restore (None if nothing was used) and the
        keys that carried movement.
        """
        track = self.store.tracks.get(token.token_id)
        window = ctx.window
        keys = window.keys()
        if track is None:
            return None, set()
        used_keys = {k for k in keys if track.used(k) > ALLOC_EPS}
        if not used_keys:
            return None, set()

        origin = track.origin or (track.points[0] if track.points else track.last_center)
        for key in keys:
            track.used_by_slot.pop(key, None)
        track.window_id = window.window_id(ctx.combat_id)
        top_left = None
        if origin is not None:
            track.origin = origin
            track.last_center = origin
            track.points = [origin]
            top_left = self.geometry.top_left(origin, token.width, token.height)
        self.store.previews.pop(token.token_id, None)
        return top_left, used_keys

    def group_used(self, token_id: str, window: SlotWindow) -> float:
        track = self.store.tracks.get(token_id)
        if track is None:
            return 0.0
        return sum(track.used(k) for k in window.keys())

    # ── 叠加文字 ──

    def move_overlay(self, token_id: str, ph: PhaseSlot, key: str, ctx: MovementContext) -> str:
        """``"<used> / <cap> ft\\nTotal <total> ft\\n<pace>"`` for a Move sub-slot."""
        track = self.store.tracks.get(token_id)
        pv = self.store.previews.get(token_id)
        window = ctx.window
        pv_applies = bool(pv and pv.active_slot_key == key and pv.round == ph.round)
        used = (track.used(key) if track else 0.0) + (pv.allocations.get(key, 0.0) if pv_applies else 0.0)

        stats = ctx.stats
        raw_bmr = float(stats.bmr or 0.0)
        conc = ctx.conc_count
        bmr_per_selector = raw_bmr * 0.5 if conc >= 1 else raw_bmr
        max_pace_used = "Creep" if conc >= 2 else stats.max_pace
        dash_scale = 0.5 if conc == 1 else 1.0
        dash = stats.dash_rate()

        dash_ok = bool(
            conc < 2
            and window.end == INTERNAL_SLOTS
            and ctx.instant_available
            and dash is not None
            and stats.dash_eligible_by_load()
            and ctx.last_slot_is_move()
            and (not max_pace_used or pace_order_index(normalize_pace_name(max_pace_used)) >= pace_order_index("Dash"))
        )

        grp_start, grp_end = group_range_for_slot(ph.slot, window.slots_per_phase)
        boosted = self._boost_allowed(track, token_id, ctx, grp_start, grp_end)
        cap = bmr_per_selector * BOOST_FACTOR if boosted else bmr_per_selector

        if pv_applies:
            total = (track.round_total(ph.round) if track else 0.0) + pv.allocated_total
        else:
            total = track.round_total_up_to(ph.round, ph.slot) if track else 0.0

        dash_ok_table = bool(conc < 2 and ctx.instant_available and stats.dash_eligible_by_load())
        pace = infer_pace_from_bmr_table(total, raw_bmr, dash_ok_table, max_pace_used).pace

        slot_cap = dash.per_phase * dash_scale if (ph.slot == INTERNAL_SLOTS and dash_ok) else cap
        if math.isfinite(slot_cap) and slot_cap > 0:
            return f"{used:.1f} / {slot_cap:.1f} ft\nTotal {total:.1f} ft\n{pace}"
        return f"{used:.1f} ft\nTotal {total:.1f} ft\n{pace}"

    def incidental_overlay(self, token_id: str, ph: PhaseSlot, ctx: MovementContext) -> Tuple[str, str]:
        """(text, penalty) for a slot holding a non-Move action."""
        main = ctx.plan.action_at(ph.main_key)
        if main in (NO_ACTION, MOVE_ACTION_KEY):
            return "", ""
        grp_start, grp_end = group_range_for_slot(ph.slot, ctx.window.slots_per_phase)
        inc_key = incidental_key(ph.round, grp_start, grp_end)

        track = self.store.tracks.get(token_id)
        pv = self.store.previews.get(token_id)
        pv_applies = bool(pv and pv.mode == "incidental" and pv.active_slot_key == inc_key and pv.round == ph.round)
        used = (track.used(inc_key) if track else 0.0) + (pv.allocations.get(inc_key, 0.0) if pv_applies else 0.0)
        if not used > 0 and not pv_applies:
            return "", ""

        raw_bmr = ctx.stats.bmr
        if raw_bmr is None or not math.isfinite(raw_bmr) or raw_bmr <= 0:
            return "", ""
        cap_pace, bmr_effective, cap_ft = self._incidental_cap(ctx)
        row = infer_phase_pace_penalty(used, bmr_effective, cap_pace)
        text = f"{used:.1f} / {cap_ft:.1f} ft\n{row.pace} (cap {cap_pace})"
        penalty = row.penalty_text if row.penalty_text not in ("—", "-", "0", "") else ""
        return text, penalty
