"""
战斗规划会话

One ``CombatPlanningSession`` per active combat. The host integration layer
drives it through a small set of transitions:

- ``on_turn_advance``: new turn/phase/round from the turn-order collaborator
- ``on_plan_edit``: a user edits a combatant's plan (write boundary)
- ``on_position_request`` / ``on_position_changing`` / ``on_position_committed``:
  token movement of the acting combatant
- ``on_remote_update``: an authoritative snapshot arrived

All writes go through the replica as path-scoped updates, so reads made right
after an edit already reflect it.
"""
import logging
import math
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from phase_tracker.combat.catalog import (
    INSTANT_AVAILABLE,
    MOVE_ACTION_KEY,
    NO_ACTION,
    ActionCatalog,
    instant_options,
    selector_options,
)
from phase_tracker.combat.chains import (
    ChainPhaseResult,
    ChainUIAnalysis,
    aggregate_status,
    analyze_chains_for_ui,
    apply_autofill_to_plan,
    evaluate_chains_with_penalty,
)
from phase_tracker.combat.models import (
    CONC_FLAG_NAMES,
    MAX_ACTIVE_CONC_FLAGS,
    CombatantPlan,
    CombatMeta,
    HoldActionMeta,
    plan_path,
)
from phase_tracker.combat.movement import (
    ALLOC_EPS,
    MSG_UNDONE,
    MoveDecision,
    MovementContext,
    MovementGovernor,
    MovePreview,
    PendingMove,
    Point,
    TokenRef,
)
from phase_tracker.combat.pace import ActorMovementStats
from phase_tracker.combat.phases import (
    INTERNAL_SLOTS,
    BONUS,
    MAIN,
    PhaseSlot,
    SlotKey,
    SlotWindow,
    build_cap_by_key,
    build_phases,
    build_phases_for_analysis,
    phase_key,
)
from phase_tracker.services.plan_replication import PlanReplica, ReplicationMessage
from phase_tracker.services.turn_context import (
    HostCombatTurnContextProvider,
    StaticTurnContextProvider,
    TurnContext,
    TurnContextProvider,
    VirtualRoundTracker,
    reminder_round,
)
from phase_tracker.utils import split_path

logger = logging.getLogger(__name__)

# ===== 用户提示 =====
MSG_GM_READ_ONLY = "GM view is read-only for player-owned actors."
MSG_NOT_OWNER = "You do not own this combatant."
MSG_CONC_CLEAR = "Clear all actions in the current phase (set to '-') before enabling Concentration."
MSG_CONC_LIMIT = "Only 2 concentration toggles can be active at once."
MSG_HOLD_NEEDS_COMPLETE = "Hold Action can only be enabled when an action is Complete."
MSG_FINISH_EARLY_CURRENT = "Finish early can only be set in the current phase."
MSG_FINISH_EARLY_RANGE = "Finish early only applies to range-cost actions."
MSG_MOVE_ONLY = "Only Move Your BMR is available while two concentration toggles are active."
MSG_INSTANT_LOCKED = "Choose an instantaneous action for this round before planning one in a phase."
MSG_META_GM_ONLY = "Only the GM may change combat bookkeeping."
MSG_DERIVED_FIELD = "This field is maintained by the planner and cannot be written directly."

REMINDER_PERIOD = 6
KEYED_FIELDS = ("plan_actions", "finish_early", "conc_flags")


# ===== 异常 =====

class PlanAuthorizationError(PermissionError):
    """Observer has no write authority over the combatant's plan."""

    def __init__(self, message: str, combatant_id: str = "") -> None:
        self.combatant_id = combatant_id
        super().__init__(message)


class PlanEditRejectedError(ValueError):
    """Edit breaks a write-boundary rule; prior state is left untouched."""


class UnknownCombatError(LookupError):
    """No session for a combat id (or no such combatant in it)."""


# ===== 模型 =====

class Observer(BaseModel):
    """The user a request is made on behalf of."""

    user_id: str
    is_gm: bool = False


class CombatantInfo(BaseModel):
    """Host-provided facts about a combatant."""

    combatant_id: str
    name: str = ""
    owner_ids: List[str] = Field(default_factory=list)
    token_id: Optional[str] = None
    token_x: float = 0.0
    token_y: float = 0.0
    token_width: float = 1.0
    token_height: float = 1.0
    movement: Optional[Dict[str, Any]] = None
    actor_system: Optional[Dict[str, Any]] = None

    @property
    def player_owned(self) -> bool:
        return bool(self.owner_ids)

    def stats(self) -> ActorMovementStats:
        return ActorMovementStats.from_movement_block(self.movement, self.actor_system)


class PlanEdit(BaseModel):
    """One write-boundary edit of a combatant's plan."""

    kind: Literal[
        "phase_action",
        "finish_early",
        "instant_action",
        "bonus_count",
        "concentration",
        "ack_mental_focus",
        "ack_endurance",
    ]
    combatant_id: str
    key: Optional[str] = None
    flag: Optional[str] = None
    value: Any = None


class PlanEditResult(BaseModel):
    persisted: bool = True
    notice: Optional[str] = None
    token_x: Optional[float] = None
    token_y: Optional[float] = None


class SubSlotView(BaseModel):
    key: str
    value: str = NO_ACTION
    options: List[Dict[str, Any]] = Field(default_factory=list)
    complete: bool = False
    invalid: bool = False
    penalty_text: str = ""
    short: str = ""
    need: str = ""
    finish_early: bool = False
    show_finish_early: bool = False
    overlay: str = ""


class SlotView(BaseModel):
    round: int
    slot: int
    is_current: bool = False
    status: str = ""
    main: SubSlotView
    bonus: Optional[SubSlotView] = None
    incidental_text: str = ""
    incidental_penalty: str = ""


class DisplayedPhaseView(BaseModel):
    round: int
    phase: int
    start: int
    end: int
    is_current: bool = False
    status: str = ""


class ReminderView(BaseModel):
    mental_focus: bool = False
    endurance: bool = False
    round: int = 1


class CombatantView(BaseModel):
    """Per-actor, per-slot view-model."""

    combatant_id: str
    name: str = ""
    editable: bool = True
    read_only_reason: Optional[str] = None
    round: int
    phase: int
    phase_count: int
    slots_per_phase: int
    window_start: int
    window_end: int
    bonus_count: int = 0
    instant_action: str = INSTANT_AVAILABLE
    instant_options: List[Dict[str, Any]] = Field(default_factory=list)
    conc_flags: Dict[str, bool] = Field(default_factory=dict)
    hold_action: Dict[str, Any] = Field(default_factory=dict)
    two_conc_move_only: bool = False
    reminders: ReminderView = Field(default_factory=ReminderView)
    phases: List[DisplayedPhaseView] = Field(default_factory=list)
    slots: List[SlotView] = Field(default_factory=list)
    catalog_version: str = ""


class HistoryRow(BaseModel):
    round: int
    slot: int
    main: str
    bonus: str


def _normalize_selection(value: Any) -> str:
    if value is None:
        return NO_ACTION
    text = str(value).strip()
    if text in ("", "-", NO_ACTION):
        return NO_ACTION
    return text


class CombatPlanningSession:
    """Explicit state machine for one combat."""

    def __init__(
        self,
        combat_id: str,
        replica: PlanReplica,
        catalog: ActionCatalog,
        turn_provider: Optional[TurnContextProvider] = None,
        governor: Optional[MovementGovernor] = None,
        rounds_shown: int = 1,
        history_rounds: int = 5,
        budget_per_slot: float = 1.0,
        enforcing_user_id: Optional[str] = None,
    ) -> None:
        self.combat_id = combat_id
        self.replica = replica
        self.catalog = catalog
        self.selector_catalog = catalog.for_phase_selectors()
        self.turn_provider = turn_provider or HostCombatTurnContextProvider()
        self.governor = governor or MovementGovernor()
        self.rounds_shown = max(1, min(5, int(rounds_shown or 1)))
        self.history_rounds = max(1, int(history_rounds or 5))
        self.budget_per_slot = budget_per_slot
        self.enforcing_user_id = enforcing_user_id

        self.combatants: Dict[str, CombatantInfo] = {}
        self.active_combatant_id: Optional[str] = None
        self.context: TurnContext = self.turn_provider.get_context()
        self._pending_moves: Dict[str, PendingMove] = {}

    # ── 生命周期 ──

    async def start(self) -> None:
        await self.replica.request_init_state(self.combat_id)
        logger.info("战斗规划会话启动: %s", self.combat_id)

    def end(self) -> None:
        self.governor.clear()
        self._pending_moves.clear()
        self.replica.forget(self.combat_id)
        logger.info("战斗规划会话结束: %s", self.combat_id)

    def register_combatant(self, info: CombatantInfo) -> None:
        self.combatants[info.combatant_id] = info

    def remove_combatant(self, combatant_id: str) -> None:
        self.combatants.pop(combatant_id, None)

    # ── 读取 ──

    def state(self) -> Dict[str, Any]:
        return self.replica.read_state(self.combat_id)

    def plan(self, combatant_id: str) -> CombatantPlan:
        return CombatantPlan.from_state(self.state(), combatant_id)

    def meta(self) -> CombatMeta:
        return CombatMeta.model_validate(self.state().get("meta") or {})

    def window(self) -> SlotWindow:
        ctx = self.context
        return SlotWindow.from_turn(ctx.round, ctx.phase, ctx.phase_count, ctx.slots_per_phase)

    def reminder_round(self) -> int:
        return reminder_round(self.context.round, self.meta().virtual_round)

    def _combatant(self, combatant_id: str) -> CombatantInfo:
        info = self.combatants.get(combatant_id)
        if info is None:
            raise UnknownCombatError(f"unknown combatant {combatant_id} in combat {self.combat_id}")
        return info

    def _token(self, info: CombatantInfo) -> Optional[TokenRef]:
        if not info.token_id:
            return None
        return TokenRef(info.token_id, info.token_x, info.token_y, info.token_width, info.token_height)

    def _move_token(self, info: CombatantInfo, point: Point) -> None:
        info.token_x = point.x
        info.token_y = point.y

    def _movement_context(self, info: CombatantInfo) -> MovementContext:
        return MovementContext(
            combat_id=self.combat_id,
            window=self.window(),
            plan=self.plan(info.combatant_id),
            stats=info.stats(),
        )

    # ── 授权 ──

    def authorize(self, observer: Observer, combatant_id: str) -> CombatantInfo:
        """Raise unless ``observer`` may write this combatant's plan."""
        info = self._combatant(combatant_id)
        if observer.is_gm:
            if info.player_owned:
                logger.info("拒绝编辑: GM 对玩家角色只读 (%s)", combatant_id)
                raise PlanAuthorizationError(MSG_GM_READ_ONLY, combatant_id)
            return info
        if observer.user_id not in info.owner_ids:
            logger.info("拒绝编辑: %s 不是 %s 的拥有者", observer.user_id, combatant_id)
            raise PlanAuthorizationError(MSG_NOT_OWNER, combatant_id)
        return info

    def _can_view(self, observer: Observer, info: CombatantInfo) -> bool:
        return observer.is_gm or observer.user_id in info.owner_ids

    async def _write(self, combatant_id: str, field: str, value: Any) -> bool:
        return await self.replica.request_path_update(self.combat_id, plan_path(combatant_id, field), value)

    # ===== 回合推进 =====

    async def on_turn_advance(
        self,
        active_combatant_id: Optional[str] = None,
        combat_doc: Optional[Dict[str, Any]] = None,
        tracker_text: Optional[str] = None,
        context: Optional[TurnContext] = None,
    ) -> TurnContext:
        """
        Pull the new turn context and run the per-turn/per-round bookkeeping.

        A round change snapshots movement for the boost rule and makes every
        instantaneous action available again.
        """
        if context is not None:
            if isinstance(self.turn_provider, StaticTurnContextProvider):
                self.turn_provider.context = context
            else:
                self.turn_provider = StaticTurnContextProvider(context)
        elif isinstance(self.turn_provider, HostCombatTurnContextProvider):
            self.turn_provider.update(combat_doc, tracker_text)

        previous = self.context
        current = self.turn_provider.get_context()
        self.context = current
        if active_combatant_id is not None:
            self.active_combatant_id = active_combatant_id
        self._pending_moves.clear()

        if current.round != previous.round:
            self.governor.on_round_change(self.combat_id, current.round, current.slots_per_phase)
            if self.replica.is_holder:
                await self._reset_instant_actions()
        elif (current.phase, current.turn) != (previous.phase, previous.turn):
            self.governor.on_turn_advance()

        if self.replica.is_holder:
            await self._track_virtual_round(current)
        return current

    async def _reset_instant_actions(self) -> None:
        for combatant_id in list(self.combatants):
            plan = self.plan(combatant_id)
            if plan.instant_action != INSTANT_AVAILABLE:
                await self._write(combatant_id, "instant_action", INSTANT_AVAILABLE)

    async def _track_virtual_round(self, ctx: TurnContext) -> None:
        before = self.meta()
        after = VirtualRoundTracker(before).update(ctx)
        if after != before:
            await self.replica.request_path_update(self.combat_id, "meta", after.model_dump())

    async def on_remote_update(self, state: Dict[str, Any]) -> None:
        await self.replica.apply_snapshot(self.combat_id, state)

    # ===== 编辑 =====

    async def on_plan_edit(self, observer: Observer, edit: PlanEdit) -> PlanEditResult:
        cid = edit.combatant_id
        if edit.kind == "phase_action":
            return await self.set_phase_action(observer, cid, edit.key or "", edit.value)
        if edit.kind == "finish_early":
            return await self.set_finish_early(observer, cid, edit.key or "", bool(edit.value))
        if edit.kind == "instant_action":
            return await self.set_instant_action(observer, cid, edit.value)
        if edit.kind == "bonus_count":
            return await self.set_bonus_count(observer, cid, edit.value)
        if edit.kind == "concentration":
            return await self.toggle_concentration_flag(observer, cid, edit.flag or "", bool(edit.value))
        if edit.kind == "ack_mental_focus":
            return await self.acknowledge_mental_focus(observer, cid)
        return await self.acknowledge_endurance(observer, cid)

    # ── 复制消息 ──

    async def apply_state_message(self, observer: Observer, message: ReplicationMessage) -> bool:
        """
        Apply an ``initState`` / ``setStatePath`` message sent by an outside observer.

        Combatant paths pass the same authorization and write-boundary rules
        as ``on_plan_edit``; fields the planner derives itself cannot be
        written directly. ``meta`` belongs to the GM.
        """
        if message.combat_id != self.combat_id:
            raise UnknownCombatError(f"message for combat {message.combat_id} sent to {self.combat_id}")
        if message.type == "initState":
            await self.replica.request_init_state(self.combat_id)
            return True

        parts = split_path(message.path or "")
        if parts[0] == "meta":
            if not observer.is_gm:
                raise PlanAuthorizationError(MSG_META_GM_ONLY)
            return await self.replica.request_path_update(self.combat_id, message.path, message.value)
        if parts[0] != "combatants" or len(parts) < 3:
            raise ValueError(f"unsupported state path: {message.path!r}")

        combatant_id, field, rest = parts[1], parts[2], parts[3:]
        self.authorize(observer, combatant_id)
        if field in KEYED_FIELDS and len(rest) <= 1:
            if rest:
                changes = {rest[0]: message.value}
            else:
                changes = self._keyed_changes(combatant_id, field, message.value)
            return await self._apply_keyed(observer, combatant_id, field, changes)
        if rest:
            raise ValueError(f"unsupported state path: {message.path!r}")

        if field == "bonus_count":
            result = await self.set_bonus_count(observer, combatant_id, message.value)
        elif field == "instant_action":
            result = await self.set_instant_action(observer, combatant_id, message.value)
        elif field == "mental_focus_ack_round":
            result = await self.acknowledge_mental_focus(observer, combatant_id)
        elif field == "endurance_ack_round":
            result = await self.acknowledge_endurance(observer, combatant_id)
        else:
            logger.info("拒绝直接写入派生字段: %s", message.path)
            raise PlanEditRejectedError(MSG_DERIVED_FIELD)
        return result.persisted

    def _keyed_changes(self, combatant_id: str, field: str, value: Any) -> Dict[str, Any]:
        """Differences between a whole replacement mapping and the current one."""
        if not isinstance(value, dict):
            raise ValueError(f"{field} must be a mapping")
        plan = self.plan(combatant_id)
        if field == "plan_actions":
            current, default = plan.plan_actions, NO_ACTION
        elif field == "finish_early":
            current, default = plan.finish_early, False
        else:
            current, default = plan.flags().model_dump(), False
        return {key: value.get(key, default) for key in sorted(set(current) | set(value))}

    async def _apply_keyed(
        self,
        observer: Observer,
        combatant_id: str,
        field: str,
        changes: Dict[str, Any],
    ) -> bool:
        persisted = True
        if field == "plan_actions":
            for key, value in changes.items():
                if _normalize_selection(value) != self.plan(combatant_id).action_at(key):
                    result = await self.set_phase_action(observer, combatant_id, key, value)
                    persisted = result.persisted and persisted
            return persisted

        if field == "finish_early":
            for key, value in changes.items():
                if bool(value) != bool(self.plan(combatant_id).finish_early.get(key)):
                    result = await self.set_finish_early(observer, combatant_id, key, bool(value))
                    persisted = result.persisted and persisted
            return persisted

        flags = self.plan(combatant_id).flags()
        wanted = {name: flags.is_on(name) for name in CONC_FLAG_NAMES}
        wanted.update({name: bool(value) for name, value in changes.items()})
        if sum(1 for on in wanted.values() if on) > MAX_ACTIVE_CONC_FLAGS:
            raise PlanEditRejectedError(MSG_CONC_LIMIT)
        # toggles going off first so the limit holds between writes
        for name, value in sorted(changes.items(), key=lambda item: bool(item[1])):
            result = await self.toggle_concentration_flag(observer, combatant_id, name, bool(value))
            persisted = result.persisted and persisted
        return persisted

    async def set_phase_action(self, observer: Observer, combatant_id: str, key: str, value: Any) -> PlanEditResult:
        info = self.authorize(observer, combatant_id)
        if SlotKey.parse(key) is None:
            raise ValueError(f"invalid slot key: {key!r}")
        new_value = _normalize_selection(value)
        if new_value != NO_ACTION and new_value not in self.catalog:
            raise ValueError(f"unknown action: {new_value!r}")

        plan = self.plan(combatant_id)
        old_value = plan.action_at(key)
        if new_value != old_value:
            if plan.flags().count_on() >= MAX_ACTIVE_CONC_FLAGS and new_value not in (NO_ACTION, MOVE_ACTION_KEY):
                raise PlanEditRejectedError(MSG_MOVE_ONLY)
            if new_value in self.catalog.instant_keys() and plan.instant_available:
                raise PlanEditRejectedError(MSG_INSTANT_LOCKED)

        actions = dict(plan.plan_actions)
        actions[key] = new_value
        result = PlanEditResult()

        window = self.window()
        if (
            old_value == MOVE_ACTION_KEY
            and new_value != MOVE_ACTION_KEY
            and combatant_id == self.active_combatant_id
            and window.contains(key)
        ):
            token = self._token(info)
            if token is not None:
                top_left, used_keys = self.governor.undo_group(token, self._movement_context(info))
                if used_keys:
                    for group_key in window.keys():
                        if actions.get(group_key) == MOVE_ACTION_KEY:
                            actions[group_key] = NO_ACTION
                    result.notice = MSG_UNDONE
                    if top_left is not None:
                        self._move_token(info, top_left)
                        result.token_x, result.token_y = top_left.x, top_left.y
                    logger.info("撤销移动: %s %s", combatant_id, sorted(used_keys))

        auto = dict(plan.plan_auto)
        auto[key] = False
        finish_early = dict(plan.finish_early)
        if new_value == NO_ACTION or not self.selector_catalog.is_range(new_value):
            finish_early.pop(key, None)
        costs = dict(plan.plan_costs)
        costs[key] = None

        persisted = await self._write(combatant_id, "plan_actions", actions)
        persisted = await self._write(combatant_id, "plan_auto", auto) and persisted
        persisted = await self._write(combatant_id, "plan_costs", costs) and persisted
        persisted = await self._write(combatant_id, "finish_early", finish_early) and persisted
        result.persisted = persisted
        return result

    async def set_finish_early(self, observer: Observer, combatant_id: str, key: str, enabled: bool) -> PlanEditResult:
        self.authorize(observer, combatant_id)
        if not self.window().contains(key):
            raise PlanEditRejectedError(MSG_FINISH_EARLY_CURRENT)
        plan = self.plan(combatant_id)
        if enabled and not self.selector_catalog.is_range(plan.action_at(key)):
            raise PlanEditRejectedError(MSG_FINISH_EARLY_RANGE)

        finish_early = dict(plan.finish_early)
        if enabled:
            finish_early[key] = True
        else:
            finish_early.pop(key, None)
        return PlanEditResult(persisted=await self._write(combatant_id, "finish_early", finish_early))

    async def set_instant_action(self, observer: Observer, combatant_id: str, value: Any) -> PlanEditResult:
        self.authorize(observer, combatant_id)
        choice = str(value or INSTANT_AVAILABLE)
        if choice != INSTANT_AVAILABLE and choice not in self.catalog.instant_keys():
            raise ValueError(f"not an instantaneous action: {choice!r}")
        return PlanEditResult(persisted=await self._write(combatant_id, "instant_action", choice))

    async def set_bonus_count(self, observer: Observer, combatant_id: str, value: Any) -> PlanEditResult:
        """Store the bonus count, then re-run the legacy auto-fill over the new layout."""
        self.authorize(observer, combatant_id)
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"bonus count must be a number: {value!r}") from exc
        count = max(0, min(INTERNAL_SLOTS, int(number))) if math.isfinite(number) else 0

        persisted = await self._write(combatant_id, "bonus_count", count)
        plan = self.plan(combatant_id)
        phases = build_phases(self.context.round, self.rounds_shown, count, INTERNAL_SLOTS)
        actions, auto, costs = apply_autofill_to_plan(
            phases,
            self.selector_catalog,
            plan.plan_actions,
            plan.plan_auto,
            plan.plan_costs,
            concentrating=plan.flags().any_immediate(),
            budget_per_slot=self.budget_per_slot,
        )
        persisted = await self._write(combatant_id, "plan_actions", actions) and persisted
        persisted = await self._write(combatant_id, "plan_auto", auto) and persisted
        persisted = await self._write(combatant_id, "plan_costs", costs) and persisted
        return PlanEditResult(persisted=persisted)

    async def toggle_concentration_flag(
        self,
        observer: Observer,
        combatant_id: str,
        flag: str,
        enabled: bool,
    ) -> PlanEditResult:
        """
        Turn one concentration toggle on or off.

        Enabling is refused when two toggles are already on. Non-hold toggles
        need a blank current group; Hold Action needs a complete action in the
        current group and records what is being held.
        """
        self.authorize(observer, combatant_id)
        if flag not in CONC_FLAG_NAMES:
            raise ValueError(f"unknown concentration flag: {flag!r}")

        plan = self.plan(combatant_id)
        flags = plan.flags()
        if flags.is_on(flag) == bool(enabled):
            return PlanEditResult(persisted=True)

        window = self.window()
        hold_meta: Optional[HoldActionMeta] = None
        if enabled:
            if flags.count_on() >= MAX_ACTIVE_CONC_FLAGS:
                logger.info("拒绝开启专注 %s: 已有两个开关", flag)
                raise PlanEditRejectedError(MSG_CONC_LIMIT)
            if flag != "hold_action":
                if any(plan.action_at(k) != NO_ACTION for k in window.keys()):
                    logger.info("拒绝开启专注 %s: 当前阶段已有动作", flag)
                    raise PlanEditRejectedError(MSG_CONC_CLEAR)
            else:
                analysis = self._analysis(plan)
                pending_key = self._first_complete_in_group(analysis, window)
                if pending_key is None:
                    logger.info("拒绝开启 Hold Action: 当前阶段没有完成的动作")
                    raise PlanEditRejectedError(MSG_HOLD_NEEDS_COMPLETE)
                held = plan.action_at(pending_key)
                hold_meta = HoldActionMeta(
                    pending_key=pending_key,
                    held_label=self.catalog.label_for(held),
                    held_action=held,
                )

        new_flags = flags.with_flag(flag, enabled)
        persisted = await self._write(combatant_id, "conc_flags", new_flags.model_dump())
        if flag == "concentration" and plan.concentrating is not None:
            persisted = await self._write(combatant_id, "concentrating", new_flags.concentration) and persisted
        if flag == "hold_action":
            meta = hold_meta if enabled else HoldActionMeta()
            persisted = await self._write(combatant_id, "hold_action", meta.model_dump()) and persisted

        before, after = flags.count_on(), new_flags.count_on()
        if before == 0 and after >= 1:
            persisted = await self._write(combatant_id, "mental_focus_start_round", self.reminder_round()) and persisted
            persisted = await self._write(combatant_id, "mental_focus_ack_round", 0) and persisted
        elif after == 0 and before > 0:
            persisted = await self._write(combatant_id, "mental_focus_start_round", 0) and persisted
            persisted = await self._write(combatant_id, "mental_focus_ack_round", 0) and persisted
        return PlanEditResult(persisted=persisted)

    async def acknowledge_mental_focus(self, observer: Observer, combatant_id: str) -> PlanEditResult:
        self.authorize(observer, combatant_id)
        return PlanEditResult(
            persisted=await self._write(combatant_id, "mental_focus_ack_round", self.reminder_round())
        )

    async def acknowledge_endurance(self, observer: Observer, combatant_id: str) -> PlanEditResult:
        self.authorize(observer, combatant_id)
        return PlanEditResult(
            persisted=await self._write(combatant_id, "endurance_ack_round", self.reminder_round())
        )

    # ── 提醒 ──

    def reminders(self, plan: CombatantPlan) -> ReminderView:
        r = self.reminder_round()
        mental = False
        start = plan.mental_focus_start_round
        if plan.flags().count_on() == 1 and start > 0:
            elapsed = r - start + 1
            mental = elapsed >= REMINDER_PERIOD and elapsed % REMINDER_PERIOD == 0 and plan.mental_focus_ack_round != r
        endurance = r % REMINDER_PERIOD == 0 and plan.endurance_ack_round != r
        return ReminderView(mental_focus=mental, endurance=endurance, round=r)

    # ===== 移动 =====

    def _is_enforced_move(self, info: CombatantInfo) -> bool:
        return info.combatant_id == self.active_combatant_id and info.token_id is not None

    def _authorize_move(self, observer: Observer, combatant_id: str) -> CombatantInfo:
        info = self._combatant(combatant_id)
        if not self._can_view(observer, info):
            logger.info("拒绝移动: %s 不能移动 %s", observer.user_id, combatant_id)
            raise PlanAuthorizationError(MSG_NOT_OWNER, combatant_id)
        return info

    def on_position_request(
        self,
        observer: Observer,
        combatant_id: str,
        x: float,
        y: float,
    ) -> MoveDecision:
        """Decide a proposed token move; an accepted allocation waits for the commit."""
        info = self._authorize_move(observer, combatant_id)
        if not self._is_enforced_move(info):
            return MoveDecision.accept(enforced=False)
        decision = self.governor.request_move(
            self._token(info),
            x,
            y,
            self._movement_context(info),
            user_id=observer.user_id,
            enforcing_user_id=self.enforcing_user_id or observer.user_id,
        )
        if decision.pending is not None:
            self._pending_moves[info.token_id] = decision.pending
        if decision.warning:
            logger.info("移动被拒绝 %s: %s", combatant_id, decision.warning)
        return decision

    def on_position_changing(self, observer: Observer, combatant_id: str, x: float, y: float) -> Optional[MovePreview]:
        info = self._authorize_move(observer, combatant_id)
        if not self._is_enforced_move(info):
            return None
        return self.governor.preview(self._token(info), x, y, self._movement_context(info))

    def on_position_committed(self, observer: Observer, combatant_id: str, x: float, y: float) -> None:
        info = self._authorize_move(observer, combatant_id)
        if info.token_id:
            pending = self._pending_moves.pop(info.token_id, None)
            self.governor.commit(pending)
            if pending is None:
                self.governor.clear_preview(info.token_id)
        self._move_token(info, Point(float(x), float(y)))

    def reset_move(self, observer: Observer, combatant_id: str) -> Optional[Point]:
        """Return the acting token to where the current group started."""
        info = self.authorize(observer, combatant_id)
        token = self._token(info)
        if token is None:
            return None
        top_left = self.governor.reset_group(token, self._movement_context(info))
        if top_left is not None:
            self._pending_moves.pop(token.token_id, None)
            self._move_token(info, top_left)
        return top_left

    # ===== 视图 =====

    def _analysis_window(self, plan: CombatantPlan) -> Tuple[List[PhaseSlot], Dict[str, float]]:
        phases = build_phases_for_analysis(
            self.context.round,
            self.rounds_shown,
            plan.bonus_count,
            self.selector_catalog.max_upper_cost(),
            plan.plan_actions,
        )
        caps = build_cap_by_key(phases, plan.flags(), plan.hold_action, self.budget_per_slot)
        return phases, caps

    def _analysis(self, plan: CombatantPlan, current_slot: Optional[int] = None) -> ChainUIAnalysis:
        """UI index of chains; ``current_slot`` defaults to the start of the current group."""
        phases, caps = self._analysis_window(plan)
        if current_slot is None:
            current_slot = self.window().start
        return analyze_chains_for_ui(
            phases,
            plan.plan_actions,
            self.selector_catalog,
            self.context.round,
            current_slot,
            cap_by_key=caps,
            finish_early=plan.finish_early,
            budget_per_slot=self.budget_per_slot,
        )

    def _chain_results(self, plan: CombatantPlan) -> Tuple[List[PhaseSlot], List[ChainPhaseResult]]:
        phases, caps = self._analysis_window(plan)
        results = evaluate_chains_with_penalty(
            phases,
            plan.plan_actions,
            self.selector_catalog,
            self.context.round,
            self.window().chain_eval_slot(plan.plan_actions),
            cap_by_key=caps,
            finish_early=plan.finish_early,
            budget_per_slot=self.budget_per_slot,
        )
        return phases, results

    @staticmethod
    def _first_complete_in_group(analysis: ChainUIAnalysis, window: SlotWindow) -> Optional[str]:
        # main before bonus, slot by slot
        return analysis.first_complete_in(window.keys())

    def _options(self, plan: CombatantPlan, current: str, two_conc: bool) -> List[Dict[str, Any]]:
        instant = set(self.catalog.instant_keys())
        actions = []
        for action in self.selector_catalog:
            if two_conc and action.key != MOVE_ACTION_KEY and action.key != current:
                continue
            # instantaneous actions unlock once the round's instant choice is made
            if action.key in instant and plan.instant_available and action.key != current:
                continue
            actions.append(action)
        if not actions:
            return [{"value": NO_ACTION, "label": "-", "selected": True}]
        return selector_options(actions, current)

    def build_view(self, observer: Observer, combatant_id: str) -> CombatantView:
        info = self._combatant(combatant_id)
        if not self._can_view(observer, info):
            raise PlanAuthorizationError(MSG_NOT_OWNER, combatant_id)
        editable = not (observer.is_gm and info.player_owned)

        ctx = self.context
        window = self.window()
        plan = self.plan(combatant_id)
        flags = plan.flags()
        two_conc = flags.count_on() >= MAX_ACTIVE_CONC_FLAGS

        phases, results = self._chain_results(plan)
        analysis = self._analysis(plan, window.chain_eval_slot(plan.plan_actions))
        by_position = {ph.position: (ph, res) for ph, res in zip(phases, results)}

        mctx = self._movement_context(info)
        token_id = info.token_id
        group_used = self.governor.group_used(token_id, window) if token_id else 0.0

        slots: List[SlotView] = []
        displayed: List[DisplayedPhaseView] = []
        for ph in build_phases(ctx.round, self.rounds_shown, plan.bonus_count, INTERNAL_SLOTS):
            analysed, result = by_position.get(ph.position, (ph, ChainPhaseResult()))
            is_current = ph.round == window.round and window.start <= ph.slot <= window.end
            main = self._sub_slot(plan, ph, ph.main_key, analysis, is_current, two_conc, group_used, mctx, token_id)
            bonus = None
            if ph.has_bonus or analysed.has_bonus:
                bonus = self._sub_slot(plan, ph, ph.bonus_key, analysis, is_current, two_conc, group_used, mctx, token_id)
            inc_text, inc_penalty = ("", "")
            if token_id:
                inc_text, inc_penalty = self.governor.incidental_overlay(token_id, ph, mctx)
            slots.append(SlotView(
                round=ph.round,
                slot=ph.slot,
                is_current=is_current,
                status=result.status_label(),
                main=main,
                bonus=bonus,
                incidental_text=inc_text,
                incidental_penalty=inc_penalty,
            ))

        spp = window.slots_per_phase
        for offset in range(self.rounds_shown):
            rnd = ctx.round + offset
            for phase in range(1, window.phase_count + 1):
                start = (phase - 1) * spp + 1
                if start > INTERNAL_SLOTS:
                    break
                end = min(INTERNAL_SLOTS, start + spp - 1)
                covered = [by_position[(rnd, s)][1] for s in range(start, end + 1) if (rnd, s) in by_position]
                displayed.append(DisplayedPhaseView(
                    round=rnd,
                    phase=phase,
                    start=start,
                    end=end,
                    is_current=rnd == window.round and phase == window.phase,
                    status=aggregate_status(covered),
                ))

        return CombatantView(
            combatant_id=combatant_id,
            name=info.name,
            editable=editable,
            read_only_reason=None if editable else MSG_GM_READ_ONLY,
            round=ctx.round,
            phase=window.phase,
            phase_count=window.phase_count,
            slots_per_phase=spp,
            window_start=window.start,
            window_end=window.end,
            bonus_count=plan.bonus_count,
            instant_action=plan.instant_action,
            instant_options=instant_options(self.catalog.actions, plan.instant_action),
            conc_flags=flags.model_dump(),
            hold_action=plan.hold_action.model_dump(),
            two_conc_move_only=two_conc,
            reminders=self.reminders(plan),
            phases=displayed,
            slots=slots,
            catalog_version=self.catalog.version,
        )

    def _sub_slot(
        self,
        plan: CombatantPlan,
        ph: PhaseSlot,
        key: str,
        analysis: ChainUIAnalysis,
        is_current: bool,
        two_conc: bool,
        group_used: float,
        mctx: MovementContext,
        token_id: Optional[str],
    ) -> SubSlotView:
        value = plan.action_at(key)
        complete = key in analysis.complete
        if complete and value == MOVE_ACTION_KEY and is_current and group_used <= ALLOC_EPS:
            complete = False
        penalty = analysis.penalty_text.get(key, "")
        finish_early = bool(plan.finish_early.get(key))
        show_finish = bool(
            self.selector_catalog.is_range(value) and is_current and (penalty or finish_early)
        )
        overlay = ""
        if value == MOVE_ACTION_KEY and token_id:
            overlay = self.governor.move_overlay(token_id, ph, key, mctx)
        return SubSlotView(
            key=key,
            value=value,
            options=self._options(plan, value, two_conc),
            complete=complete,
            invalid=key in analysis.invalid,
            penalty_text=penalty,
            short=analysis.short.get(key, ""),
            need=analysis.need.get(key, ""),
            finish_early=finish_early,
            show_finish_early=show_finish,
            overlay=overlay,
        )

    # ── 历史 ──

    def history(self, observer: Observer, combatant_id: str, rounds: Optional[int] = None) -> List[HistoryRow]:
        """Rows ``{round, slot, main, bonus}`` of the last N rounds with any selection."""
        info = self._combatant(combatant_id)
        if not self._can_view(observer, info):
            raise PlanAuthorizationError(MSG_NOT_OWNER, combatant_id)
        count = max(1, int(rounds or self.history_rounds))
        now = self.context.round
        plan = self.plan(combatant_id)
        rows: List[HistoryRow] = []
        for rnd in range(max(1, now - (count - 1)), now + 1):
            for slot in range(1, INTERNAL_SLOTS + 1):
                main = plan.action_at(phase_key(rnd, slot, MAIN))
                bonus = plan.action_at(phase_key(rnd, slot, BONUS))
                if main == NO_ACTION and bonus == NO_ACTION:
                    continue
                rows.append(HistoryRow(
                    round=rnd,
                    slot=slot,
                    main=self.catalog.label_for(main),
                    bonus=self.catalog.label_for(bonus),
                ))
        return rows
