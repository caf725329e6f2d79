import pytest

from phase_tracker.combat.catalog import load_action_catalog
from phase_tracker.combat.movement import MSG_UNDONE, GridGeometry, MovementGovernor
from phase_tracker.services.plan_replication import (
    MessageChannel,
    PlanChangeBus,
    PlanHolder,
    PlanReplica,
    ReplicationMessage,
)
from phase_tracker.services.plan_store import InMemoryPlanStore
from phase_tracker.services.planning_session import (
    MSG_CONC_CLEAR,
    MSG_CONC_LIMIT,
    MSG_DERIVED_FIELD,
    MSG_FINISH_EARLY_CURRENT,
    MSG_FINISH_EARLY_RANGE,
    MSG_GM_READ_ONLY,
    MSG_HOLD_NEEDS_COMPLETE,
    MSG_INSTANT_LOCKED,
    MSG_MOVE_ONLY,
    CombatantInfo,
    CombatPlanningSession,
    Observer,
    PlanAuthorizationError,
    PlanEdit,
    PlanEditRejectedError,
    UnknownCombatError,
)
from phase_tracker.services.turn_context import StaticTurnContextProvider, TurnContext

PLAYER = Observer(user_id="p1")
OTHER = Observer(user_id="p2")
GM = Observer(user_id="gm", is_gm=True)


def _combatants():
    return [
        CombatantInfo(
            combatant_id="hero",
            name="Hero",
            owner_ids=["p1"],
            token_id="t1",
            movement={"bmr": 16},
            actor_system={"encumbrance": {"percent": 50}},
        ),
        CombatantInfo(combatant_id="orc", name="Orc"),
    ]


def _session(replica, context=None):
    session = CombatPlanningSession(
        "c1",
        replica,
        load_action_catalog().catalog,
        turn_provider=StaticTurnContextProvider(context or TurnContext()),
        governor=MovementGovernor(geometry=GridGeometry(size=100, distance=5, gridless=True)),
    )
    for info in _combatants():
        session.register_combatant(info)
    return session


async def _holder_session(context=None):
    store = InMemoryPlanStore()
    bus = PlanChangeBus()
    replica = PlanReplica("gm", MessageChannel(), holder=PlanHolder(store, bus))
    bus.subscribe(replica.apply_snapshot)
    session = _session(replica, context)
    await session.start()
    return session, store


# ===== 授权 =====

@pytest.mark.asyncio
async def test_gm_cannot_edit_player_owned_plan():
    session, store = await _holder_session()

    with pytest.raises(PlanAuthorizationError) as exc_info:
        await session.set_phase_action(GM, "hero", "r1p1m", "melee")
    assert str(exc_info.value) == MSG_GM_READ_ONLY

    with pytest.raises(PlanAuthorizationError):
        await session.set_phase_action(OTHER, "hero", "r1p1m", "melee")

    assert session.replica.pending_for("c1") == {}
    assert await store.load("c1") == {"combatants": {}, "meta": {}}

    result = await session.set_phase_action(GM, "orc", "r1p1m", "melee")
    assert result.persisted is True


@pytest.mark.asyncio
async def test_unknown_combatant_and_bad_values():
    session, _ = await _holder_session()
    with pytest.raises(UnknownCombatError):
        await session.set_phase_action(PLAYER, "ghost", "r1p1m", "melee")
    with pytest.raises(ValueError):
        await session.set_phase_action(PLAYER, "hero", "slot-one", "melee")
    with pytest.raises(ValueError):
        await session.set_phase_action(PLAYER, "hero", "r1p1m", "juggle")


# ===== 编辑 =====

@pytest.mark.asyncio
async def test_phase_action_is_persisted_and_readable():
    session, store = await _holder_session()

    result = await session.on_plan_edit(PLAYER, PlanEdit(kind="phase_action", combatant_id="hero", key="r1p1m", value="melee"))

    assert result.persisted is True
    assert session.plan("hero").action_at("r1p1m") == "melee"
    saved = (await store.load("c1"))["combatants"]["hero"]
    assert saved["plan_actions"] == {"r1p1m": "melee"}
    assert saved["plan_auto"] == {"r1p1m": False}
    assert saved["plan_costs"] == {"r1p1m": None}

    await session.set_phase_action(PLAYER, "hero", "r1p1m", "-")
    assert session.plan("hero").action_at("r1p1m") == "none"


@pytest.mark.asyncio
async def test_non_holder_edit_is_visible_before_confirmation():
    channel = MessageChannel()
    session = _session(PlanReplica("p1", channel))
    await session.start()

    result = await session.set_phase_action(PLAYER, "hero", "r1p1m", "melee")

    assert result.persisted is False
    assert session.plan("hero").action_at("r1p1m") == "melee"
    # initState + four field writes
    assert channel.qsize() == 5


@pytest.mark.asyncio
async def test_concentration_requires_blank_group_and_is_limited_to_two():
    session, _ = await _holder_session()
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "melee")

    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.toggle_concentration_flag(PLAYER, "hero", "concentration", True)
    assert str(exc_info.value) == MSG_CONC_CLEAR

    await session.set_phase_action(PLAYER, "hero", "r1p1m", "-")
    await session.toggle_concentration_flag(PLAYER, "hero", "concentration", True)
    plan = session.plan("hero")
    assert plan.conc_flags.concentration is True
    assert plan.mental_focus_start_round == 1

    await session.toggle_concentration_flag(PLAYER, "hero", "hold_position", True)
    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.toggle_concentration_flag(PLAYER, "hero", "spell_preparation", True)
    assert str(exc_info.value) == MSG_CONC_LIMIT
    assert session.plan("hero").flags().count_on() == 2


@pytest.mark.asyncio
async def test_two_toggles_only_allow_move():
    session, _ = await _holder_session()
    await session.toggle_concentration_flag(PLAYER, "hero", "concentration", True)
    await session.toggle_concentration_flag(PLAYER, "hero", "partial_dodge_block", True)

    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.set_phase_action(PLAYER, "hero", "r1p2m", "melee")
    assert str(exc_info.value) == MSG_MOVE_ONLY

    await session.set_phase_action(PLAYER, "hero", "r1p2m", "move-bmr")
    view = session.build_view(PLAYER, "hero")
    assert view.two_conc_move_only is True
    assert [o["value"] for o in view.slots[0].main.options] == ["none", "move-bmr"]


@pytest.mark.asyncio
async def test_turning_all_toggles_off_clears_mental_focus():
    session, _ = await _holder_session()
    await session.toggle_concentration_flag(PLAYER, "hero", "spell_preparation", True)
    await session.toggle_concentration_flag(PLAYER, "hero", "spell_preparation", False)
    plan = session.plan("hero")
    assert plan.flags().count_on() == 0
    assert plan.mental_focus_start_round == 0


@pytest.mark.asyncio
async def test_hold_action_needs_a_complete_action():
    session, _ = await _holder_session()

    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.toggle_concentration_flag(PLAYER, "hero", "hold_action", True)
    assert str(exc_info.value) == MSG_HOLD_NEEDS_COMPLETE

    await session.set_phase_action(PLAYER, "hero", "r1p1m", "draw-weapon")
    await session.toggle_concentration_flag(PLAYER, "hero", "hold_action", True)

    plan = session.plan("hero")
    assert plan.conc_flags.hold_action is True
    assert plan.hold_action.pending_key == "r1p1m"
    assert plan.hold_action.held_label == "Draw Weapon/Item"
    assert plan.hold_action.held_action == "draw-weapon"

    await session.toggle_concentration_flag(PLAYER, "hero", "hold_action", False)
    assert session.plan("hero").hold_action.pending_key is None


@pytest.mark.asyncio
async def test_finish_early_rules():
    session, _ = await _holder_session()
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "draw-weapon")
    await session.set_phase_action(PLAYER, "hero", "r1p3m", "melee")

    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.set_finish_early(PLAYER, "hero", "r1p3m", True)
    assert str(exc_info.value) == MSG_FINISH_EARLY_CURRENT

    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.set_finish_early(PLAYER, "hero", "r1p1m", True)
    assert str(exc_info.value) == MSG_FINISH_EARLY_RANGE

    await session.set_phase_action(PLAYER, "hero", "r1p1m", "melee")
    await session.set_finish_early(PLAYER, "hero", "r1p1m", True)
    assert session.plan("hero").finish_early == {"r1p1m": True}

    # switching to a fixed-cost action drops the flag
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "draw-weapon")
    assert session.plan("hero").finish_early == {}


@pytest.mark.asyncio
async def test_instant_actions_unlock_after_instant_choice():
    session, _ = await _holder_session()

    options = [o["value"] for o in session.build_view(PLAYER, "hero").slots[0].main.options]
    assert "drop-item" not in options and "cast-inst" not in options

    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.set_phase_action(PLAYER, "hero", "r1p1m", "cast-inst")
    assert str(exc_info.value) == MSG_INSTANT_LOCKED
    assert "r1p1m" not in session.plan("hero").plan_actions

    await session.set_instant_action(PLAYER, "hero", "cast-inst")
    assert session.plan("hero").instant_available is False

    options = [o["value"] for o in session.build_view(PLAYER, "hero").slots[0].main.options]
    assert "drop-item" in options
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "cast-inst")
    assert session.plan("hero").plan_actions["r1p1m"] == "cast-inst"

    with pytest.raises(ValueError):
        await session.set_instant_action(PLAYER, "hero", "melee")

    await session.on_turn_advance(context=TurnContext(round=2))
    assert session.plan("hero").instant_action == "available"
    assert session.meta().virtual_round == 2


@pytest.mark.asyncio
async def test_bonus_count_is_clamped_and_autofill_reruns():
    session, store = await _holder_session()
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "get-item")

    await session.set_bonus_count(PLAYER, "hero", 2.6)

    plan = session.plan("hero")
    assert plan.bonus_count == 2
    assert plan.plan_actions["r1p2m"] == "get-item"
    assert plan.plan_actions["r1p3m"] == "get-item"
    assert plan.plan_costs["r1p1m"] == 3
    assert (await store.load("c1"))["combatants"]["hero"]["bonus_count"] == 2

    await session.set_bonus_count(PLAYER, "hero", 9)
    assert session.plan("hero").bonus_count == 4
    with pytest.raises(ValueError):
        await session.set_bonus_count(PLAYER, "hero", "lots")


# ===== 提醒 =====

@pytest.mark.asyncio
async def test_endurance_reminder_every_sixth_round():
    session, _ = await _holder_session(TurnContext(round=6))
    assert session.reminders(session.plan("hero")).endurance is True

    await session.acknowledge_endurance(PLAYER, "hero")
    reminders = session.reminders(session.plan("hero"))
    assert reminders.endurance is False
    assert reminders.round == 6


@pytest.mark.asyncio
async def test_mental_focus_reminder_after_six_rounds_of_one_toggle():
    session, _ = await _holder_session()
    await session.toggle_concentration_flag(PLAYER, "hero", "concentration", True)
    assert session.reminders(session.plan("hero")).mental_focus is False

    await session.on_turn_advance(context=TurnContext(round=6))
    assert session.reminders(session.plan("hero")).mental_focus is True

    await session.on_plan_edit(PLAYER, PlanEdit(kind="ack_mental_focus", combatant_id="hero"))
    assert session.reminders(session.plan("hero")).mental_focus is False


# ===== 移动 =====

@pytest.mark.asyncio
async def test_move_slot_needs_movement_to_count_as_complete():
    session, _ = await _holder_session()
    await session.on_turn_advance(active_combatant_id="hero", context=TurnContext())
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "move-bmr")

    assert session.build_view(PLAYER, "hero").slots[0].main.complete is False

    decision = session.on_position_request(PLAYER, "hero", 200, 0)
    assert decision.outcome == "accept" and decision.enforced
    session.on_position_committed(PLAYER, "hero", 200, 0)

    view = session.build_view(PLAYER, "hero")
    assert view.slots[0].main.complete is True
    assert view.slots[0].main.overlay.startswith("10.0 / 16.0 ft")


@pytest.mark.asyncio
async def test_changing_move_selector_undoes_the_group_move():
    session, _ = await _holder_session()
    await session.on_turn_advance(active_combatant_id="hero", context=TurnContext())
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "move-bmr")
    session.on_position_request(PLAYER, "hero", 200, 0)
    session.on_position_committed(PLAYER, "hero", 200, 0)

    result = await session.set_phase_action(PLAYER, "hero", "r1p1m", "melee")

    assert result.notice == MSG_UNDONE
    assert (result.token_x, result.token_y) == (0, 0)
    assert session.combatants["hero"].token_x == 0
    assert session.governor.group_used("t1", session.window()) == 0


@pytest.mark.asyncio
async def test_inactive_combatant_moves_freely():
    session, _ = await _holder_session()
    decision = session.on_position_request(PLAYER, "hero", 4000, 0)
    assert decision.allowed and decision.enforced is False


@pytest.mark.asyncio
async def test_only_owner_or_gm_may_move_a_token():
    session, _ = await _holder_session()
    await session.on_turn_advance(active_combatant_id="hero", context=TurnContext())

    with pytest.raises(PlanAuthorizationError):
        session.on_position_request(OTHER, "hero", 50, 0)
    with pytest.raises(PlanAuthorizationError):
        session.on_position_changing(OTHER, "hero", 50, 0)
    with pytest.raises(PlanAuthorizationError):
        session.on_position_committed(OTHER, "hero", 50, 0)
    assert session.combatants["hero"].token_x == 0

    session.on_position_committed(GM, "hero", 50, 0)
    assert session.combatants["hero"].token_x == 50


# ===== 复制消息 =====

def _set_path(path, value):
    return ReplicationMessage(type="setStatePath", combat_id="c1", path=path, value=value)


@pytest.mark.asyncio
async def test_state_messages_pass_the_write_boundary():
    session, store = await _holder_session()

    with pytest.raises(PlanAuthorizationError):
        await session.apply_state_message(OTHER, _set_path("combatants.hero.bonus_count", 1))

    three = {"concentration": True, "hold_position": True, "partial_dodge_block": True}
    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.apply_state_message(PLAYER, _set_path("combatants.hero.conc_flags", three))
    assert str(exc_info.value) == MSG_CONC_LIMIT
    assert session.plan("hero").flags().count_on() == 0

    with pytest.raises(PlanEditRejectedError) as exc_info:
        await session.apply_state_message(PLAYER, _set_path("combatants.hero.plan_costs", {}))
    assert str(exc_info.value) == MSG_DERIVED_FIELD

    with pytest.raises(PlanAuthorizationError):
        await session.apply_state_message(PLAYER, _set_path("meta", {"virtual_round": 9}))
    with pytest.raises(ValueError):
        await session.apply_state_message(PLAYER, _set_path("combatants.hero.plan_actions", "melee"))

    assert await session.apply_state_message(PLAYER, _set_path("combatants.hero.plan_actions.r1p2m", "melee"))
    assert await session.apply_state_message(PLAYER, _set_path("combatants.hero.conc_flags.hold_position", True))
    assert await session.apply_state_message(
        PLAYER, _set_path("combatants.hero.plan_actions", {"r1p2m": "melee", "r1p3m": "get-item"})
    )

    plan = session.plan("hero")
    assert plan.flags().hold_position is True
    assert plan.mental_focus_start_round == 1
    assert plan.plan_actions["r1p3m"] == "get-item"
    assert (await store.load("c1"))["combatants"]["hero"]["plan_actions"]["r1p2m"] == "melee"

    assert await session.apply_state_message(GM, _set_path("combatants.orc.bonus_count", 2))
    assert session.plan("orc").bonus_count == 2


# ===== 视图 / 历史 =====

@pytest.mark.asyncio
async def test_chain_broken_inside_current_group_asks_to_continue():
    session, _ = await _holder_session(TurnContext(round=1, phase=2, phase_count=2, ap_per_phase=2))
    await session.set_phase_action(PLAYER, "hero", "r1p3m", "prone-stand")
    await session.set_phase_action(PLAYER, "hero", "r1p4m", "shift-item")

    view = session.build_view(PLAYER, "hero")
    slots = {s.slot: s for s in view.slots if s.round == 1}
    assert slots[3].main.invalid is True
    assert slots[4].main.need == "prone-stand"
    assert slots[4].main.complete is True
    assert slots[4].main.invalid is False


@pytest.mark.asyncio
async def test_gm_view_of_player_plan_is_read_only():
    session, _ = await _holder_session()
    view = session.build_view(GM, "hero")
    assert view.editable is False
    assert view.read_only_reason == MSG_GM_READ_ONLY
    assert len(view.slots) == 4
    assert [p.phase for p in view.phases] == [1, 2, 3, 4]

    with pytest.raises(PlanAuthorizationError):
        session.build_view(OTHER, "hero")


@pytest.mark.asyncio
async def test_history_lists_rounds_with_selections():
    session, _ = await _holder_session()
    await session.set_phase_action(PLAYER, "hero", "r1p1m", "melee")
    await session.set_phase_action(PLAYER, "hero", "r1p3m", "move-bmr")

    rows = session.history(PLAYER, "hero")
    assert [(r.round, r.slot, r.main, r.bonus) for r in rows] == [
        (1, 1, "Melee", "-"),
        (1, 3, "Move Your BMR", "-"),
    ]

    with pytest.raises(PlanAuthorizationError):
        session.history(OTHER, "hero")
