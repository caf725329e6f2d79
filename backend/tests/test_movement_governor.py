import pytest

from phase_tracker.combat.models import CombatantPlan, ConcentrationFlags
from phase_tracker.combat.movement import (
    MSG_LOAD_CAP,
    MSG_NO_SELECTION,
    MSG_PHASE_CAP,
    MSG_SLOT_LIMIT,
    GridGeometry,
    MovementContext,
    MovementGovernor,
    TokenRef,
    allocate_across_slots,
)
from phase_tracker.combat.pace import ActorMovementStats, PaceRate
from phase_tracker.combat.phases import SlotWindow, build_phases

# 100 px = 5 ft, so 20 px per foot
GEOMETRY = GridGeometry(size=100, distance=5, gridless=True)


def _ctx(
    plan_actions,
    phase=1,
    round_number=1,
    load_fraction=0.5,
    flags=None,
    slots_per_phase=1,
    stats=None,
    instant_action="available",
):
    plan = CombatantPlan(
        plan_actions=plan_actions,
        conc_flags=flags or ConcentrationFlags(),
        instant_action=instant_action,
    )
    return MovementContext(
        combat_id="c1",
        window=SlotWindow.from_turn(round_number, phase, 4, slots_per_phase),
        plan=plan,
        stats=stats or ActorMovementStats(bmr=16.0, load_fraction=load_fraction),
    )


def _dash_stats():
    return ActorMovementStats(
        bmr=16.0,
        load_fraction=0.1,
        raw_rates=[PaceRate(pace="Walk", per_phase=16), PaceRate(pace="Dash", per_phase=40)],
    )


def _governor() -> MovementGovernor:
    return MovementGovernor(geometry=GEOMETRY)


def test_explicit_move_is_clamped_to_bmr():
    gov = _governor()
    token = TokenRef("t1", 0, 0)
    ctx = _ctx({"r1p1m": "move-bmr"})

    decision = gov.request_move(token, 400, 0, ctx)

    assert decision.outcome == "clamp"
    assert decision.x == pytest.approx(320)
    assert decision.y == pytest.approx(0)
    assert decision.pending.allocations["r1p1m"] == pytest.approx(16)

    gov.commit(decision.pending)
    overlay = gov.move_overlay("t1", build_phases(1, 1, 0)[0], "r1p1m", ctx)
    assert overlay == "16.0 / 16.0 ft\nTotal 16.0 ft\nWalk"


def test_boost_after_moving_half_bmr_in_previous_group():
    gov = _governor()
    plan = {"r1p1m": "move-bmr", "r1p2m": "move-bmr"}

    first = gov.request_move(TokenRef("t1", 0, 0), 200, 0, _ctx(plan, load_fraction=0.1))
    assert first.outcome == "accept"
    gov.commit(first.pending)
    gov.on_turn_advance()

    second = gov.request_move(TokenRef("t1", 200, 0), 600, 0, _ctx(plan, phase=2, load_fraction=0.1))
    assert second.outcome == "accept"
    assert second.pending.allocations["r1p2m"] == pytest.approx(20)
    assert second.pending.per_slot_max["r1p2m"] == pytest.approx(20)


def test_no_boost_under_heavy_load():
    gov = _governor()
    plan = {"r1p1m": "move-bmr", "r1p2m": "move-bmr"}

    first = gov.request_move(TokenRef("t1", 0, 0), 200, 0, _ctx(plan, load_fraction=0.5))
    gov.commit(first.pending)
    gov.on_turn_advance()

    second = gov.request_move(TokenRef("t1", 200, 0), 600, 0, _ctx(plan, phase=2, load_fraction=0.5))
    assert second.outcome == "clamp"
    assert second.pending.allocations["r1p2m"] == pytest.approx(16)


def test_boost_carries_over_a_round_boundary():
    gov = _governor()
    plan = {"r1p4m": "move-bmr", "r2p1m": "move-bmr"}

    first = gov.request_move(TokenRef("t1", 0, 0), 200, 0, _ctx(plan, phase=4, load_fraction=0.1))
    gov.commit(first.pending)
    gov.on_round_change("c1", 2, 1)

    second = gov.request_move(TokenRef("t1", 200, 0), 600, 0, _ctx(plan, round_number=2, load_fraction=0.1))
    assert second.outcome == "accept"
    assert second.pending.allocations["r2p1m"] == pytest.approx(20)


# ===== Dash / 专注 =====

def test_dash_on_final_slot():
    gov = _governor()
    ctx = _ctx({"r1p4m": "move-bmr"}, phase=4, stats=_dash_stats())

    decision = gov.request_move(TokenRef("t1", 0, 0), 1000, 0, ctx)

    assert decision.outcome == "clamp"
    assert decision.pending.per_slot_max["r1p4m"] == pytest.approx(40)
    assert decision.pending.allocations["r1p4m"] == pytest.approx(40)
    assert decision.x == pytest.approx(800)


def test_no_dash_before_final_slot():
    gov = _governor()
    ctx = _ctx({"r1p3m": "move-bmr", "r1p4m": "move-bmr"}, phase=3, stats=_dash_stats())

    decision = gov.request_move(TokenRef("t1", 0, 0), 1000, 0, ctx)

    assert decision.pending.per_slot_max["r1p3m"] == pytest.approx(16)
    assert decision.x == pytest.approx(320)


def test_dash_needs_unused_instant_action():
    gov = _governor()
    ctx = _ctx({"r1p4m": "move-bmr"}, phase=4, stats=_dash_stats(), instant_action="drop-item")

    decision = gov.request_move(TokenRef("t1", 0, 0), 1000, 0, ctx)

    assert decision.pending.per_slot_max["r1p4m"] == pytest.approx(16)
    assert decision.x == pytest.approx(320)


def test_dash_needs_move_selected_on_final_slot():
    gov = _governor()
    both = _ctx({"r1p3m": "move-bmr", "r1p4m": "move-bmr"}, phase=2, slots_per_phase=2, stats=_dash_stats())
    decision = gov.request_move(TokenRef("t1", 0, 0), 1200, 0, both)
    assert decision.pending.per_slot_max == pytest.approx({"r1p3m": 16, "r1p4m": 40})
    assert decision.x == pytest.approx(1120)

    gov = _governor()
    melee_last = _ctx({"r1p3m": "move-bmr", "r1p4m": "melee"}, phase=2, slots_per_phase=2, stats=_dash_stats())
    decision = gov.request_move(TokenRef("t1", 0, 0), 1200, 0, melee_last)
    assert decision.pending.per_slot_max == pytest.approx({"r1p3m": 16})
    assert decision.x == pytest.approx(320)


def test_one_concentration_flag_halves_dash_and_slot_cap():
    flags = ConcentrationFlags(concentration=True)

    dash = _governor().request_move(
        TokenRef("t1", 0, 0), 1000, 0, _ctx({"r1p4m": "move-bmr"}, phase=4, flags=flags, stats=_dash_stats())
    )
    assert dash.pending.per_slot_max["r1p4m"] == pytest.approx(20)
    assert dash.x == pytest.approx(400)

    walk = _governor().request_move(
        TokenRef("t1", 0, 0), 1000, 0, _ctx({"r1p1m": "move-bmr"}, flags=flags, stats=_dash_stats())
    )
    assert walk.pending.per_slot_max["r1p1m"] == pytest.approx(8)
    assert walk.x == pytest.approx(160)


def test_one_concentration_flag_blocks_boost():
    gov = _governor()
    flags = ConcentrationFlags(concentration=True)
    plan = {"r1p1m": "move-bmr", "r1p2m": "move-bmr"}

    first = gov.request_move(TokenRef("t1", 0, 0), 160, 0, _ctx(plan, load_fraction=0.1, flags=flags))
    assert first.outcome == "accept"
    gov.commit(first.pending)
    gov.on_turn_advance()

    second = gov.request_move(TokenRef("t1", 160, 0), 600, 0, _ctx(plan, phase=2, load_fraction=0.1, flags=flags))
    assert second.outcome == "clamp"
    assert second.pending.per_slot_max["r1p2m"] == pytest.approx(8)
    assert second.pending.allocations["r1p2m"] == pytest.approx(8)


def test_movement_disabled_without_selection():
    decision = _governor().request_move(TokenRef("t1", 0, 0), 100, 0, _ctx({}))
    assert decision.outcome == "reject"
    assert decision.warning == MSG_NO_SELECTION


def test_exhausted_slot_is_rejected():
    gov = _governor()
    ctx = _ctx({"r1p1m": "move-bmr"})
    first = gov.request_move(TokenRef("t1", 0, 0), 320, 0, ctx)
    assert first.outcome == "accept"
    gov.commit(first.pending)

    second = gov.request_move(TokenRef("t1", 320, 0), 400, 0, ctx)
    assert second.outcome == "reject"
    assert second.warning == MSG_SLOT_LIMIT


def test_round_cap_blocks_further_movement():
    gov = _governor()
    # two concentration toggles: Creep round cap (0.5 x BMR = 8 ft)
    flags = ConcentrationFlags(concentration=True, hold_position=True)
    ctx = _ctx({"r1p1m": "move-bmr"}, flags=flags)
    first = gov.request_move(TokenRef("t1", 0, 0), 400, 0, ctx)
    assert first.outcome == "clamp"
    assert first.pending.allocations["r1p1m"] == pytest.approx(8)
    gov.commit(first.pending)

    second = gov.request_move(TokenRef("t1", 160, 0), 200, 0, ctx)
    assert second.outcome == "reject"
    assert second.warning == MSG_LOAD_CAP


def test_incidental_move_is_capped_at_run_fraction():
    gov = _governor()
    ctx = _ctx({"r1p1m": "melee"})

    decision = gov.request_move(TokenRef("t1", 0, 0), 400, 0, ctx)
    assert decision.outcome == "clamp"
    assert decision.pending.allocations["i1p1-1"] == pytest.approx(12)
    gov.commit(decision.pending)

    text, penalty = gov.incidental_overlay("t1", build_phases(1, 1, 0)[0], ctx)
    assert text == "12.0 / 12.0 ft\nRun (cap Run)"
    assert penalty == "-75"

    again = gov.request_move(TokenRef("t1", 240, 0), 300, 0, ctx)
    assert again.outcome == "reject"
    assert again.warning == MSG_PHASE_CAP


def test_missing_bmr_fails_open():
    gov = _governor()
    ctx = _ctx({"r1p1m": "move-bmr"})
    ctx.stats = ActorMovementStats()
    decision = gov.request_move(TokenRef("t1", 0, 0), 4000, 0, ctx)
    assert decision.outcome == "accept"
    assert decision.enforced is False


def test_disabled_governor_tracks_nothing():
    gov = MovementGovernor(geometry=GEOMETRY, enabled=False)
    decision = gov.request_move(TokenRef("t1", 0, 0), 4000, 0, _ctx({}))
    assert decision.allowed and decision.enforced is False
    assert gov.store.tracks == {}


def test_moves_by_other_users_are_not_enforced():
    gov = _governor()
    decision = gov.request_move(TokenRef("t1", 0, 0), 4000, 0, _ctx({}), user_id="u2", enforcing_user_id="u1")
    assert decision.outcome == "accept"
    assert decision.enforced is False


def test_reset_group_returns_token_to_origin():
    gov = _governor()
    ctx = _ctx({"r1p1m": "move-bmr"})
    decision = gov.request_move(TokenRef("t1", 0, 0), 200, 0, ctx)
    gov.commit(decision.pending)

    point = gov.reset_group(TokenRef("t1", 200, 0), ctx)
    assert (point.x, point.y) == (0, 0)
    assert gov.group_used("t1", ctx.window) == 0
    assert gov.reset_group(TokenRef("t1", 0, 0), ctx) is None


def test_preview_does_not_commit():
    gov = _governor()
    ctx = _ctx({"r1p1m": "move-bmr"})
    preview = gov.preview(TokenRef("t1", 0, 0), 100, 0, ctx)
    assert preview.allocations == {"r1p1m": pytest.approx(5)}
    assert gov.group_used("t1", ctx.window) == 0

    overlay = gov.move_overlay("t1", build_phases(1, 1, 0)[0], "r1p1m", ctx)
    assert overlay.startswith("5.0 / 16.0 ft\nTotal 5.0 ft")


def test_allocate_across_slots_fills_in_order():
    allocations, overflow = allocate_across_slots(
        ["a", "b"], {"a": 10}, 12, {"a": 16, "b": 16},
    )
    assert allocations == {"a": 6, "b": 6}
    assert overflow == 0

    allocations, overflow = allocate_across_slots(["a"], {}, 20, {"a": 16})
    assert allocations == {"a": 16}
    assert overflow == 4
