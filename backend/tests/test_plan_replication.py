import asyncio

import pytest

from phase_tracker.services.plan_replication import (
    MessageChannel,
    PlanChangeBus,
    PlanHolder,
    PlanReplica,
    ReplicationMessage,
)
from phase_tracker.services.plan_store import InMemoryPlanStore, ReplicationWriteError


class _FailingStore(InMemoryPlanStore):
    async def write_path(self, combat_id, path, value):
        raise ReplicationWriteError(combat_id, path, "offline")


class _GatedStore(InMemoryPlanStore):
    """First write waits for ``release``; every later write fails."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.writes = 0

    async def write_path(self, combat_id, path, value):
        self.writes += 1
        if self.writes == 1:
            self.entered.set()
            await self.release.wait()
            return await super().write_path(combat_id, path, value)
        raise ReplicationWriteError(combat_id, path, "offline")


def _holder_replica(store=None):
    bus = PlanChangeBus()
    holder = PlanHolder(store or InMemoryPlanStore(), bus)
    channel = MessageChannel()
    replica = PlanReplica("gm", channel, holder=holder)
    bus.subscribe(replica.apply_snapshot)
    return holder, channel, replica


def test_message_wire_format():
    msg = ReplicationMessage.model_validate(
        {"type": "setStatePath", "combatId": "c1", "path": "meta", "value": {"virtual_round": 3}}
    )
    assert msg.combat_id == "c1"
    assert msg.to_wire() == {"type": "setStatePath", "combatId": "c1", "path": "meta", "value": {"virtual_round": 3}}
    assert ReplicationMessage(type="initState", combat_id="c1").to_wire() == {"type": "initState", "combatId": "c1"}


@pytest.mark.asyncio
async def test_holder_write_is_confirmed_and_published():
    holder, _, replica = _holder_replica()
    seen = []
    holder.change_bus.subscribe(lambda cid, state: seen.append((cid, state)))

    await replica.request_init_state("c1")
    ok = await replica.request_path_update("c1", "combatants.a.bonus_count", 2)

    assert ok is True
    assert not replica.has_pending("c1", "combatants.a.bonus_count")
    assert replica.read_state("c1")["combatants"]["a"]["bonus_count"] == 2
    assert seen[-1][0] == "c1"
    assert seen[-1][1]["combatants"]["a"]["bonus_count"] == 2


@pytest.mark.asyncio
async def test_failed_write_keeps_pending_value_visible():
    _, _, replica = _holder_replica(_FailingStore())
    await replica.request_init_state("c1")

    ok = await replica.request_path_update("c1", "combatants.a.instant_action", "drop-item")

    assert ok is False
    assert replica.has_pending("c1", "combatants.a.instant_action")
    assert replica.read_state("c1")["combatants"]["a"]["instant_action"] == "drop-item"
    assert replica.snapshot("c1")["combatants"] == {}


@pytest.mark.asyncio
async def test_queued_write_failure_is_not_hidden_by_earlier_success():
    store = _GatedStore()
    _, _, replica = _holder_replica(store)
    await replica.request_init_state("c1")
    path = "combatants.a.instant_action"

    first = asyncio.create_task(replica.request_path_update("c1", path, "drop-item"))
    await store.entered.wait()
    second = asyncio.create_task(replica.request_path_update("c1", path, "cast-inst"))
    await asyncio.sleep(0)
    assert replica.read_state("c1")["combatants"]["a"]["instant_action"] == "cast-inst"

    store.release.set()
    assert await first is True
    assert await second is False

    assert replica.has_pending("c1", path)
    assert replica.read_state("c1")["combatants"]["a"]["instant_action"] == "cast-inst"
    assert (await store.load("c1"))["combatants"]["a"]["instant_action"] == "drop-item"


@pytest.mark.asyncio
async def test_non_holder_forwards_messages_to_the_holder():
    holder, channel, holder_replica = _holder_replica()
    player = PlanReplica("p1", channel)
    holder.change_bus.subscribe(player.apply_snapshot)

    await player.request_init_state("c1")
    assert await player.request_path_update("c1", "combatants.a.bonus_count", 1) is False
    assert await player.request_path_update("c1", "combatants.a.bonus_count", 3) is False
    assert channel.qsize() == 3
    assert player.read_state("c1")["combatants"]["a"]["bonus_count"] == 3

    task = asyncio.create_task(holder.run(channel))
    try:
        await asyncio.wait_for(channel.join(), timeout=2)
    finally:
        task.cancel()

    assert holder_replica.snapshot("c1")["combatants"]["a"]["bonus_count"] == 3
    # the final confirmation matches the latest local value
    assert not player.has_pending("c1", "combatants.a.bonus_count")


@pytest.mark.asyncio
async def test_snapshot_keeps_unconfirmed_newer_values():
    channel = MessageChannel()
    player = PlanReplica("p1", channel)
    await player.request_path_update("c1", "combatants.a.bonus_count", 2)

    await player.apply_snapshot("c1", {"combatants": {"a": {"bonus_count": 1}}, "meta": {}})
    assert player.has_pending("c1", "combatants.a.bonus_count")
    assert player.read_state("c1")["combatants"]["a"]["bonus_count"] == 2

    await player.apply_snapshot("c1", {"combatants": {"a": {"bonus_count": 2}}, "meta": {}})
    assert not player.has_pending("c1", "combatants.a.bonus_count")


@pytest.mark.asyncio
async def test_holder_logs_and_drops_bad_messages():
    holder, _, _ = _holder_replica(_FailingStore())
    assert await holder.handle_message({"type": "setStatePath", "combatId": "c1", "path": "meta", "value": {}}) is False
    assert await holder.handle_message({"type": "bogus", "combatId": "c1"}) is False
    assert await holder.handle_message({"type": "initState", "combatId": "c1"}) is True


@pytest.mark.asyncio
async def test_forget_drops_snapshot_and_pending():
    _, _, replica = _holder_replica(_FailingStore())
    await replica.request_init_state("c1")
    await replica.request_path_update("c1", "meta", {"virtual_round": 2})
    replica.forget("c1")
    assert replica.pending_for("c1") == {}
    assert replica.read_state("c1") == {"combatants": {}, "meta": {}}
