import pytest

from phase_tracker.services.plan_store import (
    FirestorePlanStore,
    InMemoryPlanStore,
    ReplicationWriteError,
    create_plan_store,
)
from phase_tracker.utils import set_path


class _FakeSnapshot:
    def __init__(self, payload):
        self._payload = payload
        self.exists = payload is not None

    def to_dict(self):
        return self._payload or {}


class _FakeDocRef:
    def __init__(self, fail_updates=False):
        self.payload = None
        self.fail_updates = fail_updates
        self.calls = []

    def set(self, payload, merge=False):
        self.calls.append(("set", payload, merge))
        if merge and isinstance(self.payload, dict):
            merged = dict(self.payload)
            merged.update(payload or {})
            self.payload = merged
        else:
            self.payload = dict(payload or {})

    def get(self):
        return _FakeSnapshot(self.payload)

    def update(self, updates):
        self.calls.append(("update", updates))
        if self.fail_updates:
            raise RuntimeError("permission denied")
        merged = dict(self.payload or {})
        for path, value in (updates or {}).items():
            set_path(merged, path, value)
        self.payload = merged

    def delete(self):
        self.payload = None


class _DummyPlanStore(FirestorePlanStore):
    def __init__(self, fail_updates=False):
        self.collection = "combat_plans"
        self._refs = {}
        self._fail_updates = fail_updates

    def _combat_ref(self, combat_id: str):  # type: ignore[override]
        if combat_id not in self._refs:
            self._refs[combat_id] = _FakeDocRef(self._fail_updates)
        return self._refs[combat_id]


@pytest.mark.asyncio
async def test_firestore_store_initialises_once():
    store = _DummyPlanStore()
    assert await store.load("c1") is None

    state = await store.init_state("c1")
    assert state == {"combatants": {}, "meta": {}}

    await store.write_path("c1", "combatants.a.bonus_count", 2)
    again = await store.init_state("c1")
    assert again["combatants"]["a"]["bonus_count"] == 2


@pytest.mark.asyncio
async def test_firestore_store_uses_update_for_nested_paths():
    store = _DummyPlanStore()
    await store.init_state("c1")

    await store.write_path("c1", "combatants.a.plan_actions", {"r1p1m": "melee"})
    await store.write_path("c1", "meta", {"virtual_round": 2})

    calls = store._combat_ref("c1").calls
    assert calls[-2] == ("update", {"combatants.a.plan_actions": {"r1p1m": "melee"}})
    assert calls[-1] == ("set", {"meta": {"virtual_round": 2}}, True)

    state = await store.load("c1")
    assert state["combatants"]["a"]["plan_actions"] == {"r1p1m": "melee"}
    assert state["meta"] == {"virtual_round": 2}


@pytest.mark.asyncio
async def test_firestore_write_failure_is_wrapped():
    store = _DummyPlanStore(fail_updates=True)
    await store.init_state("c1")

    with pytest.raises(ReplicationWriteError) as exc_info:
        await store.write_path("c1", "combatants.a.bonus_count", 1)
    assert exc_info.value.path == "combatants.a.bonus_count"
    assert "permission denied" in str(exc_info.value)


@pytest.mark.asyncio
async def test_in_memory_store_copies_state():
    store = InMemoryPlanStore()
    state = await store.init_state("c1")
    state["combatants"]["x"] = {}

    assert await store.load("c1") == {"combatants": {}, "meta": {}}
    await store.write_path("c1", "combatants.a.instant_action", "drop-item")
    assert (await store.load("c1"))["combatants"]["a"]["instant_action"] == "drop-item"

    await store.delete("c1")
    assert await store.load("c1") is None


def test_create_plan_store_defaults_to_memory():
    assert isinstance(create_plan_store("memory"), InMemoryPlanStore)
