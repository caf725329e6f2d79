"""
计划状态复制

One holder owns the authoritative state of a combat and applies path-scoped
writes one at a time. Every observer (the holder's own replica included)
keeps a map of unconfirmed writes that is laid over the last known snapshot
on each read, so the user's latest selections are visible immediately.

Non-holders never write the store; they emit ``setStatePath`` /
``initState`` messages that only the holder consumes.
"""
import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from phase_tracker.combat.models import empty_combat_state
from phase_tracker.services.plan_store import PlanStore
from phase_tracker.utils import get_path, set_path

logger = logging.getLogger(__name__)

StateHandler = Callable[[str, Dict[str, Any]], Awaitable[None] | None]

_MISSING = object()


class ReplicationMessage(BaseModel):
    """Message sent from an observer to the holder."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["setStatePath", "initState"]
    combat_id: str = Field(alias="combatId")
    path: Optional[str] = None
    value: Any = None

    def to_wire(self) -> Dict[str, Any]:
        payload = {"type": self.type, "combatId": self.combat_id}
        if self.type == "setStatePath":
            payload["path"] = self.path
            payload["value"] = self.value
        return payload


class MessageChannel:
    """Asynchronous observer → holder channel."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[ReplicationMessage]" = asyncio.Queue()

    async def emit(self, message: ReplicationMessage) -> None:
        await self._queue.put(message)

    async def receive(self) -> ReplicationMessage:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()


class PlanChangeBus:
    """Host-level change notification: holder publishes, replicas subscribe."""

    def __init__(self) -> None:
        self._subscribers: List[StateHandler] = []

    def subscribe(self, handler: StateHandler) -> None:
        self._subscribers.append(handler)

    def unsubscribe(self, handler: StateHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    async def publish(self, combat_id: str, state: Dict[str, Any]) -> None:
        for handler in list(self._subscribers):
            result = handler(combat_id, copy.deepcopy(state))
            if asyncio.iscoroutine(result):
                await result


class PlanHolder:
    """Authoritative writer. Requests are applied strictly one at a time."""

    def __init__(self, store: PlanStore, change_bus: Optional[PlanChangeBus] = None) -> None:
        self.store = store
        self.change_bus = change_bus or PlanChangeBus()
        self._lock = asyncio.Lock()

    async def ensure_state(self, combat_id: str) -> Dict[str, Any]:
        state = await self.store.init_state(combat_id)
        if not isinstance(state, dict):
            state = empty_combat_state()
        state.setdefault("combatants", {})
        state.setdefault("meta", {})
        return state

    async def apply_path(self, combat_id: str, path: str, value: Any) -> Dict[str, Any]:
        """Persist one path write and notify observers. Persistence errors propagate."""
        async with self._lock:
            await self.ensure_state(combat_id)
            await self.store.write_path(combat_id, path, value)
            state = await self.store.load(combat_id) or empty_combat_state()
        await self.change_bus.publish(combat_id, state)
        return state

    async def init_combat(self, combat_id: str) -> Dict[str, Any]:
        async with self._lock:
            state = await self.ensure_state(combat_id)
        await self.change_bus.publish(combat_id, state)
        return state

    async def handle_message(self, message: Any) -> bool:
        """Process one observer message; failures are logged, never raised."""
        try:
            if isinstance(message, dict):
                message = ReplicationMessage.model_validate(message)
            if message.type == "initState":
                await self.init_combat(message.combat_id)
                return True
            if message.type == "setStatePath" and message.path:
                await self.apply_path(message.combat_id, message.path, message.value)
                return True
            return False
        except Exception as exc:
            logger.error("处理复制消息失败: %s", exc, exc_info=True)
            return False

    async def run(self, channel: MessageChannel) -> None:
        """Consume a channel until cancelled."""
        while True:
            message = await channel.receive()
            try:
                await self.handle_message(message)
            finally:
                channel.task_done()


class PlanReplica:
    """
    One observer's view of the replicated state.

    ``holder`` is set only on the observer that owns the authoritative copy.
    """

    def __init__(
        self,
        observer_id: str,
        channel: MessageChannel,
        holder: Optional[PlanHolder] = None,
    ) -> None:
        self.observer_id = observer_id
        self.channel = channel
        self.holder = holder
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, Any] = {}
        self._pending_seq: Dict[str, int] = {}

    @property
    def is_holder(self) -> bool:
        return self.holder is not None

    @staticmethod
    def pending_key(combat_id: str, path: str) -> str:
        return f"{combat_id}:{path}"

    def pending_for(self, combat_id: str) -> Dict[str, Any]:
        prefix = f"{combat_id}:"
        return {k[len(prefix):]: v for k, v in self._pending.items() if k.startswith(prefix)}

    def has_pending(self, combat_id: str, path: str) -> bool:
        return self.pending_key(combat_id, path) in self._pending

    # ── 读取 ──

    def snapshot(self, combat_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._snapshots.get(combat_id) or empty_combat_state())

    def read_state(self, combat_id: str) -> Dict[str, Any]:
        """Last known snapshot with this observer's unconfirmed writes applied."""
        state = self.snapshot(combat_id)
        for path, value in self.pending_for(combat_id).items():
            set_path(state, path, value)
        return state

    async def apply_snapshot(self, combat_id: str, state: Dict[str, Any]) -> None:
        """
        Change notification handler.

        A pending entry is dropped once the authoritative value matches it;
        anything else stays pending until superseded.
        """
        self._snapshots[combat_id] = copy.deepcopy(state)
        for path, value in self.pending_for(combat_id).items():
            if get_path(state, path, _MISSING) == value:
                self._pending.pop(self.pending_key(combat_id, path), None)

    # ── 写入 ──

    async def request_path_update(self, combat_id: str, path: str, value: Any) -> bool:
        """
        Record ``value`` locally, then persist (holder) or forward (others).

        Returns True only when the authoritative write completed here. A
        failed write keeps the pending value visible to reads.
        """
        key = self.pending_key(combat_id, path)
        seq = self._pending_seq.get(key, 0) + 1
        self._pending_seq[key] = seq
        self._pending[key] = copy.deepcopy(value)

        if self.holder is None:
            await self.channel.emit(ReplicationMessage(type="setStatePath", combat_id=combat_id, path=path, value=value))
            return False

        try:
            state = await self.holder.apply_path(combat_id, path, value)
        except Exception as exc:
            logger.warning("权威写入失败，保留本地待定值 %s: %s", key, exc)
            return False
        self._snapshots[combat_id] = copy.deepcopy(state)
        # a later write to the same path may still be in flight
        if self._pending_seq.get(key) == seq:
            self._pending.pop(key, None)
        return True

    async def request_init_state(self, combat_id: str) -> None:
        if self.holder is None:
            await self.channel.emit(ReplicationMessage(type="initState", combat_id=combat_id))
            return
        state = await self.holder.init_combat(combat_id)
        self._snapshots[combat_id] = copy.deepcopy(state)

    def forget(self, combat_id: str) -> None:
        self._snapshots.pop(combat_id, None)
        prefix = f"{combat_id}:"
        for key in [k for k in self._pending if k.startswith(prefix)]:
            del self._pending[key]
        for key in [k for k in self._pending_seq if k.startswith(prefix)]:
            del self._pending_seq[key]
