"""
Combat plan state storage (authoritative copy).

One document per combat: ``{"combatants": {...}, "meta": {...}}``.
Path-scoped writes use dotted field paths, e.g.
``combatants.c1.plan_actions``.
"""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from google.cloud import firestore

from phase_tracker.combat.models import empty_combat_state
from phase_tracker.config import settings
from phase_tracker.utils import set_path

logger = logging.getLogger(__name__)


class ReplicationWriteError(RuntimeError):
    """权威副本写入失败"""

    def __init__(self, combat_id: str, path: str, reason: str = "") -> None:
        self.combat_id = combat_id
        self.path = path
        self.reason = reason
        super().__init__(f"write failed for {combat_id}:{path}" + (f" ({reason})" if reason else ""))


class PlanStore(ABC):
    """Persistence of the authoritative combat plan state."""

    @abstractmethod
    async def load(self, combat_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def init_state(self, combat_id: str) -> Dict[str, Any]:
        """Create an empty state if none exists; return the current state."""

    @abstractmethod
    async def write_path(self, combat_id: str, path: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, combat_id: str) -> None:
        ...


class InMemoryPlanStore(PlanStore):
    """In-memory store (single process, tests, local play)."""

    def __init__(self) -> None:
        self._states: Dict[str, Dict[str, Any]] = {}

    async def load(self, combat_id: str) -> Optional[Dict[str, Any]]:
        state = self._states.get(combat_id)
        return copy.deepcopy(state) if state is not None else None

    async def init_state(self, combat_id: str) -> Dict[str, Any]:
        if combat_id not in self._states:
            self._states[combat_id] = empty_combat_state()
            logger.info("初始化战斗规划状态: %s", combat_id)
        return copy.deepcopy(self._states[combat_id])

    async def write_path(self, combat_id: str, path: str, value: Any) -> None:
        state = self._states.setdefault(combat_id, empty_combat_state())
        set_path(state, path, value)

    async def delete(self, combat_id: str) -> None:
        self._states.pop(combat_id, None)


class FirestorePlanStore(PlanStore):
    """Firestore-backed store."""

    def __init__(
        self,
        firestore_client: Optional[firestore.Client] = None,
        collection: Optional[str] = None,
    ) -> None:
        self.db = firestore_client or firestore.Client(database=settings.firestore_database)
        self.collection = collection or settings.plan_collection

    def _combat_ref(self, combat_id: str) -> firestore.DocumentReference:
        return self.db.collection(self.collection).document(combat_id)

    async def load(self, combat_id: str) -> Optional[Dict[str, Any]]:
        doc = self._combat_ref(combat_id).get()
        if not doc.exists:
            return None
        return doc.to_dict() or {}

    async def init_state(self, combat_id: str) -> Dict[str, Any]:
        ref = self._combat_ref(combat_id)
        doc = ref.get()
        if doc.exists:
            return doc.to_dict() or empty_combat_state()
        state = empty_combat_state()
        ref.set(state)
        logger.info("初始化战斗规划状态: %s", combat_id)
        return state

    async def write_path(self, combat_id: str, path: str, value: Any) -> None:
        updates = {path: value}
        try:
            # Check if any keys contain dot notation (nested path updates)
            if "." in path:
                self._combat_ref(combat_id).update(updates)
            else:
                self._combat_ref(combat_id).set(updates, merge=True)
        except Exception as exc:
            raise ReplicationWriteError(combat_id, path, str(exc)) from exc

    async def delete(self, combat_id: str) -> None:
        self._combat_ref(combat_id).delete()


def create_plan_store(backend: Optional[str] = None) -> PlanStore:
    backend = backend or settings.plan_store_backend
    if backend == "firestore":
        return FirestorePlanStore()
    return InMemoryPlanStore()
