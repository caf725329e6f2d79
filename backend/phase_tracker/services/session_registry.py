"""
Per-combat session ownership.

The registry owns the plan store, the holder and the replica shared by all
sessions of this process, and one ``CombatPlanningSession`` (with its own
movement store) per active combat.
"""
import asyncio
import logging
from typing import Dict, Optional

from phase_tracker.combat.catalog import ActionCatalog, load_action_catalog
from phase_tracker.combat.movement import GridGeometry, MovementGovernor, MovementStore
from phase_tracker.config import settings
from phase_tracker.services.plan_replication import (
    MessageChannel,
    PlanChangeBus,
    PlanHolder,
    PlanReplica,
)
from phase_tracker.services.plan_store import PlanStore, create_plan_store
from phase_tracker.services.planning_session import CombatPlanningSession, UnknownCombatError
from phase_tracker.services.turn_context import TurnContextProvider

logger = logging.getLogger(__name__)


def load_catalog_from_settings() -> ActionCatalog:
    result = load_action_catalog(settings.actions_config or None)
    if result.errors:
        logger.warning("动作目录覆盖存在问题: %s", "; ".join(result.errors))
    if result.merged_default_keys:
        logger.info("动作目录补充默认动作: %s", ", ".join(result.merged_default_keys))
    return result.catalog


class SessionRegistry:
    """Active combats of this process."""

    def __init__(
        self,
        store: Optional[PlanStore] = None,
        catalog: Optional[ActionCatalog] = None,
        observer_id: str = "server",
    ) -> None:
        self.store = store or create_plan_store()
        self.catalog = catalog or load_catalog_from_settings()
        self.change_bus = PlanChangeBus()
        self.channel = MessageChannel()
        self.holder = PlanHolder(self.store, self.change_bus)
        self.replica = PlanReplica(observer_id, self.channel, holder=self.holder)
        self.change_bus.subscribe(self.replica.apply_snapshot)
        self._sessions: Dict[str, CombatPlanningSession] = {}
        self._holder_task: Optional[asyncio.Task] = None

    async def create(
        self,
        combat_id: str,
        turn_provider: Optional[TurnContextProvider] = None,
        geometry: Optional[GridGeometry] = None,
    ) -> CombatPlanningSession:
        session = self._sessions.get(combat_id)
        if session is not None:
            return session
        governor = MovementGovernor(
            store=MovementStore(),
            geometry=geometry,
            enabled=settings.movement_enforcement,
        )
        session = CombatPlanningSession(
            combat_id,
            self.replica,
            self.catalog,
            turn_provider=turn_provider,
            governor=governor,
            rounds_shown=settings.rounds_shown,
            history_rounds=settings.history_rounds,
            budget_per_slot=settings.ap_per_slot,
        )
        self._sessions[combat_id] = session
        await session.start()
        return session

    def get(self, combat_id: str) -> CombatPlanningSession:
        session = self._sessions.get(combat_id)
        if session is None:
            raise UnknownCombatError(f"no planning session for combat {combat_id}")
        return session

    def list_ids(self) -> list:
        return sorted(self._sessions)

    def end(self, combat_id: str) -> None:
        session = self._sessions.pop(combat_id, None)
        if session is None:
            raise UnknownCombatError(f"no planning session for combat {combat_id}")
        session.end()

    # ── 持有者消息循环 ──

    def start_holder(self) -> None:
        if self._holder_task is None or self._holder_task.done():
            self._holder_task = asyncio.create_task(self.holder.run(self.channel))

    async def stop_holder(self) -> None:
        task = self._holder_task
        self._holder_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
