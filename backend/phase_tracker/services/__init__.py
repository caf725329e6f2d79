"""Services: plan storage, replication, turn context and planning sessions."""

from phase_tracker.services.plan_replication import (
    MessageChannel,
    PlanChangeBus,
    PlanHolder,
    PlanReplica,
    ReplicationMessage,
)
from phase_tracker.services.plan_store import (
    FirestorePlanStore,
    InMemoryPlanStore,
    PlanStore,
    ReplicationWriteError,
    create_plan_store,
)
from phase_tracker.services.planning_session import (
    CombatPlanningSession,
    Observer,
    PlanAuthorizationError,
    PlanEditRejectedError,
    UnknownCombatError,
)
from phase_tracker.services.session_registry import SessionRegistry
from phase_tracker.services.turn_context import (
    HostCombatTurnContextProvider,
    StaticTurnContextProvider,
    TurnContext,
    TurnContextProvider,
)

__all__ = [
    "CombatPlanningSession",
    "FirestorePlanStore",
    "HostCombatTurnContextProvider",
    "InMemoryPlanStore",
    "MessageChannel",
    "Observer",
    "PlanAuthorizationError",
    "PlanChangeBus",
    "PlanEditRejectedError",
    "PlanHolder",
    "PlanReplica",
    "PlanStore",
    "ReplicationMessage",
    "ReplicationWriteError",
    "SessionRegistry",
    "StaticTurnContextProvider",
    "TurnContext",
    "TurnContextProvider",
    "UnknownCombatError",
    "create_plan_store",
]
