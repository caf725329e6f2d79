"""
Combat plan API routes.

Used by the host integration layer: it forwards turn changes, token moves and
user edits, and renders the returned view-models.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from phase_tracker.combat.movement import GridGeometry, MoveDecision
from phase_tracker.dependencies import get_observer, get_registry
from phase_tracker.services.plan_replication import ReplicationMessage
from phase_tracker.services.planning_session import (
    CombatantInfo,
    CombatantView,
    HistoryRow,
    Observer,
    PlanAuthorizationError,
    PlanEdit,
    PlanEditRejectedError,
    PlanEditResult,
    UnknownCombatError,
)
from phase_tracker.services.session_registry import SessionRegistry
from phase_tracker.services.turn_context import (
    HostCombatTurnContextProvider,
    StaticTurnContextProvider,
    TurnContext,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/combats", tags=["Combat Plans"])


def _map_exception_to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, PlanAuthorizationError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, PlanEditRejectedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, UnknownCombatError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.error("combat plan request failed: %s", exc, exc_info=True)
    return HTTPException(status_code=500, detail=str(exc))


# ==================== 请求模型 ====================


class GridSpec(BaseModel):
    size: float = 100.0
    distance: float = 5.0
    gridless: bool = False


class CreateCombatRequest(BaseModel):
    combat_id: str
    combat: Optional[Dict[str, Any]] = None
    tracker_text: str = ""
    context: Optional[TurnContext] = None
    grid: GridSpec = Field(default_factory=GridSpec)
    combatants: List[CombatantInfo] = Field(default_factory=list)


class TurnAdvanceRequest(BaseModel):
    active_combatant_id: Optional[str] = None
    combat: Optional[Dict[str, Any]] = None
    tracker_text: Optional[str] = None
    context: Optional[TurnContext] = None


class PositionRequest(BaseModel):
    x: float
    y: float


def _decision_payload(decision: MoveDecision) -> Dict[str, Any]:
    return {
        "outcome": decision.outcome,
        "allowed": decision.allowed,
        "x": decision.x,
        "y": decision.y,
        "warning": decision.warning,
        "info": decision.info,
        "enforced": decision.enforced,
    }


# ==================== 战斗会话 ====================


@router.post("")
async def create_combat(
    payload: CreateCombatRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """创建战斗规划会话"""
    try:
        if payload.context is not None:
            provider = StaticTurnContextProvider(payload.context)
        else:
            provider = HostCombatTurnContextProvider(payload.combat, payload.tracker_text)
        geometry = GridGeometry(size=payload.grid.size, distance=payload.grid.distance, gridless=payload.grid.gridless)
        session = await registry.create(payload.combat_id, turn_provider=provider, geometry=geometry)
        for info in payload.combatants:
            session.register_combatant(info)
        return {"combat_id": session.combat_id, "context": session.context.model_dump()}
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.delete("/{combat_id}")
async def end_combat(
    combat_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """结束战斗（清理移动缓存）"""
    try:
        registry.end(combat_id)
        return {"success": True}
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.put("/{combat_id}/combatants/{combatant_id}")
async def upsert_combatant(
    combat_id: str,
    combatant_id: str,
    payload: CombatantInfo,
    registry: SessionRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    try:
        if payload.combatant_id != combatant_id:
            raise ValueError("combatant_id in body does not match path")
        registry.get(combat_id).register_combatant(payload)
        return {"success": True}
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.post("/{combat_id}/turn")
async def advance_turn(
    combat_id: str,
    payload: TurnAdvanceRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> TurnContext:
    """回合/阶段推进"""
    try:
        session = registry.get(combat_id)
        return await session.on_turn_advance(
            active_combatant_id=payload.active_combatant_id,
            combat_doc=payload.combat,
            tracker_text=payload.tracker_text,
            context=payload.context,
        )
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.get("/{combat_id}/state")
async def get_state(
    combat_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """本地视图（含未确认写入）"""
    try:
        return registry.get(combat_id).state()
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


# ==================== 规划视图 ====================


@router.get("/{combat_id}/combatants/{combatant_id}/view")
async def get_view(
    combat_id: str,
    combatant_id: str,
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> CombatantView:
    try:
        return registry.get(combat_id).build_view(observer, combatant_id)
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.get("/{combat_id}/combatants/{combatant_id}/history")
async def get_history(
    combat_id: str,
    combatant_id: str,
    rounds: Optional[int] = Query(default=None, ge=1, le=50),
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> List[HistoryRow]:
    try:
        return registry.get(combat_id).history(observer, combatant_id, rounds)
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.post("/{combat_id}/edits")
async def apply_edit(
    combat_id: str,
    payload: PlanEdit,
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> PlanEditResult:
    """规划编辑（写入边界）"""
    try:
        return await registry.get(combat_id).on_plan_edit(observer, payload)
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


# ==================== 移动 ====================


@router.post("/{combat_id}/combatants/{combatant_id}/position/request")
async def request_position(
    combat_id: str,
    combatant_id: str,
    payload: PositionRequest,
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> Dict[str, Any]:
    try:
        session = registry.get(combat_id)
        decision = session.on_position_request(observer, combatant_id, payload.x, payload.y)
        return _decision_payload(decision)
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.post("/{combat_id}/combatants/{combatant_id}/position/preview")
async def preview_position(
    combat_id: str,
    combatant_id: str,
    payload: PositionRequest,
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> Dict[str, Any]:
    try:
        preview = registry.get(combat_id).on_position_changing(observer, combatant_id, payload.x, payload.y)
        if preview is None:
            return {"preview": None}
        return {
            "preview": {
                "mode": preview.mode,
                "allocations": preview.allocations,
                "allocated_total": preview.allocated_total,
                "active_slot_key": preview.active_slot_key,
            }
        }
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.post("/{combat_id}/combatants/{combatant_id}/position/commit")
async def commit_position(
    combat_id: str,
    combatant_id: str,
    payload: PositionRequest,
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> Dict[str, Any]:
    try:
        registry.get(combat_id).on_position_committed(observer, combatant_id, payload.x, payload.y)
        return {"success": True}
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


@router.post("/{combat_id}/combatants/{combatant_id}/move/reset")
async def reset_move(
    combat_id: str,
    combatant_id: str,
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> Dict[str, Any]:
    """Reset Move：回到本阶段起点"""
    try:
        point = registry.get(combat_id).reset_move(observer, combatant_id)
        if point is None:
            return {"reset": False}
        return {"reset": True, "x": point.x, "y": point.y}
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc


# ==================== 复制消息 ====================


@router.post("/messages")
async def ingest_message(
    payload: Dict[str, Any],
    registry: SessionRegistry = Depends(get_registry),
    observer: Observer = Depends(get_observer),
) -> Dict[str, Any]:
    """外部观察者的 initState / setStatePath（经过写入边界校验）"""
    try:
        message = ReplicationMessage.model_validate(payload)
        persisted = await registry.get(message.combat_id).apply_state_message(observer, message)
        return {"accepted": True, "persisted": persisted}
    except Exception as exc:
        raise _map_exception_to_http(exc) from exc
