"""
FastAPI dependencies.
"""
from functools import lru_cache

from fastapi import Header

from phase_tracker.services.planning_session import Observer
from phase_tracker.services.session_registry import SessionRegistry


@lru_cache()
def get_registry() -> SessionRegistry:
    return SessionRegistry()


def get_observer(
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_user_is_gm: bool = Header(False, alias="X-User-Is-GM"),
) -> Observer:
    return Observer(user_id=x_user_id, is_gm=x_user_is_gm)
