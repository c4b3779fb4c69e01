"""Request dependencies: app state and caller identity.

An upstream gateway authenticates users and forwards the user id in ``X-User-Id``. The id is
resolved against the device registry; ownership or admin rights gate device-scoped routes.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from stickguard.errors import AuthorizationError
from stickguard.services.device_registry import Caller
from stickguard.state import AppState, get_state


# PUBLIC_INTERFACE
def app_state(request: Request) -> AppState:
    return get_state(request.app)


# PUBLIC_INTERFACE
def get_caller(
    state: AppState = Depends(app_state),
    user_id: Optional[str] = Header(default=None, alias="X-User-Id", description="Authenticated user id."),
) -> Caller:
    """Resolve the calling user; AuthorizationError when missing or unknown."""
    if not user_id or not user_id.strip():
        raise AuthorizationError("Authentication required")
    caller = state.registry.get_caller(user_id.strip())
    if caller is None:
        raise AuthorizationError("Unknown user")
    return caller


# PUBLIC_INTERFACE
def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise AuthorizationError("Admin access required")
    return caller


# PUBLIC_INTERFACE
def ensure_device_access(caller: Caller, device_id: str) -> None:
    if not caller.can_access(device_id):
        raise AuthorizationError("Access denied to this device")
