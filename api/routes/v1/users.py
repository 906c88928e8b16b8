"""
api/routes/v1/users.py -- User profile endpoints.

Routes:
  GET /api/v1/users/me -- the signed-in user's profile

Nothing here opts into authentication: the app-wide access guard rejects
anonymous requests before the handler runs. This router is the reference
for how an ordinary feature route is written.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import MeResponse, UserResponse
from auth.guard import get_current_user, get_session_manager
from auth.models import User
from auth.sessions import SessionManager

router = APIRouter()


@router.get("/users/me", response_model=MeResponse)
def me(
    user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
) -> MeResponse:
    """Return the current user and the identity providers linked to it."""
    accounts = manager.store.list_accounts(user.id)
    return MeResponse(
        user=UserResponse.from_user(user),
        linked_providers=[a.provider_id for a in accounts],
    )
