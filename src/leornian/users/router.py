"""User profile router: /users/* endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from leornian.auth.audit import audit_event
from leornian.auth.dependencies import (
    Identity,
    get_credential_store,
    get_identity,
    require_admin,
    require_coach_or_admin,
    require_ownership_or_coach,
)
from leornian.auth.schemas import (
    ClientListResponse,
    PublicUserResponse,
    UpdateProfileRequest,
    UpdateRoleRequest,
    UserResponse,
)
from leornian.auth.store import CredentialStore
from leornian.db.models import User
from leornian.errors import UserNotFound

logger = structlog.get_logger()

router = APIRouter(prefix="/users", tags=["Users"])


async def _load(store: CredentialStore, user_id: str) -> User:
    user = await store.get_user_by_id(user_id)
    if user is None:
        raise UserNotFound
    return user


@router.get("/me", response_model=UserResponse)
async def get_profile(
    identity: Identity = Depends(get_identity),
    store: CredentialStore = Depends(get_credential_store),
) -> UserResponse:
    """Get own full profile."""
    return UserResponse.model_validate(await _load(store, identity.user_id))


@router.patch("/me", response_model=UserResponse)
async def update_my_profile(
    body: UpdateProfileRequest,
    identity: Identity = Depends(get_identity),
    store: CredentialStore = Depends(get_credential_store),
) -> UserResponse:
    """Update display fields. Omitted fields are left unchanged."""
    user = await _load(store, identity.user_id)
    user = await store.update_profile(user, name=body.name, bio=body.bio, image=body.image)
    logger.info("profile_updated", user_id=user.id)
    return UserResponse.model_validate(user)


@router.get("/me/clients", response_model=ClientListResponse)
async def list_my_clients(
    identity: Identity = Depends(require_coach_or_admin),
    store: CredentialStore = Depends(get_credential_store),
) -> ClientListResponse:
    """Clients with an active assignment to the calling coach."""
    clients = await store.get_coach_clients(identity.user_id)
    return ClientListResponse(clients=[PublicUserResponse.model_validate(c) for c in clients])


@router.get("/{user_id}", response_model=PublicUserResponse)
async def get_user(
    user_id: str,
    _identity: Identity = Depends(require_ownership_or_coach),
    store: CredentialStore = Depends(get_credential_store),
) -> PublicUserResponse:
    """Profile of a user, visible to themself, an admin, or their assigned coach."""
    return PublicUserResponse.model_validate(await _load(store, user_id))


@router.put("/{user_id}/role", response_model=UserResponse)
async def update_user_role(
    user_id: str,
    body: UpdateRoleRequest,
    identity: Identity = Depends(require_admin),
    store: CredentialStore = Depends(get_credential_store),
) -> UserResponse:
    """
    Change a user's role (admin only).

    Live refresh tokens are revoked so the next session carries the new role.
    """
    user = await _load(store, user_id)
    previous = user.role
    if previous != body.role:
        user = await store.update_role(user, body.role)
        await store.revoke_all_user_refresh_tokens(user.id)
    audit_event("role_changed", user_id=user.id, actor_id=identity.user_id, previous=previous, role=user.role)
    return UserResponse.model_validate(user)
