"""FastAPI authentication and authorization dependencies."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import Depends, Request, Security, WebSocket
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from leornian.auth.oauth import FederatedAuthService
from leornian.auth.service import AuthService, Mailer
from leornian.auth.store import CredentialStore
from leornian.auth.tokens import AccessClaims, get_token_minter
from leornian.database import get_session
from leornian.errors import InsufficientPermissions, Unauthorized

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, passed explicitly to handlers."""

    user_id: str
    role: str
    claims: AccessClaims

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ---------------------------------------------------------------------------
# Service providers
# ---------------------------------------------------------------------------


def get_credential_store(db: AsyncSession = Depends(get_session)) -> CredentialStore:
    return CredentialStore(db)


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer  # type: ignore[no-any-return]


def get_auth_service(
    store: CredentialStore = Depends(get_credential_store),
    mailer: Mailer = Depends(get_mailer),
) -> AuthService:
    return AuthService(store, get_token_minter(), mailer)


def get_federated_auth_service(
    request: Request,
    store: CredentialStore = Depends(get_credential_store),
) -> FederatedAuthService:
    return FederatedAuthService(store, transport=getattr(request.app.state, "oauth_transport", None))


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


async def require_bearer(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> AccessClaims:
    """
    Validate ``Authorization: Bearer <token>``.

    Raises 401 with code UNAUTHORIZED, INVALID_TOKEN or TOKEN_EXPIRED.
    """
    if credentials is None or not credentials.credentials:
        raise Unauthorized
    return get_token_minter().validate(credentials.credentials)


async def get_identity(claims: AccessClaims = Depends(require_bearer)) -> Identity:
    return Identity(user_id=claims.user_id, role=claims.role, claims=claims)


def require_role(*roles: str) -> Callable[..., Awaitable[Identity]]:
    """Dependency factory admitting only callers whose role is in ``roles``."""
    allowed = frozenset(roles)

    async def _check(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role not in allowed:
            raise InsufficientPermissions
        return identity

    return _check


require_admin = require_role("admin")
require_coach_or_admin = require_role("coach", "admin")


async def require_ownership_or_coach(
    user_id: str,
    identity: Identity = Depends(get_identity),
    store: CredentialStore = Depends(get_credential_store),
) -> Identity:
    """Allow the user themself, an admin, or the user's active assigned coach."""
    if identity.user_id == user_id or identity.is_admin:
        return identity
    if identity.role == "coach" and await store.is_coach_for_user(identity.user_id, user_id):
        return identity
    raise InsufficientPermissions


def resolve_ws_token(websocket: WebSocket) -> str | None:
    """Token for the real-time endpoint: ``?token=``, then the Authorization header, then the ``auth_token`` cookie."""
    token = websocket.query_params.get("token")
    if token:
        return token
    scheme, _, value = websocket.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return websocket.cookies.get("auth_token") or None
