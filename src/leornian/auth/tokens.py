"""
HS256 access tokens and opaque rotating refresh tokens.

Access tokens are short-lived JWTs bound to the issuer ``leornian-auth-service``
and audience ``leornian-api``. Refresh tokens are 32 random bytes (URL-safe
base64); only their SHA-256 hex digest is ever persisted.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Protocol

import jwt
import structlog

from leornian.config import Settings, get_settings
from leornian.errors import (
    InvalidRefreshToken,
    InvalidToken,
    JWTSecretNotSet,
    RefreshTokenExpired,
    RefreshTokenNotFound,
    TokenExpired,
)

if TYPE_CHECKING:
    from leornian.db.models import RefreshToken, User

logger = structlog.get_logger()

ALGORITHM = "HS256"
REFRESH_TOKEN_BYTES = 32
_REQUIRED_CLAIMS = ["exp", "iat", "nbf", "iss", "aud", "sub", "jti"]


class SessionStore(Protocol):
    """Storage operations the minter needs for issuing and rotating sessions."""

    async def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime, access_token_jti: str
    ) -> RefreshToken: ...

    async def get_refresh_token(self, token_hash: str) -> RefreshToken | None: ...

    async def consume_refresh_token(self, token_hash: str) -> bool: ...

    async def get_user_by_id(self, user_id: str) -> User | None: ...


@dataclass(frozen=True)
class AccessClaims:
    """Parsed, verified access-token claims."""

    user_id: str
    email: str
    role: str
    jti: str
    iat: int
    nbf: int
    exp: int
    iss: str
    aud: str
    sub: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AccessClaims:
        aud = payload["aud"]
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        return cls(
            user_id=str(payload.get("user_id") or payload["sub"]),
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "")),
            jti=str(payload["jti"]),
            iat=int(payload["iat"]),
            nbf=int(payload["nbf"]),
            exp=int(payload["exp"]),
            iss=str(payload["iss"]),
            aud=str(aud),
            sub=str(payload["sub"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


def generate_refresh_token() -> str:
    """32 bytes of CSPRNG output, URL-safe base64 encoded."""
    return base64.urlsafe_b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")


def hash_refresh_token(token: str) -> str:
    """SHA-256 hex digest used as the refresh token's storage key."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenMinter:
    """Issues, validates and rotates session tokens."""

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        issuer: str,
        audience: str,
    ) -> None:
        self._secret = secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenMinter:
        return cls(
            settings.jwt_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )

    def _require_secret(self) -> str:
        if not self._secret:
            raise JWTSecretNotSet
        return self._secret

    # -----------------------------------------------------------------------
    # Access tokens
    # -----------------------------------------------------------------------

    def create_access_token(self, user: User, *, jti: str | None = None, now: datetime | None = None) -> str:
        """
        Sign an access token for ``user``.

        Args:
            user: The authenticated user.
            jti: Token identifier; a fresh UUID when omitted.
            now: Issue time; defaults to the current UTC time.

        Returns:
            Encoded JWT string.

        Raises:
            JWTSecretNotSet: If no signing secret is configured.
        """
        secret = self._require_secret()
        now = now or datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "user_id": user.id,
            "email": user.email,
            "role": user.role,
            "jti": jti or str(uuid.uuid4()),
            "iat": now,
            "nbf": now,
            "exp": now + timedelta(seconds=self.access_ttl_seconds),
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
        }
        return jwt.encode(payload, secret, algorithm=ALGORITHM)

    def validate(self, token: str) -> AccessClaims:
        """
        Verify and parse an access token.

        Only HMAC-signed tokens are accepted; any other ``alg`` header is rejected
        before signature verification.

        Raises:
            InvalidToken: Empty, malformed, wrongly signed, not yet valid, or
                issued for another issuer/audience.
            TokenExpired: The ``exp`` claim is in the past.
            JWTSecretNotSet: If no signing secret is configured.
        """
        if not token:
            raise InvalidToken
        secret = self._require_secret()
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise InvalidToken from e
        if not str(header.get("alg", "")).startswith("HS"):
            msg = "Unexpected signing method"
            raise InvalidToken(msg)

        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired from None
        except jwt.InvalidTokenError as e:
            raise InvalidToken from e
        return AccessClaims.from_payload(payload)

    # -----------------------------------------------------------------------
    # Token pairs
    # -----------------------------------------------------------------------

    async def issue(self, user: User, store: SessionStore) -> TokenPair:
        """Mint an access token and a refresh secret; persist only the secret's hash."""
        jti = str(uuid.uuid4())
        access_token = self.create_access_token(user, jti=jti)
        refresh_token = generate_refresh_token()
        await store.create_refresh_token(
            user_id=user.id,
            token_hash=hash_refresh_token(refresh_token),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.refresh_ttl_seconds),
            access_token_jti=jti,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
        )

    async def rotate(self, refresh_token: str, store: SessionStore) -> tuple[User, TokenPair]:
        """
        Exchange a refresh secret for a fresh token pair.

        The presented record is consumed with a conditional delete before the new
        pair is minted, so two concurrent rotations of the same secret can never
        both succeed: the loser finds nothing to consume.

        Raises:
            RefreshTokenNotFound: No secret was presented.
            InvalidRefreshToken: Unknown secret, or lost a concurrent rotation.
            RefreshTokenExpired: The record was revoked or is past expiry.
        """
        if not refresh_token:
            raise RefreshTokenNotFound
        token_hash = hash_refresh_token(refresh_token)
        record = await store.get_refresh_token(token_hash)
        if record is None or not hmac.compare_digest(record.token_hash, token_hash):
            raise InvalidRefreshToken
        if record.is_revoked or record.expires_at <= datetime.now(timezone.utc):
            raise RefreshTokenExpired

        user = await store.get_user_by_id(record.user_id)
        if user is None:
            raise InvalidRefreshToken

        if not await store.consume_refresh_token(token_hash):
            logger.warning("refresh_rotation_race_lost", user_id=record.user_id)
            raise InvalidRefreshToken

        pair = await self.issue(user, store)
        logger.info("tokens_rotated", user_id=user.id)
        return user, pair


def get_token_minter() -> TokenMinter:
    """Build a minter from the current settings."""
    return TokenMinter.from_settings(get_settings())
