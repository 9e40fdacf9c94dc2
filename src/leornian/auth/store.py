"""
Credential persistence.

``CredentialStore`` wraps one ``AsyncSession`` and exposes every query the
auth core needs: users, refresh tokens, single-use e-mail tokens, federated
account links, OAuth state nonces and coach assignments. Each mutating call
commits on its own; uniqueness races surface as domain conflict errors.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from leornian.db.models import (
    Account,
    CoachAssignment,
    OAuthState,
    PasswordResetToken,
    RefreshToken,
    User,
    VerificationToken,
)
from leornian.errors import UserAlreadyExists, UsernameAlreadyExists

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


USERNAME_CONSTRAINT = "uq_users_username"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _constraint_name(error: IntegrityError) -> str | None:
    """Violated constraint as reported by the driver (asyncpg, psycopg), if it reports one."""
    orig = error.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return str(name)
    diag = getattr(orig, "diag", None)
    name = getattr(diag, "constraint_name", None)
    return str(name) if name else None


def _is_username_conflict(error: IntegrityError) -> bool:
    name = _constraint_name(error)
    if name is not None:
        return name == USERNAME_CONSTRAINT
    # SQLite names the column instead: "UNIQUE constraint failed: users.username"
    return "users.username" in str(error.orig)


class CredentialStore:
    """Database-backed credential repository."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    async def get_user_by_id(self, user_id: str) -> User | None:
        result = await self._db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> User | None:
        """Fetch a user by email (case-insensitive)."""
        result = await self._db.execute(select(User).where(func.lower(User.email) == email.strip().lower()))
        return result.scalar_one_or_none()

    async def get_user_by_username(self, username: str) -> User | None:
        """Fetch a user by username (case-insensitive)."""
        result = await self._db.execute(select(User).where(func.lower(User.username) == username.strip().lower()))
        return result.scalar_one_or_none()

    async def create_user(
        self,
        *,
        username: str,
        email: str,
        name: str,
        password_hash: str | None,
        role: str = "user",
        image: str | None = None,
        email_verified: datetime | None = None,
    ) -> User:
        """
        Insert a user.

        Raises:
            UserAlreadyExists: The e-mail is taken (including a lost race).
            UsernameAlreadyExists: The username is taken.
        """
        user = User(
            username=username.strip(),
            email=email.strip().lower(),
            name=name,
            password_hash=password_hash,
            role=role,
            image=image,
            email_verified=email_verified,
        )
        self._db.add(user)
        try:
            await self._db.commit()
        except IntegrityError as e:
            await self._db.rollback()
            if _is_username_conflict(e):
                raise UsernameAlreadyExists from e
            raise UserAlreadyExists from e
        return user

    async def update_password(self, user: User, password_hash: str) -> None:
        user.password_hash = password_hash
        user.updated_at = _now()
        await self._db.commit()

    async def mark_email_verified(self, user: User) -> None:
        user.email_verified = _now()
        user.updated_at = _now()
        await self._db.commit()

    async def update_profile(
        self,
        user: User,
        *,
        name: str | None = None,
        bio: str | None = None,
        image: str | None = None,
    ) -> User:
        if name is not None:
            user.name = name
        if bio is not None:
            user.bio = bio
        if image is not None:
            user.image = image
        user.updated_at = _now()
        await self._db.commit()
        return user

    async def update_role(self, user: User, role: str) -> User:
        user.role = role
        user.updated_at = _now()
        await self._db.commit()
        return user

    # -----------------------------------------------------------------------
    # Refresh tokens
    # -----------------------------------------------------------------------

    async def create_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        access_token_jti: str,
    ) -> RefreshToken:
        """Store a refresh token hash."""
        token = RefreshToken(
            user_id=user_id,
            token_hash=token_hash,
            access_token_jti=access_token_jti,
            expires_at=expires_at,
        )
        self._db.add(token)
        await self._db.commit()
        return token

    async def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        result = await self._db.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
        return result.scalar_one_or_none()

    async def consume_refresh_token(self, token_hash: str) -> bool:
        """Remove a live refresh record. Returns False when it was already gone or revoked."""
        result = await self._db.execute(
            delete(RefreshToken).where(
                RefreshToken.token_hash == token_hash,
                RefreshToken.is_revoked.is_(False),
            )
        )
        await self._db.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def revoke_all_user_refresh_tokens(self, user_id: str) -> int:
        """Revoke every live refresh token for a user. Returns the count revoked."""
        result = await self._db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=_now())
        )
        await self._db.commit()
        return result.rowcount  # type: ignore[attr-defined,no-any-return]

    async def cleanup_expired_refresh_tokens(self) -> int:
        result = await self._db.execute(delete(RefreshToken).where(RefreshToken.expires_at < _now()))
        await self._db.commit()
        return result.rowcount  # type: ignore[attr-defined,no-any-return]

    # -----------------------------------------------------------------------
    # Single-use e-mail tokens
    # -----------------------------------------------------------------------

    async def create_verification_token(self, email: str, token_hash: str, expires_at: datetime) -> None:
        """Store a verification token, replacing any earlier one for the address."""
        email = email.lower()
        await self._db.execute(delete(VerificationToken).where(VerificationToken.email == email))
        self._db.add(VerificationToken(email=email, token_hash=token_hash, expires_at=expires_at))
        await self._db.commit()

    async def get_verification_token(self, token_hash: str) -> VerificationToken | None:
        result = await self._db.execute(
            select(VerificationToken).where(
                VerificationToken.token_hash == token_hash,
                VerificationToken.used.is_(False),
            )
        )
        return result.scalar_one_or_none()

    async def consume_verification_token(self, token_hash: str) -> bool:
        """Mark used and delete. Only one concurrent caller can win."""
        claimed = await self._db.execute(
            update(VerificationToken)
            .where(VerificationToken.token_hash == token_hash, VerificationToken.used.is_(False))
            .values(used=True)
        )
        await self._db.execute(delete(VerificationToken).where(VerificationToken.token_hash == token_hash))
        await self._db.commit()
        return claimed.rowcount == 1  # type: ignore[attr-defined]

    async def delete_verification_token(self, token_hash: str) -> None:
        await self._db.execute(delete(VerificationToken).where(VerificationToken.token_hash == token_hash))
        await self._db.commit()

    async def cleanup_expired_verification_tokens(self) -> int:
        result = await self._db.execute(delete(VerificationToken).where(VerificationToken.expires_at < _now()))
        await self._db.commit()
        return result.rowcount  # type: ignore[attr-defined,no-any-return]

    async def create_password_reset_token(self, email: str, token_hash: str, expires_at: datetime) -> None:
        """Store a reset token, replacing any earlier one for the address."""
        email = email.lower()
        await self._db.execute(delete(PasswordResetToken).where(PasswordResetToken.email == email))
        self._db.add(PasswordResetToken(email=email, token_hash=token_hash, expires_at=expires_at))
        await self._db.commit()

    async def get_password_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        result = await self._db.execute(
            select(PasswordResetToken).where(
                PasswordResetToken.token_hash == token_hash,
                PasswordResetToken.used.is_(False),
            )
        )
        return result.scalar_one_or_none()

    async def consume_password_reset_token(self, token_hash: str) -> bool:
        claimed = await self._db.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.token_hash == token_hash, PasswordResetToken.used.is_(False))
            .values(used=True)
        )
        await self._db.execute(delete(PasswordResetToken).where(PasswordResetToken.token_hash == token_hash))
        await self._db.commit()
        return claimed.rowcount == 1  # type: ignore[attr-defined]

    async def delete_password_reset_token(self, token_hash: str) -> None:
        await self._db.execute(delete(PasswordResetToken).where(PasswordResetToken.token_hash == token_hash))
        await self._db.commit()

    async def cleanup_expired_password_reset_tokens(self) -> int:
        result = await self._db.execute(delete(PasswordResetToken).where(PasswordResetToken.expires_at < _now()))
        await self._db.commit()
        return result.rowcount  # type: ignore[attr-defined,no-any-return]

    # -----------------------------------------------------------------------
    # OAuth state
    # -----------------------------------------------------------------------

    async def create_oauth_state(self, state: str, provider: str, redirect_url: str, expires_at: datetime) -> None:
        self._db.add(OAuthState(state=state, provider=provider, redirect_url=redirect_url, expires_at=expires_at))
        await self._db.commit()

    async def get_oauth_state(self, state: str) -> OAuthState | None:
        result = await self._db.execute(select(OAuthState).where(OAuthState.state == state))
        return result.scalar_one_or_none()

    async def delete_oauth_state(self, state: str) -> bool:
        """Delete a state nonce. Returns False if another request consumed it first."""
        result = await self._db.execute(delete(OAuthState).where(OAuthState.state == state))
        await self._db.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def cleanup_expired_oauth_states(self) -> int:
        result = await self._db.execute(delete(OAuthState).where(OAuthState.expires_at < _now()))
        await self._db.commit()
        return result.rowcount  # type: ignore[attr-defined,no-any-return]

    # -----------------------------------------------------------------------
    # Federated account links
    # -----------------------------------------------------------------------

    async def get_account(self, provider: str, provider_account_id: str) -> Account | None:
        result = await self._db.execute(
            select(Account).where(
                Account.provider == provider,
                Account.provider_account_id == provider_account_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_user_accounts(self, user_id: str) -> list[Account]:
        result = await self._db.execute(
            select(Account).where(Account.user_id == user_id).order_by(Account.created_at)
        )
        return list(result.scalars().all())

    async def create_account(self, user_id: str, provider: str, provider_account_id: str) -> Account:
        """Link a provider identity. Idempotent on (provider, provider_account_id)."""
        existing = await self.get_account(provider, provider_account_id)
        if existing is not None:
            return existing
        account = Account(user_id=user_id, provider=provider, provider_account_id=provider_account_id)
        self._db.add(account)
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            raced = await self.get_account(provider, provider_account_id)
            if raced is None:
                raise
            return raced
        return account

    async def delete_account(self, user_id: str, provider: str) -> bool:
        result = await self._db.execute(
            delete(Account).where(Account.user_id == user_id, Account.provider == provider)
        )
        await self._db.commit()
        return result.rowcount > 0  # type: ignore[attr-defined,no-any-return]

    # -----------------------------------------------------------------------
    # Coach assignments
    # -----------------------------------------------------------------------

    async def is_coach_for_user(self, coach_id: str, user_id: str) -> bool:
        result = await self._db.execute(
            select(CoachAssignment.id).where(
                CoachAssignment.coach_id == coach_id,
                CoachAssignment.user_id == user_id,
                CoachAssignment.is_active.is_(True),
            )
        )
        return result.first() is not None

    async def get_coach_clients(self, coach_id: str) -> list[User]:
        """Users the coach is actively assigned to, oldest assignment first."""
        result = await self._db.execute(
            select(User)
            .join(CoachAssignment, CoachAssignment.user_id == User.id)
            .where(CoachAssignment.coach_id == coach_id, CoachAssignment.is_active.is_(True))
            .order_by(CoachAssignment.assigned_at, CoachAssignment.id)
        )
        return list(result.scalars().all())
