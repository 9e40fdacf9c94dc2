"""
Authentication business logic.

Registration, login, token rotation, logout, password change/reset and e-mail
verification. Every failure the caller can see is a ``leornian.errors`` type;
login, forgot-password and resend-verification never reveal whether an
account exists.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from leornian.auth.audit import audit_event
from leornian.auth.password import (
    burn_verification,
    check_needs_rehash,
    hash_password,
    validate_password_strength,
    verify_password,
)
from leornian.config import get_settings
from leornian.errors import (
    AppError,
    InsufficientPermissions,
    InvalidCredentials,
    PasswordResetTokenExpired,
    PasswordResetTokenNotFound,
    SamePassword,
    UserAlreadyExists,
    UsernameAlreadyExists,
    UserNotFound,
    VerificationTokenExpired,
    VerificationTokenNotFound,
)

if TYPE_CHECKING:
    from leornian.auth.store import CredentialStore
    from leornian.auth.tokens import TokenMinter, TokenPair
    from leornian.db.models import User

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
SELF_ASSIGNABLE_ROLES = frozenset({"user", "coach", "client"})

RESET_REQUESTED_MESSAGE = "If that email exists, a reset link has been sent."
VERIFICATION_RESENT_MESSAGE = "Verification email sent if the account exists"


class Mailer(Protocol):
    async def send_template(self, to: str, template_name: str, context: dict[str, Any]) -> bool: ...


# ---------------------------------------------------------------------------
# Fire-and-forget e-mail delivery
# ---------------------------------------------------------------------------

_background_tasks: set[asyncio.Task[None]] = set()


def _spawn(coro: Coroutine[Any, Any, None]) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def drain_background_tasks() -> None:
    """Wait for in-flight e-mail sends (used at shutdown and in tests)."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


def is_email(identifier: str) -> bool:
    return EMAIL_PATTERN.match(identifier) is not None


def _digest(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Orchestrates the credential lifecycle over a CredentialStore."""

    def __init__(self, store: CredentialStore, minter: TokenMinter, mailer: Mailer) -> None:
        self.store = store
        self.minter = minter
        self.mailer = mailer

    async def _send(self, to: str, template_name: str, context: dict[str, Any]) -> None:
        try:
            await self.mailer.send_template(to=to, template_name=template_name, context=context)
        except Exception:
            logger.exception("email_dispatch_failed", template=template_name)

    def _send_later(self, to: str, template_name: str, context: dict[str, Any]) -> None:
        _spawn(self._send(to, template_name, context))

    # -----------------------------------------------------------------------
    # Registration and login
    # -----------------------------------------------------------------------

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        name: str = "",
        role: str | None = None,
    ) -> User:
        """
        Create a password user and start e-mail verification.

        Raises:
            PasswordTooWeak: The password fails the strength policy.
            InsufficientPermissions: The requested role cannot be self-assigned.
            UserAlreadyExists: The e-mail is registered.
            UsernameAlreadyExists: The username is taken.
        """
        validate_password_strength(password)
        role = role or "user"
        if role not in SELF_ASSIGNABLE_ROLES:
            msg = "Role cannot be self-assigned"
            raise InsufficientPermissions(msg)

        if await self.store.get_user_by_email(email) is not None:
            raise UserAlreadyExists
        if await self.store.get_user_by_username(username) is not None:
            raise UsernameAlreadyExists

        user = await self.store.create_user(
            username=username,
            email=email,
            name=name,
            password_hash=hash_password(password),
            role=role,
        )
        logger.info("user_registered", user_id=user.id, role=user.role)

        try:
            await self.initiate_email_verification(user)
        except Exception:
            logger.exception("verification_initiation_failed", user_id=user.id)
        return user

    async def login(self, identifier: str, password: str) -> tuple[User, TokenPair]:
        """
        Authenticate by e-mail or username and issue a token pair.

        Raises:
            InvalidCredentials: Unknown identifier, password-less account, or
                wrong password. The three are indistinguishable to the caller.
        """
        identifier = identifier.strip()
        if is_email(identifier):
            user = await self.store.get_user_by_email(identifier)
        else:
            user = await self.store.get_user_by_username(identifier)

        if user is None or not user.password_hash:
            burn_verification(password)
            audit_event("login", user_id=None, success=False, reason="unknown_identifier")
            raise InvalidCredentials
        if not verify_password(password, user.password_hash):
            audit_event("login", user_id=user.id, success=False, reason="wrong_password")
            raise InvalidCredentials

        if check_needs_rehash(user.password_hash):
            await self.store.update_password(user, hash_password(password))
            logger.info("password_rehashed", user_id=user.id)

        pair = await self.minter.issue(user, self.store)
        audit_event("login", user_id=user.id)
        return user, pair

    async def issue_tokens(self, user: User) -> TokenPair:
        return await self.minter.issue(user, self.store)

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    async def rotate_tokens(self, refresh_token: str) -> tuple[User, TokenPair]:
        return await self.minter.rotate(refresh_token, self.store)

    async def logout(self, user_id: str) -> int:
        """Revoke every refresh token the user holds."""
        count = await self.store.revoke_all_user_refresh_tokens(user_id)
        audit_event("logout", user_id=user_id, revoked=count)
        return count

    async def validate_token(self, access_token: str) -> dict[str, Any]:
        """Introspect an access token without raising."""
        try:
            claims = self.minter.validate(access_token)
        except AppError as e:
            return {"valid": False, "user": None, "claims": None, "message": e.message}
        user = await self.store.get_user_by_id(claims.user_id)
        if user is None:
            return {"valid": False, "user": None, "claims": None, "message": UserNotFound.message}
        return {"valid": True, "user": user, "claims": claims.to_dict(), "message": "Token is valid"}

    # -----------------------------------------------------------------------
    # Passwords
    # -----------------------------------------------------------------------

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        """
        Replace the password of an authenticated user and end their other sessions.

        Raises:
            UserNotFound: The user no longer exists.
            InvalidCredentials: ``old_password`` is wrong.
            SamePassword: ``new_password`` equals the current one.
            PasswordTooWeak: ``new_password`` fails the strength policy.
        """
        user = await self.store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFound
        if not user.password_hash or not verify_password(old_password, user.password_hash):
            msg = "Current password is incorrect"
            raise InvalidCredentials(msg)
        if secrets.compare_digest(old_password.encode(), new_password.encode()):
            raise SamePassword
        validate_password_strength(new_password)

        await self.store.update_password(user, hash_password(new_password))
        await self.store.revoke_all_user_refresh_tokens(user.id)
        audit_event("password_changed", user_id=user.id)
        self._send_later(user.email, "password_changed", {"name": user.name})

    async def request_password_reset(self, email: str) -> str:
        """Mail a reset link when the account exists. The reply never says which."""
        user = await self.store.get_user_by_email(email)
        raw_token = secrets.token_urlsafe(32)
        token_hash = _digest(raw_token)
        if user is None or not user.password_hash:
            # Same token work plus one store round trip as the known-account path.
            await self.store.get_password_reset_token(token_hash)
            logger.info("password_reset_requested_unknown")
            return RESET_REQUESTED_MESSAGE

        settings = get_settings()
        await self.store.create_password_reset_token(
            user.email,
            token_hash,
            _now() + timedelta(minutes=settings.password_reset_token_ttl_minutes),
        )
        self._send_later(
            user.email,
            "password_reset",
            {
                "name": user.name,
                "reset_url": f"{settings.frontend_base_url}/reset-password?token={raw_token}",
                "expires_minutes": settings.password_reset_token_ttl_minutes,
            },
        )
        logger.info("password_reset_requested", user_id=user.id)
        return RESET_REQUESTED_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        """
        Consume a reset token and set a new password.

        Raises:
            PasswordResetTokenNotFound: Unknown or already used token.
            PasswordResetTokenExpired: Token past its expiry (it is deleted).
            SamePassword: The new password equals the current one.
            PasswordTooWeak: The new password fails the strength policy.
        """
        token_hash = _digest(token)
        record = await self.store.get_password_reset_token(token_hash)
        if record is None:
            raise PasswordResetTokenNotFound
        if record.expires_at <= _now():
            await self.store.delete_password_reset_token(token_hash)
            raise PasswordResetTokenExpired

        user = await self.store.get_user_by_email(record.email)
        if user is None:
            await self.store.delete_password_reset_token(token_hash)
            raise PasswordResetTokenNotFound
        if user.password_hash and verify_password(new_password, user.password_hash):
            raise SamePassword
        validate_password_strength(new_password)

        if not await self.store.consume_password_reset_token(token_hash):
            raise PasswordResetTokenNotFound
        await self.store.update_password(user, hash_password(new_password))
        await self.store.revoke_all_user_refresh_tokens(user.id)
        audit_event("password_reset", user_id=user.id)
        self._send_later(user.email, "password_changed", {"name": user.name})

    # -----------------------------------------------------------------------
    # E-mail verification
    # -----------------------------------------------------------------------

    async def initiate_email_verification(self, user: User) -> None:
        """Mint a fresh verification token (replacing older ones) and mail it."""
        settings = get_settings()
        raw_token = secrets.token_urlsafe(32)
        await self.store.create_verification_token(
            user.email,
            _digest(raw_token),
            _now() + timedelta(hours=settings.email_verification_token_ttl_hours),
        )
        base_url = settings.mobile_verification_url or f"{settings.frontend_base_url}/verify-email"
        self._send_later(
            user.email,
            "verify_email",
            {
                "name": user.name,
                "verify_url": f"{base_url}?token={raw_token}",
                "expires_hours": settings.email_verification_token_ttl_hours,
            },
        )

    async def verify_email(self, token: str) -> tuple[User, TokenPair]:
        """
        Consume a verification token, mark the user verified, and sign them in.

        Raises:
            VerificationTokenNotFound: Unknown or already used token.
            VerificationTokenExpired: Token past its expiry (it is deleted).
        """
        token_hash = _digest(token)
        record = await self.store.get_verification_token(token_hash)
        if record is None:
            raise VerificationTokenNotFound
        if record.expires_at <= _now():
            await self.store.delete_verification_token(token_hash)
            raise VerificationTokenExpired

        user = await self.store.get_user_by_email(record.email)
        if user is None or not await self.store.consume_verification_token(token_hash):
            raise VerificationTokenNotFound
        if user.email_verified is None:
            await self.store.mark_email_verified(user)
            self._send_later(user.email, "welcome", {"name": user.name, "app_url": get_settings().frontend_base_url})
        logger.info("email_verified", user_id=user.id)
        return user, await self.minter.issue(user, self.store)

    async def resend_email_verification(self, email: str) -> str:
        user = await self.store.get_user_by_email(email)
        if user is not None and user.email_verified is None:
            await self.initiate_email_verification(user)
        return VERIFICATION_RESENT_MESSAGE
