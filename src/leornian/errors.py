"""
Domain error taxonomy.

Every expected failure is an ``AppError`` subclass carrying its HTTP status,
a stable machine code, and the client-visible message. Handlers in
``leornian.middleware.error_handler`` render them as ``{"error": message}``.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, headers: dict[str, str] | None = None) -> None:
        self.message = message or type(self).message
        self.headers = headers
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        """Serialize for the HTTP response body."""
        return {"error": self.message}


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class InvalidCredentials(AppError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password"


class UserNotFound(AppError):
    status_code = 404
    code = "USER_NOT_FOUND"
    message = "User not found"


class UserAlreadyExists(AppError):
    status_code = 409
    code = "USER_ALREADY_EXISTS"
    message = "User already exists"


class UsernameAlreadyExists(AppError):
    status_code = 409
    code = "USERNAME_ALREADY_EXISTS"
    message = "Username already exists"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenError(AppError):
    """Bearer-token failures also expose their code so clients can tell expiry apart."""

    status_code = 401

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class Unauthorized(TokenError):
    code = "UNAUTHORIZED"
    message = "Authorization header required"


class InvalidToken(TokenError):
    code = "INVALID_TOKEN"
    message = "Invalid token"


class TokenExpired(TokenError):
    code = "TOKEN_EXPIRED"
    message = "Token has expired"


class InvalidRefreshToken(AppError):
    status_code = 401
    code = "INVALID_REFRESH_TOKEN"
    message = "Invalid or expired refresh token"


class RefreshTokenExpired(AppError):
    status_code = 401
    code = "REFRESH_TOKEN_EXPIRED"
    message = "Refresh token has expired"


class RefreshTokenNotFound(AppError):
    status_code = 401
    code = "REFRESH_TOKEN_NOT_FOUND"
    message = "Refresh token not found"


# ---------------------------------------------------------------------------
# Verification / reset
# ---------------------------------------------------------------------------


class VerificationTokenNotFound(AppError):
    status_code = 400
    code = "VERIFICATION_TOKEN_NOT_FOUND"
    message = "Verification token not found"


class VerificationTokenExpired(AppError):
    status_code = 400
    code = "VERIFICATION_TOKEN_EXPIRED"
    message = "Verification token has expired"


class PasswordResetTokenNotFound(AppError):
    status_code = 400
    code = "PASSWORD_RESET_TOKEN_NOT_FOUND"
    message = "Password reset token not found"


class PasswordResetTokenExpired(AppError):
    status_code = 400
    code = "PASSWORD_RESET_TOKEN_EXPIRED"
    message = "Password reset token has expired"


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------


class PasswordTooWeak(AppError):
    status_code = 400
    code = "PASSWORD_TOO_WEAK"
    message = "Password does not meet strength requirements"


class SamePassword(AppError):
    status_code = 400
    code = "SAME_PASSWORD"
    message = "New password must be different from the current password"


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class InsufficientPermissions(AppError):
    status_code = 403
    code = "INSUFFICIENT_PERMISSIONS"
    message = "Insufficient permissions"


class NotParticipant(AppError):
    status_code = 403
    code = "NOT_PARTICIPANT"
    message = "User is not a participant in this conversation"


class NotMessageSender(InsufficientPermissions):
    code = "NOT_MESSAGE_SENDER"
    message = "Only the sender can modify this message"


class TooManyAttempts(AppError):
    status_code = 429
    code = "TOO_MANY_ATTEMPTS"
    message = "Too many attempts. Please try again later."


# ---------------------------------------------------------------------------
# Federated identity
# ---------------------------------------------------------------------------


class UnsupportedProvider(AppError):
    status_code = 400
    code = "UNSUPPORTED_PROVIDER"
    message = "Unsupported OAuth provider"


class InvalidOAuthState(AppError):
    status_code = 400
    code = "INVALID_OAUTH_STATE"
    message = "Invalid or expired OAuth state"


class OAuthExchangeFailed(AppError):
    status_code = 502
    code = "OAUTH_EXCHANGE_FAILED"
    message = "Failed to complete sign-in with the identity provider"


class AccountAlreadyLinked(AppError):
    status_code = 409
    code = "ACCOUNT_ALREADY_LINKED"
    message = "This account is already linked to another user"


class AccountNotLinked(AppError):
    status_code = 404
    code = "ACCOUNT_NOT_LINKED"
    message = "No linked account for this provider"


class CannotUnlinkLastMethod(AppError):
    status_code = 400
    code = "CANNOT_UNLINK_LAST_METHOD"
    message = "Cannot unlink the only sign-in method; set a password first"


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


class ConversationNotFound(AppError):
    status_code = 404
    code = "CONVERSATION_NOT_FOUND"
    message = "Conversation not found"


class ConversationExists(AppError):
    status_code = 409
    code = "CONVERSATION_EXISTS"
    message = "Conversation already exists"


class InvalidConversation(AppError):
    status_code = 400
    code = "INVALID_CONVERSATION"
    message = "Coach and client must be different users"


class MessageNotFound(AppError):
    status_code = 404
    code = "MESSAGE_NOT_FOUND"
    message = "Message not found"


class MessageEmpty(AppError):
    status_code = 400
    code = "MESSAGE_EMPTY"
    message = "Message text cannot be empty"


class MessageTooLong(AppError):
    status_code = 400
    code = "MESSAGE_TOO_LONG"
    message = "Message text is too long"


class MessageDeleted(AppError):
    status_code = 400
    code = "MESSAGE_DELETED"
    message = "Message has been deleted"


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class JWTSecretNotSet(AppError):
    status_code = 500
    code = "JWT_SECRET_NOT_SET"
    message = "Internal server error"


class ServiceUnavailable(AppError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    message = "Service temporarily unavailable"
