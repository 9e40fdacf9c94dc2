"""Authentication router: all /auth/* endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from leornian.auth.dependencies import (
    Identity,
    get_auth_service,
    get_federated_auth_service,
    get_identity,
)
from leornian.auth.oauth import FederatedAuthService
from leornian.auth.rate_limit import rate_limited
from leornian.auth.schemas import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LinkAccountRequest,
    LinkAccountResponse,
    LinkedAccount,
    LinkedAccountsResponse,
    LoginRequest,
    MessageResponse,
    OAuthAuthorizeRequest,
    OAuthAuthorizeResponse,
    OAuthMobileCallbackRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    ValidateTokenRequest,
    ValidateTokenResponse,
    VerifyEmailRequest,
)
from leornian.auth.service import AuthService
from leornian.auth.tokens import TokenPair
from leornian.db.models import User

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _token_response(user: User, pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        user=UserResponse.model_validate(user),
    )


# ---------------------------------------------------------------------------
# Password auth
# ---------------------------------------------------------------------------


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(rate_limited("register"))],
)
async def register(
    body: RegisterRequest,
    auth: AuthService = Depends(get_auth_service),
) -> RegisterResponse:
    """Create an account and send the verification e-mail."""
    user = await auth.register(body.username, body.email, body.password, body.name, body.role)
    return RegisterResponse(id=user.id, username=user.username, email=user.email, name=user.name)


@router.post("/login", response_model=TokenResponse, dependencies=[Depends(rate_limited("login"))])
async def login(
    body: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Sign in with e-mail or username."""
    user, pair = await auth.login(body.identifier, body.password)
    return _token_response(user, pair)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    identity: Identity = Depends(get_identity),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke every refresh token of the caller."""
    await auth.logout(identity.user_id)
    return MessageResponse(message="Logged out successfully")


@router.post("/refresh-token", response_model=RefreshResponse, dependencies=[Depends(rate_limited("refresh"))])
async def refresh_token(
    body: RefreshRequest,
    auth: AuthService = Depends(get_auth_service),
) -> RefreshResponse:
    """Rotate a refresh token into a new pair. Each refresh token works once."""
    _user, pair = await auth.rotate_tokens(body.refresh_token)
    return RefreshResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


@router.post("/validate-token", response_model=ValidateTokenResponse)
async def validate_token(
    body: ValidateTokenRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ValidateTokenResponse:
    result = await auth.validate_token(body.token)
    user = result["user"]
    return ValidateTokenResponse(
        valid=result["valid"],
        user=UserResponse.model_validate(user) if user is not None else None,
        claims=result["claims"],
        message=result["message"],
    )


# ---------------------------------------------------------------------------
# Password management
# ---------------------------------------------------------------------------


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limited("password_reset"))],
)
async def forgot_password(
    body: ForgotPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Send a reset link. The response is the same whether or not the account exists."""
    return MessageResponse(message=await auth.request_password_reset(body.email))


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limited("password_reset"))],
)
async def reset_password(
    body: ResetPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset successfully")


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Change password. All refresh tokens of the caller are revoked."""
    await auth.change_password(identity.user_id, body.old_password, body.new_password)
    return MessageResponse(message="Password changed successfully")


# ---------------------------------------------------------------------------
# E-mail verification
# ---------------------------------------------------------------------------


@router.post(
    "/verify-email",
    response_model=TokenResponse,
    dependencies=[Depends(rate_limited("verification"))],
)
async def verify_email(
    body: VerifyEmailRequest,
    auth: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Confirm the address and sign the user in."""
    user, pair = await auth.verify_email(body.token)
    return _token_response(user, pair)


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limited("verification"))],
)
async def resend_verification(
    body: ResendVerificationRequest,
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    return MessageResponse(message=await auth.resend_email_verification(body.email))


# ---------------------------------------------------------------------------
# Federated sign-in
# ---------------------------------------------------------------------------


@router.post("/oauth/{provider}", response_model=OAuthAuthorizeResponse)
async def oauth_authorize(
    provider: str,
    body: OAuthAuthorizeRequest,
    federated: FederatedAuthService = Depends(get_federated_auth_service),
) -> OAuthAuthorizeResponse:
    """Start the provider redirect flow."""
    url = await federated.get_authorization_url(provider, body.redirect_uri)
    return OAuthAuthorizeResponse(redirect_url=url)


@router.get("/oauth/callback/{provider}", response_model=TokenResponse)
async def oauth_callback(
    provider: str,
    code: str = Query(""),
    state: str = Query(""),
    federated: FederatedAuthService = Depends(get_federated_auth_service),
    auth: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Finish the redirect flow and sign in, creating the user on first login."""
    info = await federated.handle_callback(provider, code, state)
    user = await federated.resolve_user(provider, info)
    return _token_response(user, await auth.issue_tokens(user))


@router.post("/oauth/mobile/{provider}/callback", response_model=TokenResponse)
async def oauth_mobile_callback(
    provider: str,
    body: OAuthMobileCallbackRequest,
    federated: FederatedAuthService = Depends(get_federated_auth_service),
    auth: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """PKCE code exchange for native clients."""
    info = await federated.handle_mobile_callback(provider, body.code, body.code_verifier, body.redirect_uri)
    user = await federated.resolve_user(provider, info)
    return _token_response(user, await auth.issue_tokens(user))


@router.post("/link/{provider}", response_model=LinkAccountResponse)
async def link_account(
    provider: str,
    body: LinkAccountRequest,
    identity: Identity = Depends(get_identity),
    federated: FederatedAuthService = Depends(get_federated_auth_service),
) -> LinkAccountResponse:
    info = await federated.handle_callback(provider, body.code, body.state)
    await federated.link_account(identity.user_id, provider, info)
    return LinkAccountResponse(message="Account linked successfully", provider=provider, email=info.email)


@router.delete("/unlink/{provider}", response_model=LinkAccountResponse)
async def unlink_account(
    provider: str,
    identity: Identity = Depends(get_identity),
    federated: FederatedAuthService = Depends(get_federated_auth_service),
) -> LinkAccountResponse:
    await federated.unlink_account(identity.user_id, provider)
    return LinkAccountResponse(message="Account unlinked successfully", provider=provider)


@router.get("/linked-accounts", response_model=LinkedAccountsResponse)
async def linked_accounts(
    identity: Identity = Depends(get_identity),
    federated: FederatedAuthService = Depends(get_federated_auth_service),
) -> LinkedAccountsResponse:
    accounts = await federated.get_linked_accounts(identity.user_id)
    return LinkedAccountsResponse(linked_accounts=[LinkedAccount.model_validate(a) for a in accounts])
