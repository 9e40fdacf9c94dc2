"""
Federated sign-in with Google and GitHub.

Web clients use the redirect flow guarded by a single-use state nonce stored in
``oauth_states``. Mobile clients run PKCE themselves and post the code plus its
``code_verifier``; those calls resolve against the mobile provider registry and
skip the state lookup.
"""

from __future__ import annotations

import base64
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx
import structlog

from leornian.config import Settings, get_settings
from leornian.errors import (
    AccountAlreadyLinked,
    AccountNotLinked,
    CannotUnlinkLastMethod,
    InvalidOAuthState,
    OAuthExchangeFailed,
    UnsupportedProvider,
    UserAlreadyExists,
    UserNotFound,
)

if TYPE_CHECKING:
    from leornian.auth.store import CredentialStore
    from leornian.db.models import Account, User

logger = structlog.get_logger()

GITHUB_EMAILS_URL = "https://api.github.com/user/emails"
_USERNAME_STRIP = re.compile(r"[^a-zA-Z0-9_.-]")
_USERNAME_MAX = 50


def _decode_json(response: httpx.Response, provider: str, stage: str) -> Any:  # noqa: ANN401
    """Parse a provider response body, mapping a non-JSON answer to ``OAuthExchangeFailed``."""
    try:
        return response.json()
    except ValueError as e:
        logger.warning("oauth_malformed_response", provider=provider, stage=stage, status=response.status_code)
        raise OAuthExchangeFailed from e


def _decode_object(response: httpx.Response, provider: str, stage: str) -> dict[str, Any]:
    payload = _decode_json(response, provider, stage)
    if not isinstance(payload, dict):
        logger.warning("oauth_malformed_response", provider=provider, stage=stage, status=response.status_code)
        raise OAuthExchangeFailed
    return payload


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    client_id: str
    client_secret: str
    redirect_uri: str
    auth_url: str
    token_url: str
    user_info_url: str
    scopes: tuple[str, ...]
    pkce: bool = False


@dataclass(frozen=True)
class OAuthUserInfo:
    """Provider profile normalized to one shape."""

    id: str
    email: str
    name: str
    username: str | None = None
    avatar_url: str | None = None
    email_verified: bool = False


def _google(client_id: str, client_secret: str, redirect_uri: str, *, pkce: bool) -> ProviderConfig:
    return ProviderConfig(
        name="google",
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        user_info_url="https://www.googleapis.com/oauth2/v3/userinfo",
        scopes=("openid", "email", "profile"),
        pkce=pkce,
    )


def _github(client_id: str, client_secret: str, redirect_uri: str, *, pkce: bool) -> ProviderConfig:
    return ProviderConfig(
        name="github",
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        user_info_url="https://api.github.com/user",
        scopes=("user:email",),
        pkce=pkce,
    )


def build_provider_registries(settings: Settings) -> tuple[dict[str, ProviderConfig], dict[str, ProviderConfig]]:
    """Web and mobile registries. A provider is registered only when its client id is configured."""
    web: dict[str, ProviderConfig] = {}
    mobile: dict[str, ProviderConfig] = {}
    if settings.google_client_id:
        web["google"] = _google(
            settings.google_client_id, settings.google_client_secret, settings.google_redirect_uri, pkce=False
        )
    if settings.github_client_id:
        web["github"] = _github(
            settings.github_client_id, settings.github_client_secret, settings.github_redirect_uri, pkce=False
        )
    if settings.google_mobile_client_id:
        mobile["google"] = _google(
            settings.google_mobile_client_id,
            settings.google_mobile_client_secret,
            settings.google_mobile_redirect_uri,
            pkce=True,
        )
    if settings.github_mobile_client_id:
        mobile["github"] = _github(
            settings.github_mobile_client_id,
            settings.github_mobile_client_secret,
            settings.github_mobile_redirect_uri,
            pkce=True,
        )
    return web, mobile


def generate_state() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")


def normalize_user_info(provider: str, data: dict[str, Any]) -> OAuthUserInfo:
    """Map a provider's user-info payload onto ``OAuthUserInfo``."""
    if provider == "google":
        return OAuthUserInfo(
            id=str(data.get("sub", "")),
            email=str(data.get("email") or ""),
            name=str(data.get("name") or ""),
            avatar_url=data.get("picture"),
            email_verified=bool(data.get("email_verified", False)),
        )
    if provider == "github":
        return OAuthUserInfo(
            id=str(data.get("id", "")),
            email=str(data.get("email") or ""),
            name=str(data.get("name") or data.get("login") or ""),
            username=data.get("login"),
            avatar_url=data.get("avatar_url"),
            email_verified=bool(data.get("email")),
        )
    raise UnsupportedProvider


class FederatedAuthService:
    """Provider handshakes plus mapping of provider identities onto local users."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        providers: dict[str, ProviderConfig] | None = None,
        mobile_providers: dict[str, ProviderConfig] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        if providers is None or mobile_providers is None:
            web, mobile = build_provider_registries(self.settings)
            providers = web if providers is None else providers
            mobile_providers = mobile if mobile_providers is None else mobile_providers
        self.store = store
        self.providers = providers
        self.mobile_providers = mobile_providers
        self._transport = transport

    def _provider(self, provider: str) -> ProviderConfig:
        config = self.providers.get(provider)
        if config is None:
            msg = f"Unsupported OAuth provider: {provider}"
            raise UnsupportedProvider(msg)
        return config

    def _mobile_provider(self, provider: str) -> ProviderConfig:
        config = self.mobile_providers.get(provider) or self.providers.get(provider)
        if config is None:
            msg = f"Unsupported OAuth provider: {provider}"
            raise UnsupportedProvider(msg)
        return config

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.oauth_http_timeout_seconds, transport=self._transport)

    # -----------------------------------------------------------------------
    # Handshake
    # -----------------------------------------------------------------------

    async def get_authorization_url(self, provider: str, redirect_url: str) -> str:
        """Persist a fresh state nonce and build the provider consent URL."""
        config = self._provider(provider)
        redirect_url = redirect_url or config.redirect_uri
        state = generate_state()
        await self.store.create_oauth_state(
            state,
            provider,
            redirect_url,
            datetime.now(timezone.utc) + timedelta(seconds=self.settings.oauth_state_ttl_seconds),
        )

        params = {
            "client_id": config.client_id,
            "redirect_uri": redirect_url,
            "scope": " ".join(config.scopes),
            "response_type": "code",
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        elif provider == "github":
            params["allow_signup"] = "true"
        return f"{config.auth_url}?{urlencode(params)}"

    async def handle_callback(self, provider: str, code: str, state: str) -> OAuthUserInfo:
        """
        Finish the web flow: consume the state nonce, exchange the code, fetch the profile.

        Raises:
            InvalidOAuthState: Missing code/state, or a state that is unknown,
                expired, bound to another provider, or already consumed.
            UnsupportedProvider: Provider not configured.
            OAuthExchangeFailed: The provider rejected the code or was unreachable.
        """
        if not code:
            raise InvalidOAuthState("Authorization code is required")
        if not state:
            raise InvalidOAuthState("State parameter is required")
        config = self._provider(provider)

        stored = await self.store.get_oauth_state(state)
        if stored is None:
            raise InvalidOAuthState
        if stored.expires_at <= datetime.now(timezone.utc):
            await self.store.delete_oauth_state(state)
            raise InvalidOAuthState
        if stored.provider != provider:
            raise InvalidOAuthState("State provider mismatch")
        redirect_uri = stored.redirect_url or config.redirect_uri
        if not await self.store.delete_oauth_state(state):
            raise InvalidOAuthState

        async with self._client() as client:
            access_token = await self._exchange_code(client, config, code, redirect_uri)
            return await self._fetch_user_info(client, config, access_token)

    async def handle_mobile_callback(
        self,
        provider: str,
        code: str,
        code_verifier: str,
        redirect_uri: str | None = None,
    ) -> OAuthUserInfo:
        """PKCE variant for native clients. No state nonce is involved."""
        if not code:
            raise InvalidOAuthState("Authorization code is required")
        if not code_verifier:
            raise InvalidOAuthState("code_verifier is required")
        config = self._mobile_provider(provider)

        async with self._client() as client:
            access_token = await self._exchange_code(
                client, config, code, redirect_uri or config.redirect_uri, code_verifier=code_verifier
            )
            return await self._fetch_user_info(client, config, access_token)

    async def _exchange_code(
        self,
        client: httpx.AsyncClient,
        config: ProviderConfig,
        code: str,
        redirect_uri: str,
        *,
        code_verifier: str | None = None,
    ) -> str:
        form = {
            "client_id": config.client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if config.client_secret:
            form["client_secret"] = config.client_secret
        if code_verifier:
            form["code_verifier"] = code_verifier

        try:
            response = await client.post(config.token_url, data=form, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.warning("oauth_token_exchange_unreachable", provider=config.name, error=type(e).__name__)
            raise OAuthExchangeFailed from e
        if response.status_code != httpx.codes.OK:
            logger.warning("oauth_token_exchange_rejected", provider=config.name, status=response.status_code)
            raise OAuthExchangeFailed

        payload = _decode_object(response, config.name, "token")
        if payload.get("error"):
            logger.warning("oauth_token_exchange_error", provider=config.name, error=payload.get("error"))
            raise OAuthExchangeFailed
        access_token = payload.get("access_token")
        if not access_token:
            raise OAuthExchangeFailed
        return str(access_token)

    async def _fetch_user_info(
        self, client: httpx.AsyncClient, config: ProviderConfig, access_token: str
    ) -> OAuthUserInfo:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            response = await client.get(config.user_info_url, headers=headers)
            response.raise_for_status()
            info = normalize_user_info(config.name, _decode_object(response, config.name, "user_info"))
            if config.name == "github" and not info.email:
                email = await self._github_primary_email(client, headers)
                info = OAuthUserInfo(
                    id=info.id,
                    email=email,
                    name=info.name,
                    username=info.username,
                    avatar_url=info.avatar_url,
                    email_verified=True,
                )
        except httpx.HTTPError as e:
            logger.warning("oauth_user_info_failed", provider=config.name, error=type(e).__name__)
            raise OAuthExchangeFailed from e

        if not info.id or not info.email:
            msg = "Identity provider did not return an email address"
            raise OAuthExchangeFailed(msg)
        return info

    async def _github_primary_email(self, client: httpx.AsyncClient, headers: dict[str, str]) -> str:
        response = await client.get(GITHUB_EMAILS_URL, headers=headers)
        response.raise_for_status()
        entries = _decode_json(response, "github", "emails")
        if not isinstance(entries, list):
            return ""
        for entry in entries:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                return str(entry.get("email", ""))
        return ""

    # -----------------------------------------------------------------------
    # Identity mapping
    # -----------------------------------------------------------------------

    async def resolve_user(self, provider: str, info: OAuthUserInfo) -> User:
        """Find the local user for a provider identity, linking or creating as needed."""
        account = await self.store.get_account(provider, info.id)
        if account is not None:
            user = await self.store.get_user_by_id(account.user_id)
            if user is None:
                raise UserNotFound
            return user

        user = await self.store.get_user_by_email(info.email)
        if user is not None:
            if not info.email_verified:
                raise UserAlreadyExists
            await self.store.create_account(user.id, provider, info.id)
            logger.info("oauth_account_linked_by_email", user_id=user.id, provider=provider)
            return user

        user = await self.store.create_user(
            username=await self._unique_username(info),
            email=info.email,
            name=info.name,
            password_hash=None,
            role="user",
            image=info.avatar_url,
            email_verified=datetime.now(timezone.utc),
        )
        await self.store.create_account(user.id, provider, info.id)
        logger.info("oauth_user_created", user_id=user.id, provider=provider)
        return user

    async def _unique_username(self, info: OAuthUserInfo) -> str:
        base = _USERNAME_STRIP.sub("", info.username or info.email.split("@")[0])[:_USERNAME_MAX - 6] or "user"
        candidate = base
        suffix = 1
        while await self.store.get_user_by_username(candidate) is not None:
            candidate = f"{base}{suffix}"
            suffix += 1
        return candidate

    async def link_account(self, user_id: str, provider: str, info: OAuthUserInfo) -> Account:
        """
        Attach a provider identity to ``user_id``. Relinking the same identity is a no-op.

        Raises:
            AccountAlreadyLinked: The identity belongs to another user.
        """
        existing = await self.store.get_account(provider, info.id)
        if existing is not None:
            if existing.user_id != user_id:
                raise AccountAlreadyLinked
            return existing
        account = await self.store.create_account(user_id, provider, info.id)
        if account.user_id != user_id:
            raise AccountAlreadyLinked
        logger.info("oauth_account_linked", user_id=user_id, provider=provider)
        return account

    async def unlink_account(self, user_id: str, provider: str) -> None:
        """
        Detach ``provider`` from the user.

        Raises:
            AccountNotLinked: Nothing linked for that provider.
            CannotUnlinkLastMethod: A password-less user would be locked out.
        """
        user = await self.store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFound
        accounts = await self.store.get_user_accounts(user_id)
        if not any(a.provider == provider for a in accounts):
            raise AccountNotLinked
        if not user.password_hash and len(accounts) <= 1:
            raise CannotUnlinkLastMethod
        await self.store.delete_account(user_id, provider)
        logger.info("oauth_account_unlinked", user_id=user_id, provider=provider)

    async def get_linked_accounts(self, user_id: str) -> list[Account]:
        return await self.store.get_user_accounts(user_id)

    async def cleanup_expired_states(self) -> int:
        return await self.store.cleanup_expired_oauth_states()
