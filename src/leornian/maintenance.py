"""Background sweep of expired credentials: refresh tokens, e-mail tokens and OAuth states."""

from __future__ import annotations

import asyncio

import structlog

from leornian.auth.oauth import FederatedAuthService
from leornian.auth.store import CredentialStore
from leornian.database import session_scope

logger = structlog.get_logger()


async def sweep_expired_credentials() -> dict[str, int]:
    """Delete every expired credential row. Returns the counts removed per kind."""
    async with session_scope() as db:
        store = CredentialStore(db)
        return {
            "refresh_tokens": await store.cleanup_expired_refresh_tokens(),
            "verification_tokens": await store.cleanup_expired_verification_tokens(),
            "password_reset_tokens": await store.cleanup_expired_password_reset_tokens(),
            "oauth_states": await FederatedAuthService(store).cleanup_expired_states(),
        }


async def run_sweeper(interval_seconds: float) -> None:
    """Sweep every ``interval_seconds`` until cancelled. A failed sweep is retried next interval."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await sweep_expired_credentials()
        except Exception:
            logger.exception("credential_sweep_failed")
            continue
        logger.info("credential_sweep", **removed)
