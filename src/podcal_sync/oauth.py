"""OAuth authorization flow and access-token lifecycle."""

import logging
import secrets
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from .config import Settings
from .crypto import TokenCipher
from .database import DatabaseManager, OAuthStateDB, utcnow
from .errors import NotConnectedError, OAuthError, TokenRefreshError
from .models import Provider, TokenSet, ProviderUserInfo
from .services.base import CalendarServiceError
from .services.registry import ProviderRegistry
from .store import ConnectionStore, TOKEN_REFRESH_FAILED_PREFIX, UserContext

logger = logging.getLogger(__name__)

STATE_LENGTH = 32


class OAuthStateStore:
    """Single-use CSRF state tokens bound to a user and provider."""

    def __init__(self, db: DatabaseManager, ttl_seconds: int = 600):
        self.db = db
        self.ttl = timedelta(seconds=ttl_seconds)

    def create(self, user_id: int, provider: Provider, code_verifier: Optional[str] = None) -> str:
        state = secrets.token_urlsafe(STATE_LENGTH)[:STATE_LENGTH]
        with self.db.get_session() as session:
            session.query(OAuthStateDB).filter(
                OAuthStateDB.created_at < utcnow() - self.ttl
            ).delete(synchronize_session=False)
            session.add(OAuthStateDB(
                state=state,
                user_id=user_id,
                provider=provider.value,
                code_verifier=code_verifier,
            ))
            session.commit()
        return state

    def consume(self, state: str, provider: Provider) -> Optional[OAuthStateDB]:
        """Redeem a state token.

        The record is deleted whether or not it is still valid.

        Returns:
            The state record, or None if unknown, expired or issued for a
            different provider
        """
        with self.db.get_session() as session:
            record = session.get(OAuthStateDB, state)
            if record is None:
                return None
            session.delete(record)
            session.commit()

        if record.provider != provider.value:
            return None
        if record.created_at < utcnow() - self.ttl:
            return None
        return record


class TokenManager:
    """Hands out valid access tokens, refreshing them shortly before expiry.

    This is the only component that sees plaintext tokens.
    """

    def __init__(
        self,
        settings: Settings,
        connections: ConnectionStore,
        registry: ProviderRegistry,
        cipher: TokenCipher,
    ):
        self.settings = settings
        self.connections = connections
        self.registry = registry
        self.cipher = cipher
        self.logger = logger.getChild("tokens")

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.settings.sync_config.token_refresh_margin_seconds)

    def store_connection(
        self, ctx: UserContext, provider: Provider, tokens: TokenSet, user_info: ProviderUserInfo
    ):
        """Persist a freshly authorized connection with encrypted tokens."""
        return self.connections.save_connection(
            ctx,
            provider,
            access_token=self.cipher.encrypt(tokens.access_token),
            refresh_token=self.cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            expires_at=tokens.expires_at,
            user_info=user_info,
        )

    async def get_valid_access_token(self, ctx: UserContext, provider: Provider) -> str:
        """Return an access token that is good for at least the refresh margin.

        Raises:
            NotConnectedError: If the user has no connection for the provider
            TokenRefreshError: If a refresh was needed and failed
        """
        conn = self.connections.get(ctx, provider)
        if conn is None:
            raise NotConnectedError(provider)

        access_token = self.cipher.decrypt(conn.access_token)
        expires_at = conn.token_expires_at
        if access_token and expires_at is not None and expires_at > utcnow() + self.refresh_margin:
            return access_token

        refresh_token = self.cipher.decrypt(conn.refresh_token)
        if not refresh_token:
            self._fail(conn.id, "No refresh token available")

        try:
            tokens = await self.registry.get(provider).refresh_token(refresh_token)
        except (CalendarServiceError, httpx.HTTPError) as e:
            self._fail(conn.id, str(e))

        self.connections.update_tokens(
            conn.id,
            access_token=self.cipher.encrypt(tokens.access_token),
            expires_at=tokens.expires_at,
            refresh_token=self.cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
        )
        self.logger.info(f"Refreshed {provider.value} access token for user {ctx.user_id}")
        return tokens.access_token

    def _fail(self, connection_id: int, reason: str) -> None:
        message = f"{TOKEN_REFRESH_FAILED_PREFIX}: {reason}"
        self.logger.error(message)
        self.connections.set_sync_error(connection_id, message)
        raise TokenRefreshError(message)


class OAuthService:
    """Authorization-code flow: consent URL out, connection in."""

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        states: OAuthStateStore,
        tokens: TokenManager,
    ):
        self.settings = settings
        self.registry = registry
        self.states = states
        self.tokens = tokens

    def begin(self, ctx: UserContext, provider: Provider) -> str:
        """Start an authorization for ``ctx``.

        Returns:
            The provider consent URL

        Raises:
            ProviderNotConfiguredError: If the provider is not enabled
        """
        client = self.registry.get(provider)
        code_verifier = client.new_code_verifier()
        state = self.states.create(ctx.user_id, provider, code_verifier)
        return client.get_auth_url(state, code_verifier)

    async def complete(
        self,
        provider: Provider,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> str:
        """Finish an authorization callback.

        Nothing is persisted unless every step succeeds.

        Returns:
            URL of the calendar page, carrying either a success flag or an
            error message
        """
        try:
            await self._connect(provider, code, state, error)
        except OAuthError as e:
            return self._redirect({'calendar_error': str(e)})

        return self._redirect({
            'calendar_connected': '1',
            'provider': provider.value,
            'message': f"{provider.label} connected successfully",
        })

    async def _connect(
        self,
        provider: Provider,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
    ) -> ProviderUserInfo:
        """Validate the callback, exchange the code and store the connection.

        Raises:
            OAuthError: If any step fails; the message is shown to the user
        """
        name = provider.value.capitalize()
        if error:
            raise OAuthError(f"{name} authorization was denied: {error}")
        if not code or not state:
            raise OAuthError("Invalid OAuth callback parameters")

        record = self.states.consume(state, provider)
        if record is None:
            raise OAuthError("Invalid or expired authorization state")

        client = self.registry.find(provider)
        if client is None:
            raise OAuthError(f"{provider.label} integration is not configured")

        try:
            tokens = await client.exchange_code(code, record.code_verifier)
        except (CalendarServiceError, httpx.HTTPError) as e:
            logger.warning(f"{name} code exchange failed for user {record.user_id}: {e}")
            raise OAuthError(f"Failed to get access token: {e}")

        try:
            user_info = await client.get_user_info(tokens.access_token)
        except (CalendarServiceError, httpx.HTTPError) as e:
            logger.warning(f"{name} user info lookup failed for user {record.user_id}: {e}")
            raise OAuthError(f"Failed to get user info: {e}")

        ctx = UserContext(user_id=record.user_id)
        conn = self.tokens.store_connection(ctx, provider, tokens, user_info)
        if conn is None or conn.id is None:
            raise OAuthError("Failed to save connection")

        logger.info(f"User {record.user_id} connected {provider.value} as {user_info.email}")
        return user_info

    def _redirect(self, params) -> str:
        separator = '&' if '?' in self.settings.app_calendar_url else '?'
        return f"{self.settings.app_calendar_url}{separator}{urlencode(params)}"
