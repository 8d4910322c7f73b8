from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from pydantic_settings import SettingsConfigDict

from podcal_sync.config import Settings
from podcal_sync.database import AppearanceDB, PodcastDB
from podcal_sync.models import (
    CalendarInfo, ChangeSet, Provider, ProviderEvent, ProviderUserInfo, SyncConfiguration, TokenSet
)
from podcal_sync.services.base import (
    AuthenticationError, BaseCalendarProvider, CalendarServiceError, EventNotFoundError, SyncTokenExpiredError
)
from podcal_sync.services.registry import ProviderRegistry
from podcal_sync.store import UserContext
from podcal_sync.sync_engine import SyncEngine


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='g' * 20,
        google_client_secret='s' * 20,
        outlook_client_id='o' * 20,
        outlook_client_secret='t' * 20,
        secret_key='test-secret-key',
        secret_salt='test-salt',
        public_base_url='https://crm.example.com/api',
        app_calendar_url='https://crm.example.com/calendar',
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        sync_config=SyncConfiguration(delay_between_users_seconds=0),
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeProvider(BaseCalendarProvider):
    """In-memory calendar keyed by remote id."""

    def __init__(self, settings, provider: Provider):
        self.provider = provider
        super().__init__(settings)
        self.events: Dict[str, dict] = {}
        self.changes: List[ProviderEvent] = []
        self.next_sync_token: Optional[str] = "token-1"
        self.expired_tokens: set = set()
        self.fail_creates = False
        self.fail_deletes = False
        self.fail_refresh = False
        self.refreshed = 0
        self.deleted: List[str] = []
        self.sync_tokens_seen: List[Optional[str]] = []
        self.access_tokens_seen: List[str] = []
        self._counter = 0

    @property
    def is_configured(self) -> bool:
        return True

    def get_auth_url(self, state, code_verifier=None):
        return f"https://auth.example.com/{self.provider.value}?state={state}"

    async def exchange_code(self, code, code_verifier=None):
        if code == 'bad-code':
            raise AuthenticationError("invalid_grant")
        return TokenSet(access_token=f'access-{code}', refresh_token=f'refresh-{code}')

    async def refresh_token(self, refresh_token):
        if self.fail_refresh:
            raise AuthenticationError("invalid_grant")
        self.refreshed += 1
        return TokenSet(access_token=f'refreshed-{self.refreshed}', expires_in=3600)

    async def get_user_info(self, access_token):
        return ProviderUserInfo(id='acct-1', email='host@example.com', name='Show Host')

    async def get_calendars(self, access_token):
        return [CalendarInfo(id='primary', name='Primary', primary=True, color='#4285f4')]

    def _snapshot(self, event):
        return {
            'title': event.title,
            'start': event.start_datetime,
            'end': event.end_datetime,
            'local_id': event.id,
            'timezone': self._event_timezone(event),
        }

    async def create_event(self, access_token, calendar_id, event):
        self.access_tokens_seen.append(access_token)
        if self.fail_creates:
            raise CalendarServiceError("backend unavailable", status_code=503)
        body = self._event_body(self._snapshot, event)
        self._counter += 1
        remote_id = f"{self.provider.value}-{self._counter}"
        self.events[remote_id] = body
        return remote_id

    async def update_event(self, access_token, calendar_id, remote_id, event):
        self.access_tokens_seen.append(access_token)
        if remote_id not in self.events:
            raise EventNotFoundError(f"{remote_id} not found", status_code=404)
        self.events[remote_id] = self._event_body(self._snapshot, event)
        return remote_id

    async def delete_event(self, access_token, calendar_id, remote_id):
        self.access_tokens_seen.append(access_token)
        if self.fail_deletes:
            raise CalendarServiceError("backend unavailable", status_code=503)
        self.events.pop(remote_id, None)
        self.deleted.append(remote_id)
        return True

    async def get_events(self, access_token, calendar_id, sync_token=None):
        self.access_tokens_seen.append(access_token)
        self.sync_tokens_seen.append(sync_token)
        if sync_token in self.expired_tokens:
            raise SyncTokenExpiredError("expired", status_code=410)
        changes, self.changes = self.changes, []
        return ChangeSet[ProviderEvent](
            events=changes, next_sync_token=self.next_sync_token, used_sync_token=bool(sync_token)
        )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def google(settings):
    return FakeProvider(settings, Provider.GOOGLE)


@pytest.fixture
def outlook(settings):
    return FakeProvider(settings, Provider.OUTLOOK)


@pytest.fixture
def engine(settings, google, outlook):
    engine = SyncEngine(settings, registry=ProviderRegistry([google, outlook]))
    engine.initialize()
    return engine


@pytest.fixture
def ctx():
    return UserContext(user_id=7)


def connect(engine, ctx, provider=Provider.GOOGLE, calendar_id='primary', expires_in=3600):
    """Store an authorized connection with a selected calendar."""
    engine.tokens.store_connection(
        ctx,
        provider,
        TokenSet(access_token='access-1', refresh_token='refresh-1', expires_in=expires_in),
        ProviderUserInfo(email='host@example.com', name='Show Host'),
    )
    if calendar_id:
        engine.connections.select_calendar(ctx, provider, calendar_id)
    return engine.connections.get(ctx, provider)


def future(days=7, hour=10):
    """A wall-clock time inside the default push window."""
    base = datetime.now() + timedelta(days=days)
    return base.replace(hour=hour, minute=0, second=0, microsecond=0)


@pytest.fixture
def seed_appearance(engine, ctx):
    """Insert an appearance (and optionally its podcast) owned by ``ctx``."""
    def seed(appearance_id, podcast_title=None, user_id=None, **dates):
        owner = user_id if user_id is not None else ctx.user_id
        with engine.db_manager.get_session() as session:
            podcast_id = None
            if podcast_title is not None:
                podcast = PodcastDB(id=appearance_id + 1000, user_id=owner, title=podcast_title)
                session.add(podcast)
                podcast_id = podcast.id
            session.add(AppearanceDB(id=appearance_id, user_id=owner, podcast_id=podcast_id, **dates))
            session.commit()

    return seed


def set_appearance_dates(engine, appearance_id, **dates):
    with engine.db_manager.get_session() as session:
        appearance = session.get(AppearanceDB, appearance_id)
        for field, value in dates.items():
            setattr(appearance, field, value)
        session.commit()
