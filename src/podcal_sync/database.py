"""Database models and session management."""

from datetime import datetime

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, JSON, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session, relationship
import pytz

from .config import Settings
from .models import Provider, SyncDirection, SyncStatus

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every bookkeeping column is stored in."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


class PodcastDB(Base):
    """Podcast rows owned by the CRM; read here for event titles."""

    __tablename__ = 'podcasts'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=True)


class AppearanceDB(Base):
    """Guest appearance rows owned by the CRM; read here for date fields."""

    __tablename__ = 'appearances'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    podcast_id = Column(Integer, ForeignKey('podcasts.id'), nullable=True)
    record_date = Column(String(32), nullable=True)
    air_date = Column(String(32), nullable=True)
    promotion_date = Column(String(32), nullable=True)

    podcast = relationship("PodcastDB")


class CalendarConnectionDB(Base):
    """A user's link to one external calendar provider."""

    __tablename__ = 'calendar_connections'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    provider = Column(String(20), nullable=False, default=Provider.GOOGLE.value)

    # Encrypted OAuth material
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    calendar_id = Column(String(255), nullable=True)
    calendar_name = Column(String(255), nullable=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_direction = Column(String(10), nullable=False, default=SyncDirection.BOTH.value)

    provider_email = Column(String(255), nullable=True)
    provider_name = Column(String(255), nullable=True)

    last_sync_token = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)

    connected_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_connection_user_provider'),
        Index('idx_connection_sync_due', 'sync_enabled', 'last_sync_at'),
    )

    @property
    def provider_enum(self) -> Provider:
        return Provider(self.provider)

    @property
    def direction(self) -> SyncDirection:
        return SyncDirection(self.sync_direction or SyncDirection.BOTH.value)


class CalendarEventDB(Base):
    """A calendar entry owned by a user, optionally mirrored to providers."""

    __tablename__ = 'calendar_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    appearance_id = Column(Integer, nullable=True, index=True)
    podcast_id = Column(Integer, nullable=True, index=True)

    event_type = Column(String(20), nullable=False, default='other')
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)

    # Wall-clock values in ``timezone``
    start_datetime = Column(DateTime, nullable=False)
    end_datetime = Column(DateTime, nullable=True)
    is_all_day = Column(Boolean, nullable=False, default=False)
    timezone = Column(String(64), nullable=False, default='America/Chicago')

    google_calendar_id = Column(String(255), nullable=True)
    google_event_id = Column(String(255), nullable=True, index=True)
    outlook_calendar_id = Column(String(255), nullable=True)
    outlook_event_id = Column(String(255), nullable=True, index=True)

    sync_enabled = Column(Boolean, nullable=False, default=False)
    sync_status = Column(String(20), nullable=False, default=SyncStatus.LOCAL_ONLY.value)
    last_synced_at = Column(DateTime, nullable=True)
    sync_error_message = Column(Text, nullable=True)

    reminders = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_event_user_start', 'user_id', 'start_datetime'),
        Index('idx_event_user_status', 'user_id', 'sync_status'),
        Index('idx_event_appearance_type', 'appearance_id', 'event_type'),
    )

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(self.sync_status)

    def remote_id(self, provider: Provider) -> str:
        return getattr(self, f"{provider.value}_event_id")

    def remote_calendar_id(self, provider: Provider) -> str:
        return getattr(self, f"{provider.value}_calendar_id")

    def set_remote(self, provider: Provider, calendar_id, event_id) -> None:
        setattr(self, f"{provider.value}_calendar_id", calendar_id)
        setattr(self, f"{provider.value}_event_id", event_id)

    def linked_providers(self):
        return [p for p in Provider if self.remote_id(p)]


class OAuthStateDB(Base):
    """Single-use CSRF state for an in-flight authorization request."""

    __tablename__ = 'oauth_states'

    state = Column(String(64), primary_key=True)
    user_id = Column(Integer, nullable=False)
    provider = Column(String(20), nullable=False)
    code_verifier = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class DatabaseManager:
    """Owns the engine and hands out sessions."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()
