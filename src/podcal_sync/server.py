import asyncio
import logging
from datetime import date, datetime
from math import ceil
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field, validator
import pytz

from .config import load_settings
from .database import CalendarConnectionDB, CalendarEventDB
from .errors import (
    LocalEventNotFoundError, NoCalendarSelectedError, NotConnectedError, SyncDisabledError, TokenRefreshError
)
from .models import EventType, InvalidTransitionError, Provider, SyncDirection, SyncStatus
from .oauth import OAuthService, OAuthStateStore
from .scheduler import CalendarSyncJob, SyncRuntime
from .services.base import CalendarServiceError, ProviderNotConfiguredError
from .store import EventQuery, UserContext
from .sync_engine import SyncEngine
from .triggers import AppearanceCalendarSync

logger = logging.getLogger(__name__)


# Request bodies

def known_timezone(v: Optional[str]) -> Optional[str]:
    if v is not None and v not in pytz.all_timezones_set:
        raise ValueError(f"Unknown timezone: {v}")
    return v


class EventCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    event_type: EventType = EventType.OTHER
    start_datetime: datetime
    end_datetime: Optional[datetime] = None
    is_all_day: bool = False
    timezone: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    appearance_id: Optional[int] = None
    podcast_id: Optional[int] = None
    reminders: Optional[List[Dict[str, Any]]] = None
    sync_enabled: Optional[bool] = None

    @validator('end_datetime')
    def end_not_before_start(cls, v, values):
        if v is not None and 'start_datetime' in values and v < values['start_datetime']:
            raise ValueError("end_datetime must not be before start_datetime")
        return v

    @validator('timezone')
    def validate_timezone(cls, v):
        return known_timezone(v)


class EventUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    event_type: Optional[EventType] = None
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None
    is_all_day: Optional[bool] = None
    timezone: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    appearance_id: Optional[int] = None
    podcast_id: Optional[int] = None
    reminders: Optional[List[Dict[str, Any]]] = None
    sync_enabled: Optional[bool] = None

    @validator('timezone')
    def validate_timezone(cls, v):
        return known_timezone(v)


class SelectCalendarRequest(BaseModel):
    calendar_id: str = Field(..., min_length=1)
    calendar_name: Optional[str] = None


class SyncSettingsRequest(BaseModel):
    provider: Provider = Provider.GOOGLE
    sync_enabled: Optional[bool] = None
    sync_direction: Optional[SyncDirection] = None


class DateSyncRequest(BaseModel):
    updated_fields: List[str] = Field(default_factory=list)


# Serialization

def _fmt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(sep=' ') if value is not None else None


def event_to_dict(event: CalendarEventDB) -> Dict[str, Any]:
    try:
        label = EventType(event.event_type).label
    except ValueError:
        label = event.event_type
    return {
        'id': event.id,
        'user_id': event.user_id,
        'appearance_id': event.appearance_id,
        'podcast_id': event.podcast_id,
        'event_type': event.event_type,
        'event_type_label': label,
        'title': event.title,
        'description': event.description,
        'location': event.location,
        'start_datetime': _fmt(event.start_datetime),
        'end_datetime': _fmt(event.end_datetime),
        'is_all_day': bool(event.is_all_day),
        'timezone': event.timezone,
        'google_calendar_id': event.google_calendar_id,
        'google_event_id': event.google_event_id,
        'outlook_calendar_id': event.outlook_calendar_id,
        'outlook_event_id': event.outlook_event_id,
        'sync_enabled': bool(event.sync_enabled),
        'sync_status': event.sync_status,
        'last_synced_at': _fmt(event.last_synced_at),
        'sync_error_message': event.sync_error_message,
        'reminders': event.reminders,
        'created_at': _fmt(event.created_at),
        'updated_at': _fmt(event.updated_at),
    }


def connection_to_dict(provider: Provider, enabled: bool, conn: Optional[CalendarConnectionDB]) -> Dict[str, Any]:
    status = {'provider': provider.value, 'enabled': enabled, 'connected': conn is not None}
    if conn is not None:
        status.update({
            'calendar_id': conn.calendar_id,
            'calendar_name': conn.calendar_name,
            'sync_enabled': bool(conn.sync_enabled),
            'sync_direction': conn.sync_direction,
            'provider_email': conn.provider_email,
            'provider_name': conn.provider_name,
            'last_sync_at': _fmt(conn.last_sync_at),
            'sync_error': conn.sync_error,
            'connected_at': _fmt(conn.connected_at),
        })
    return status


def _ok(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {'success': True, 'data': data}
    if message:
        body['message'] = message
    body.update(extra)
    return body


# Dependencies

def current_user(x_user_id: Optional[str] = Header(None)) -> UserContext:
    """The authenticated user, as asserted by the fronting auth layer."""
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(status_code=401, detail="authentication required")
    return UserContext(user_id=int(x_user_id))


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def get_oauth(request: Request) -> OAuthService:
    return request.app.state.oauth


def get_triggers(request: Request) -> AppearanceCalendarSync:
    return request.app.state.triggers


def create_app(engine: Optional[SyncEngine] = None, start_runtime: bool = True) -> FastAPI:
    """Build the HTTP application.

    Args:
        engine: Pre-built sync engine; one is created from settings on startup
            when omitted
        start_runtime: Run the background sync loop
    """
    app = FastAPI(title="podcal-sync", version="1.0")

    @app.on_event("startup")
    async def on_startup():
        sync_engine = engine
        if sync_engine is None:
            sync_engine = SyncEngine(load_settings())
        sync_engine.initialize()
        settings = sync_engine.settings

        app.state.settings = settings
        app.state.engine = sync_engine
        app.state.oauth = OAuthService(
            settings,
            sync_engine.registry,
            OAuthStateStore(sync_engine.db_manager, settings.sync_config.oauth_state_ttl_seconds),
            sync_engine.tokens,
        )
        app.state.triggers = AppearanceCalendarSync(sync_engine)
        app.state.job = CalendarSyncJob(sync_engine)
        app.state.runtime = SyncRuntime(app.state.job)
        if start_runtime:
            app.state.runtime.sync_task = asyncio.create_task(app.state.runtime.run())

    @app.on_event("shutdown")
    async def on_shutdown():
        runtime: SyncRuntime = app.state.runtime
        await runtime.stop()
        await app.state.engine.registry.close()

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    def handler(status_code: int):
        async def handle(request: Request, exc: Exception):
            return JSONResponse(status_code=status_code, content={'success': False, 'error': str(exc)})
        return handle

    app.add_exception_handler(LocalEventNotFoundError, handler(404))
    app.add_exception_handler(NotConnectedError, handler(401))
    app.add_exception_handler(SyncDisabledError, handler(400))
    app.add_exception_handler(NoCalendarSelectedError, handler(400))
    app.add_exception_handler(ProviderNotConfiguredError, handler(400))
    app.add_exception_handler(TokenRefreshError, handler(401))
    app.add_exception_handler(InvalidTransitionError, handler(409))
    app.add_exception_handler(CalendarServiceError, handler(502))


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(request: Request):
        rt: SyncRuntime = request.app.state.runtime
        return {
            "ok": True,
            "providers": [p.value for p in request.app.state.engine.registry.enabled()],
            "last_sync": _fmt(rt.last_sync),
            "interval_seconds": rt.loop_interval_seconds,
        }

    # OAuth

    @app.get("/calendar-sync/{provider}/auth")
    async def oauth_begin(
        provider: Provider,
        ctx: UserContext = Depends(current_user),
        oauth: OAuthService = Depends(get_oauth),
    ):
        return _ok({'auth_url': oauth.begin(ctx, provider)})

    @app.get("/calendar-sync/{provider}/callback")
    async def oauth_callback(
        provider: Provider,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        oauth: OAuthService = Depends(get_oauth),
    ):
        url = await oauth.complete(provider, code, state, error)
        return RedirectResponse(url, status_code=302)

    # Sync control

    @app.get("/calendar-sync/status")
    async def sync_status(ctx: UserContext = Depends(current_user), engine: SyncEngine = Depends(get_engine)):
        return _ok({
            provider.value: connection_to_dict(
                provider, engine.registry.is_enabled(provider), engine.connections.get(ctx, provider)
            )
            for provider in Provider
        })

    @app.get("/calendar-sync/{provider}/calendars")
    async def list_calendars(
        provider: Provider,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        client = engine.registry.get(provider)
        access_token = await engine.tokens.get_valid_access_token(ctx, provider)
        calendars = await client.get_calendars(access_token)
        return _ok([c.model_dump() for c in calendars])

    @app.post("/calendar-sync/{provider}/select-calendar")
    async def select_calendar(
        provider: Provider,
        body: SelectCalendarRequest,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        conn = engine.connections.select_calendar(ctx, provider, body.calendar_id, body.calendar_name)
        if conn is None:
            raise NotConnectedError(provider)
        return _ok(connection_to_dict(provider, True, conn), message="Calendar selected")

    @app.post("/calendar-sync/{provider}/disconnect")
    async def disconnect(
        provider: Provider,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        if not engine.connections.disconnect(ctx, provider):
            raise NotConnectedError(provider)
        return _ok(message=f"{provider.label} disconnected")

    @app.post("/calendar-sync/{provider}/sync")
    async def manual_sync(
        provider: Provider,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        results = await engine.sync_user(ctx, provider)
        return _ok(results.to_dict(), message="Sync completed")

    @app.post("/calendar-sync/login-sync")
    async def login_sync(request: Request, ctx: UserContext = Depends(current_user)):
        results = await request.app.state.job.sync_on_login(ctx)
        return _ok(results.to_dict() if results is not None else None)

    @app.patch("/calendar-sync/settings")
    async def update_sync_settings(
        body: SyncSettingsRequest,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        if body.sync_enabled is None and body.sync_direction is None:
            raise HTTPException(status_code=400, detail="No settings to update")
        conn = engine.connections.update_settings(ctx, body.provider, body.sync_enabled, body.sync_direction)
        if conn is None:
            raise NotConnectedError(body.provider)
        return _ok(connection_to_dict(body.provider, True, conn), message="Settings updated")

    # Calendar events

    @app.get("/calendar-events")
    async def list_events(
        appearance_id: Optional[int] = None,
        podcast_id: Optional[int] = None,
        event_type: Optional[EventType] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        sync_status: Optional[SyncStatus] = None,
        orderby: str = 'start_datetime',
        order: str = 'ASC',
        page: int = Query(1, ge=1),
        per_page: int = Query(50, ge=1, le=100),
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        query = EventQuery(
            appearance_id=appearance_id,
            podcast_id=podcast_id,
            event_type=event_type.value if event_type else None,
            start_date=start_date,
            end_date=end_date,
            sync_status=sync_status.value if sync_status else None,
            orderby=orderby,
            order=order,
            page=page,
            per_page=per_page,
        )
        rows, total = engine.events.list(ctx, query)
        return _ok(
            [event_to_dict(e) for e in rows],
            meta={
                'total': total,
                'page': query.page,
                'per_page': query.per_page,
                'total_pages': ceil(total / query.per_page) if total else 0,
            },
        )

    @app.get("/calendar-events/types")
    async def event_types():
        return _ok([{'value': t.value, 'label': t.label} for t in EventType])

    @app.get("/calendar-events/by-appearance/{appearance_id}")
    async def events_by_appearance(
        appearance_id: int,
        ctx: UserContext = Depends(current_user),
        triggers: AppearanceCalendarSync = Depends(get_triggers),
    ):
        return _ok([event_to_dict(e) for e in triggers.get_appearance_events(ctx, appearance_id)])

    @app.post("/calendar-events", status_code=201)
    async def create_event(
        body: EventCreate,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        data = body.model_dump()
        if data['sync_enabled'] is None:
            data['sync_enabled'] = engine.connections.has_active_connection(ctx)
        data['event_type'] = body.event_type.value
        data['timezone'] = body.timezone or engine.settings.sync_config.default_timezone
        event = engine.events.create(ctx, data)
        if event.sync_enabled:
            await engine.sync_event(ctx, event.id)
        return _ok(event_to_dict(engine.events.get(ctx, event.id)), message="Event created")

    @app.get("/calendar-events/{event_id}")
    async def get_event(
        event_id: int,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        event = engine.events.get(ctx, event_id)
        if event is None:
            raise LocalEventNotFoundError(f"Event {event_id} not found")
        return _ok(event_to_dict(event))

    @app.patch("/calendar-events/{event_id}")
    async def update_event(
        event_id: int,
        body: EventUpdate,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        data = body.model_dump(exclude_unset=True)
        if not data:
            raise HTTPException(status_code=400, detail="No fields to update")
        if data.get('event_type') is not None:
            data['event_type'] = EventType(data['event_type']).value
        event = engine.events.update(ctx, event_id, data)
        if event is None:
            raise LocalEventNotFoundError(f"Event {event_id} not found")
        if event.sync_enabled and event.status in (SyncStatus.PENDING_SYNC, SyncStatus.LOCAL_ONLY):
            await engine.sync_event(ctx, event.id)
        return _ok(event_to_dict(engine.events.get(ctx, event.id)), message="Event updated")

    @app.delete("/calendar-events/{event_id}")
    async def delete_event(
        event_id: int,
        ctx: UserContext = Depends(current_user),
        engine: SyncEngine = Depends(get_engine),
    ):
        outcome = await engine.delete_event(ctx, event_id)
        return _ok(
            {'deleted': outcome['deleted'], 'deleted_external': outcome['deleted_external']},
            message="Event deleted",
        )

    # Appearance hooks

    @app.post("/appearances/{appearance_id}/date-sync")
    async def appearance_date_sync(
        appearance_id: int,
        body: DateSyncRequest,
        ctx: UserContext = Depends(current_user),
        triggers: AppearanceCalendarSync = Depends(get_triggers),
    ):
        actions = await triggers.sync_appearance_dates(ctx, appearance_id, body.updated_fields)
        return _ok(actions)

    @app.post("/appearances/backfill")
    async def appearance_backfill(
        ctx: UserContext = Depends(current_user),
        triggers: AppearanceCalendarSync = Depends(get_triggers),
    ):
        created = await triggers.migrate_existing_dates(ctx)
        return _ok({'created': created})


app = create_app()
