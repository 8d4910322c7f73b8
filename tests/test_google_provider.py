"""Tests for the Google Calendar adapter against a mocked discovery client."""

from datetime import datetime
from unittest.mock import MagicMock, Mock, patch

import pytest
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from conftest import connect
from podcal_sync.database import CalendarEventDB
from podcal_sync.errors import TokenRefreshError
from podcal_sync.models import Provider
from podcal_sync.services.base import (
    AuthenticationError, CalendarServiceError, EventNotFoundError, SyncTokenExpiredError
)
from podcal_sync.services.google import GoogleCalendarProvider
from podcal_sync.services.registry import ProviderRegistry
from podcal_sync.store import UserContext
from podcal_sync.sync_engine import SyncEngine


def http_error(status, reason="error"):
    return HttpError(Mock(status=status, reason=reason), b'{"error": {"message": "' + reason.encode() + b'"}}')


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def provider(settings, service):
    return GoogleCalendarProvider(settings, service_factory=lambda token: service)


def local_event(**overrides):
    values = dict(
        id=5,
        title='Recording: The Growth Show',
        description='Bring a good mic',
        location='Zoom',
        event_type='recording',
        appearance_id=42,
        start_datetime=datetime(2025, 3, 5, 14, 0),
        end_datetime=datetime(2025, 3, 5, 15, 0),
        is_all_day=False,
        timezone='America/Chicago',
        reminders=None,
    )
    values.update(overrides)
    return CalendarEventDB(**values)


class TestTranslation:

    def test_timed_event_body(self, provider):
        body = provider._to_google_format(local_event(reminders=[{'method': 'email', 'minutes': 60}]))

        assert body['summary'] == 'Recording: The Growth Show'
        assert body['start'] == {'dateTime': '2025-03-05T14:00:00-06:00', 'timeZone': 'America/Chicago'}
        assert body['end'] == {'dateTime': '2025-03-05T15:00:00-06:00', 'timeZone': 'America/Chicago'}
        assert body['extendedProperties']['private'] == {
            'pit_event_id': '5', 'pit_event_type': 'recording', 'pit_appearance_id': '42',
        }
        assert body['reminders'] == {'useDefault': False, 'overrides': [{'method': 'email', 'minutes': 60}]}

    def test_all_day_end_date_is_exclusive(self, provider):
        body = provider._to_google_format(local_event(
            is_all_day=True,
            start_datetime=datetime(2025, 3, 5),
            end_datetime=datetime(2025, 3, 5, 23, 59, 59),
        ))
        assert body['start'] == {'date': '2025-03-05'}
        assert body['end'] == {'date': '2025-03-06'}

    def test_missing_end_defaults_to_one_hour(self, provider):
        body = provider._to_google_format(local_event(end_datetime=None))
        assert body['end']['dateTime'] == '2025-03-05T15:00:00-06:00'

    def test_remote_timed_event(self, provider):
        event = provider._from_google_format({
            'id': 'g-1',
            'summary': 'Dentist',
            'start': {'dateTime': '2025-03-05T20:00:00Z', 'timeZone': 'America/Chicago'},
            'end': {'dateTime': '2025-03-05T21:00:00Z', 'timeZone': 'America/Chicago'},
            'updated': '2025-03-01T10:00:00.000Z',
            'extendedProperties': {'private': {'pit_event_id': '5', 'pit_event_type': 'recording'}},
        })
        assert event.start == datetime(2025, 3, 5, 14, 0)
        assert event.end == datetime(2025, 3, 5, 15, 0)
        assert event.timezone == 'America/Chicago'
        assert event.local_event_id == 5
        assert event.is_echo

    def test_remote_all_day_event(self, provider):
        event = provider._from_google_format({
            'id': 'g-2',
            'start': {'date': '2025-03-05'},
            'end': {'date': '2025-03-07'},
        })
        assert event.is_all_day
        assert event.title == '(No title)'
        assert event.start == datetime(2025, 3, 5)
        assert event.end == datetime(2025, 3, 6, 23, 59, 59)

    def test_remote_cancellation(self, provider):
        event = provider._from_google_format({'id': 'g-3', 'status': 'cancelled'})
        assert event.cancelled


class TestCalendars:

    async def test_only_writable_calendars(self, provider, service):
        service.calendarList.return_value.list.return_value.execute.return_value = {'items': [
            {'id': 'primary@example.com', 'summary': 'Me', 'accessRole': 'owner', 'primary': True},
            {'id': 'team', 'summary': 'Team', 'accessRole': 'writer', 'backgroundColor': '#ff0000'},
            {'id': 'holidays', 'summary': 'Holidays', 'accessRole': 'reader'},
        ]}

        calendars = await provider.get_calendars('token')

        assert [c.id for c in calendars] == ['primary@example.com', 'team']
        assert calendars[0].primary
        assert calendars[0].color == '#4285f4'
        assert calendars[1].color == '#ff0000'


class TestEvents:

    async def test_create(self, provider, service):
        insert = service.events.return_value.insert
        insert.return_value.execute.return_value = {'id': 'g-new'}

        assert await provider.create_event('token', 'primary', local_event()) == 'g-new'
        assert insert.call_args.kwargs['calendarId'] == 'primary'

    async def test_create_permission_denied(self, provider, service):
        service.events.return_value.insert.return_value.execute.side_effect = http_error(403, "Forbidden")
        with pytest.raises(AuthenticationError):
            await provider.create_event('token', 'primary', local_event())

    async def test_unknown_timezone_is_a_provider_error(self, provider, service):
        insert = service.events.return_value.insert

        with pytest.raises(CalendarServiceError, match="Unknown timezone 'Mars/Olympus_Mons'"):
            await provider.create_event('token', 'primary', local_event(timezone='Mars/Olympus_Mons'))
        insert.assert_not_called()

    async def test_connection_failure_is_a_provider_error(self, provider, service):
        service.events.return_value.insert.return_value.execute.side_effect = ConnectionResetError("reset by peer")
        with pytest.raises(CalendarServiceError, match="Google API request failed"):
            await provider.create_event('token', 'primary', local_event())

    async def test_update_missing_event(self, provider, service):
        service.events.return_value.update.return_value.execute.side_effect = http_error(404, "Not Found")
        with pytest.raises(EventNotFoundError):
            await provider.update_event('token', 'primary', 'g-1', local_event())

    async def test_update_server_error(self, provider, service):
        service.events.return_value.update.return_value.execute.side_effect = http_error(500, "Backend Error")
        with pytest.raises(CalendarServiceError) as info:
            await provider.update_event('token', 'primary', 'g-1', local_event())
        assert info.value.status_code == 500

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_of_missing_event_succeeds(self, provider, service, status):
        service.events.return_value.delete.return_value.execute.side_effect = http_error(status)
        assert await provider.delete_event('token', 'primary', 'g-1')

    async def test_list_follows_pages(self, provider, service):
        events_list = service.events.return_value.list
        events_list.return_value.execute.side_effect = [
            {'items': [{'id': 'a', 'start': {'date': '2025-03-05'}, 'end': {'date': '2025-03-06'}}],
             'nextPageToken': 'page-2'},
            {'items': [{'id': 'b', 'status': 'cancelled'}], 'nextSyncToken': 'sync-1'},
        ]

        changes = await provider.get_events('token', 'primary', 'sync-0')

        assert [e.remote_id for e in changes.events] == ['a', 'b']
        assert changes.next_sync_token == 'sync-1'
        assert changes.used_sync_token
        first, second = events_list.call_args_list
        assert first.kwargs['syncToken'] == 'sync-0'
        assert first.kwargs['showDeleted'] is True
        assert second.kwargs['pageToken'] == 'page-2'

    async def test_full_sync_uses_time_window(self, provider, service):
        events_list = service.events.return_value.list
        events_list.return_value.execute.return_value = {'items': [], 'nextSyncToken': 'sync-1'}

        changes = await provider.get_events('token', 'primary')

        assert not changes.used_sync_token
        assert 'timeMin' in events_list.call_args.kwargs
        assert 'syncToken' not in events_list.call_args.kwargs

    async def test_expired_sync_token(self, provider, service):
        service.events.return_value.list.return_value.execute.side_effect = http_error(410, "Gone")
        with pytest.raises(SyncTokenExpiredError):
            await provider.get_events('token', 'primary', 'stale')


def test_auth_url_requests_offline_access(provider):
    url = provider.get_auth_url('state-123', provider.new_code_verifier())
    assert 'state=state-123' in url
    assert 'access_type=offline' in url
    assert 'prompt=consent' in url
    assert 'code_challenge=' in url
    assert 'redirect_uri=https%3A%2F%2Fcrm.example.com%2Fapi%2Fcalendar-sync%2Fgoogle%2Fcallback' in url


class TestTokenRefresh:

    async def test_transport_failure_is_an_authentication_error(self, provider):
        with patch.object(Credentials, 'refresh', side_effect=TransportError("connection reset")):
            with pytest.raises(AuthenticationError, match="connection reset"):
                await provider.refresh_token('refresh-1')

    async def test_transport_failure_during_sync_is_recorded(self, settings, provider):
        engine = SyncEngine(settings, registry=ProviderRegistry([provider]))
        engine.initialize()
        ctx = UserContext(user_id=7)
        connect(engine, ctx, expires_in=60)

        with patch.object(Credentials, 'refresh', side_effect=TransportError("connection reset")):
            with pytest.raises(TokenRefreshError):
                await engine.sync_user(ctx, Provider.GOOGLE)

        conn = engine.connections.get(ctx, Provider.GOOGLE)
        assert conn.sync_error.startswith("Token refresh failed")
        assert engine.cipher.decrypt(conn.refresh_token) == 'refresh-1'
