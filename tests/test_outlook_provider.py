"""Tests for the Outlook adapter with Microsoft Graph stubbed by httpx.MockTransport."""

import json
from datetime import datetime
from urllib.parse import parse_qs

import httpx
import pytest

from podcal_sync.database import CalendarEventDB
from podcal_sync.services.base import AuthenticationError, EventNotFoundError, SyncTokenExpiredError
from podcal_sync.services.outlook import GRAPH_API_URL, OutlookCalendarProvider


class GraphStub:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, url, status=200, body=None):
        self.routes.setdefault((method, url), []).append((status, body))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split('?')[0]
        responses = self.routes.get((request.method, url))
        if not responses:
            return httpx.Response(404, json={'error': {'code': 'ErrorItemNotFound', 'message': 'not stubbed'}})
        status, body = responses.pop(0) if len(responses) > 1 else responses[0]
        return httpx.Response(status, json=body) if body is not None else httpx.Response(status)


@pytest.fixture
def graph():
    return GraphStub()


@pytest.fixture
def provider(settings, graph):
    return OutlookCalendarProvider(settings, transport=httpx.MockTransport(graph))


def local_event(**overrides):
    values = dict(
        id=5,
        title='Air Date: The Growth Show',
        description=None,
        location=None,
        event_type='air_date',
        appearance_id=42,
        start_datetime=datetime(2025, 4, 10, 9, 0),
        end_datetime=datetime(2025, 4, 10, 10, 0),
        is_all_day=False,
        timezone='America/Chicago',
        reminders=None,
    )
    values.update(overrides)
    return CalendarEventDB(**values)


class TestOAuth:

    def test_auth_url(self, provider):
        url = provider.get_auth_url('state-123')
        assert url.startswith('https://login.microsoftonline.com/common/oauth2/v2.0/authorize?')
        assert 'state=state-123' in url
        assert 'offline_access' in url

    async def test_refresh(self, provider, graph):
        token_url = 'https://login.microsoftonline.com/common/oauth2/v2.0/token'
        graph.add('POST', token_url, body={
            'access_token': 'new-access', 'refresh_token': 'new-refresh', 'expires_in': 3599, 'token_type': 'Bearer',
        })

        tokens = await provider.refresh_token('old-refresh')

        assert tokens.access_token == 'new-access'
        assert tokens.refresh_token == 'new-refresh'
        assert tokens.expires_in == 3599
        form = parse_qs(graph.requests[0].content.decode())
        assert form['grant_type'] == ['refresh_token']
        assert form['refresh_token'] == ['old-refresh']

    async def test_rejected_refresh(self, provider, graph):
        token_url = 'https://login.microsoftonline.com/common/oauth2/v2.0/token'
        graph.add('POST', token_url, status=400, body={
            'error': 'invalid_grant', 'error_description': 'AADSTS70008: The refresh token has expired',
        })
        with pytest.raises(AuthenticationError, match='AADSTS70008'):
            await provider.refresh_token('old-refresh')

    async def test_user_info(self, provider, graph):
        graph.add('GET', f'{GRAPH_API_URL}/me', body={
            'id': 'u-1', 'displayName': 'Show Host', 'mail': None, 'userPrincipalName': 'host@contoso.com',
        })
        info = await provider.get_user_info('token')
        assert info.email == 'host@contoso.com'
        assert info.name == 'Show Host'


class TestCalendars:

    async def test_only_editable_calendars(self, provider, graph):
        graph.add('GET', f'{GRAPH_API_URL}/me/calendars', body={'value': [
            {'id': 'cal-1', 'name': 'Calendar', 'canEdit': True, 'isDefaultCalendar': True, 'color': 'lightGreen'},
            {'id': 'cal-2', 'name': 'Shared', 'canEdit': False},
            {'id': 'cal-3', 'name': 'Podcast', 'canEdit': True, 'hexColor': '#123456'},
        ]})

        calendars = await provider.get_calendars('token')

        assert [c.id for c in calendars] == ['cal-1', 'cal-3']
        assert calendars[0].primary
        assert calendars[0].color == '#107c10'
        assert calendars[1].color == '#123456'


class TestEvents:

    async def test_create_sends_backreferences(self, provider, graph):
        graph.add('POST', f'{GRAPH_API_URL}/me/calendars/cal-1/events', status=201, body={'id': 'o-1'})

        assert await provider.create_event('token', 'cal-1', local_event()) == 'o-1'

        sent = json.loads(graph.requests[0].content)
        assert sent['subject'] == 'Air Date: The Growth Show'
        assert sent['start'] == {'dateTime': '2025-04-10T09:00:00', 'timeZone': 'America/Chicago'}
        assert not sent['isAllDay']
        props = {p['id'].rsplit(' ', 1)[-1]: p['value'] for p in sent['singleValueExtendedProperties']}
        assert props == {'pit_event_id': '5', 'pit_event_type': 'air_date', 'pit_appearance_id': '42'}
        assert graph.requests[0].headers['Authorization'] == 'Bearer token'

    async def test_update_missing_event(self, provider, graph):
        graph.add('PATCH', f'{GRAPH_API_URL}/me/events/o-1', status=404, body={'error': {'code': 'ErrorItemNotFound'}})
        with pytest.raises(EventNotFoundError):
            await provider.update_event('token', 'cal-1', 'o-1', local_event())

    @pytest.mark.parametrize("status", [204, 404, 410])
    async def test_delete_tolerates_missing(self, provider, graph, status):
        graph.add('DELETE', f'{GRAPH_API_URL}/me/events/o-1', status=status)
        assert await provider.delete_event('token', 'cal-1', 'o-1')

    async def test_delta_follows_next_link(self, provider, graph):
        delta_url = f'{GRAPH_API_URL}/me/calendars/cal-1/events/delta'
        graph.add('GET', delta_url, body={
            'value': [{
                'id': 'o-1',
                'subject': 'Team sync',
                'start': {'dateTime': '2025-04-10T15:00:00.0000000', 'timeZone': 'UTC'},
                'end': {'dateTime': '2025-04-10T16:00:00.0000000', 'timeZone': 'UTC'},
                'singleValueExtendedProperties': [
                    {'id': 'String {00000000-0000-0000-0000-000000000000} Name pit_event_id', 'value': '5'},
                ],
            }],
            '@odata.nextLink': f'{GRAPH_API_URL}/me/calendars/cal-1/events/delta/page2',
        })
        graph.add('GET', f'{GRAPH_API_URL}/me/calendars/cal-1/events/delta/page2', body={
            'value': [{'id': 'o-2', '@removed': {'reason': 'deleted'}}],
            '@odata.deltaLink': 'https://graph.microsoft.com/v1.0/delta?token=abc',
        })

        changes = await provider.get_events('token', 'cal-1')

        first, second = changes.events
        # UTC converted to the default zone (CDT in April)
        assert first.start == datetime(2025, 4, 10, 10, 0)
        assert first.local_event_id == 5
        assert second.cancelled
        assert changes.next_sync_token == 'https://graph.microsoft.com/v1.0/delta?token=abc'
        assert 'odata.maxpagesize=100' in graph.requests[0].headers['Prefer']

    async def test_all_day_event_end_is_inclusive(self, provider, graph):
        delta_url = f'{GRAPH_API_URL}/me/calendars/cal-1/events/delta'
        graph.add('GET', delta_url, body={
            'value': [{
                'id': 'o-3',
                'subject': 'Conference',
                'isAllDay': True,
                'start': {'dateTime': '2025-04-10T00:00:00.0000000', 'timeZone': 'America/Chicago'},
                'end': {'dateTime': '2025-04-12T00:00:00.0000000', 'timeZone': 'America/Chicago'},
            }],
            '@odata.deltaLink': 'delta-1',
        })

        event = (await provider.get_events('token', 'cal-1')).events[0]
        assert event.is_all_day
        assert event.start == datetime(2025, 4, 10)
        assert event.end == datetime(2025, 4, 11, 23, 59, 59)

    async def test_expired_delta_link(self, provider, graph):
        stale = 'https://graph.microsoft.com/v1.0/me/calendars/cal-1/events/delta'
        graph.add('GET', stale, status=410, body={'error': {'code': 'SyncStateNotFound'}})
        with pytest.raises(SyncTokenExpiredError):
            await provider.get_events('token', 'cal-1', stale + '?$deltatoken=old')
