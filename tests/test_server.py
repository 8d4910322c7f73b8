from datetime import date
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from conftest import connect
from podcal_sync.models import Provider
from podcal_sync.server import create_app

HEADERS = {'X-User-ID': '7'}


@pytest.fixture
def client(engine):
    app = create_app(engine=engine, start_runtime=False)
    with TestClient(app) as client:
        yield client


def next_year(month, day, hour=10):
    return f"{date.today().year + 1}-{month:02d}-{day:02d}T{hour:02d}:00:00"


def create(client, **fields):
    body = {'title': 'Recording: The Growth Show', 'event_type': 'recording', 'start_datetime': next_year(3, 1)}
    body.update(fields)
    response = client.post('/calendar-events', json=body, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()['data']


def test_health(client):
    body = client.get('/health').json()
    assert body['ok']
    assert body['providers'] == ['google', 'outlook']


def test_requests_without_user_are_rejected(client):
    assert client.get('/calendar-events').status_code == 401
    assert client.get('/calendar-events', headers={'X-User-ID': 'abc'}).status_code == 401


class TestEvents:

    def test_create_without_connection_stays_local(self, client):
        event = create(client)

        assert event['sync_status'] == 'local_only'
        assert not event['sync_enabled']
        assert event['timezone'] == 'America/Chicago'
        assert event['event_type_label'] == 'Recording'
        assert event['google_event_id'] is None

    def test_create_with_connection_pushes(self, client, engine, ctx, google):
        connect(engine, ctx)

        event = create(client)

        assert event['sync_enabled']
        assert event['sync_status'] == 'synced'
        assert event['google_event_id'] in google.events

    def test_end_before_start_is_rejected(self, client):
        response = client.post('/calendar-events', headers=HEADERS, json={
            'title': 'Backwards', 'start_datetime': next_year(3, 1, 10), 'end_datetime': next_year(3, 1, 9),
        })
        assert response.status_code == 422

    def test_unknown_timezone_is_rejected(self, client):
        response = client.post('/calendar-events', headers=HEADERS, json={
            'title': 'Recording', 'start_datetime': next_year(3, 1), 'timezone': 'Mars/Olympus_Mons',
        })
        assert response.status_code == 422

        event = create(client)
        response = client.patch(
            f"/calendar-events/{event['id']}", json={'timezone': 'Moon/Tranquility'}, headers=HEADERS
        )
        assert response.status_code == 422
        stored = client.get(f"/calendar-events/{event['id']}", headers=HEADERS).json()['data']
        assert stored['timezone'] == 'America/Chicago'

    def test_get_update_delete(self, client):
        event = create(client)
        url = f"/calendar-events/{event['id']}"

        assert client.get(url, headers=HEADERS).json()['data']['title'] == 'Recording: The Growth Show'

        updated = client.patch(url, json={'title': 'Recording: Rescheduled'}, headers=HEADERS)
        assert updated.json()['data']['title'] == 'Recording: Rescheduled'

        deleted = client.delete(url, headers=HEADERS).json()['data']
        assert deleted == {'deleted': True, 'deleted_external': False}
        assert client.get(url, headers=HEADERS).status_code == 404

    def test_empty_update(self, client):
        event = create(client)
        response = client.patch(f"/calendar-events/{event['id']}", json={}, headers=HEADERS)
        assert response.status_code == 400

    def test_other_users_event_is_hidden(self, client):
        event = create(client)
        response = client.get(f"/calendar-events/{event['id']}", headers={'X-User-ID': '8'})
        assert response.status_code == 404

    def test_list_filters_and_paginates(self, client):
        create(client, start_datetime=next_year(3, 1))
        create(client, start_datetime=next_year(3, 2))
        create(client, title='Air Date: The Growth Show', event_type='air_date', start_datetime=next_year(4, 1))

        page = client.get('/calendar-events', params={'per_page': 2}, headers=HEADERS).json()
        assert page['meta'] == {'total': 3, 'page': 1, 'per_page': 2, 'total_pages': 2}
        assert len(page['data']) == 2

        recordings = client.get('/calendar-events', params={'event_type': 'recording'}, headers=HEADERS).json()
        assert recordings['meta']['total'] == 2

    def test_types(self, client):
        types = client.get('/calendar-events/types').json()['data']
        assert {'value': 'air_date', 'label': 'Air Date'} in types


class TestSyncControl:

    def test_status_lists_every_provider(self, client, engine, ctx):
        connect(engine, ctx)

        data = client.get('/calendar-sync/status', headers=HEADERS).json()['data']

        assert data['google']['connected']
        assert data['google']['calendar_id'] == 'primary'
        assert data['google']['provider_email'] == 'host@example.com'
        assert data['outlook'] == {'provider': 'outlook', 'enabled': True, 'connected': False}

    def test_calendars(self, client, engine, ctx):
        connect(engine, ctx)
        data = client.get('/calendar-sync/google/calendars', headers=HEADERS).json()['data']
        assert data[0]['id'] == 'primary'

    def test_select_calendar_requires_connection(self, client):
        response = client.post(
            '/calendar-sync/outlook/select-calendar', json={'calendar_id': 'cal-1'}, headers=HEADERS
        )
        assert response.status_code == 401

    def test_select_calendar(self, client, engine, ctx):
        connect(engine, ctx, provider=Provider.OUTLOOK, calendar_id=None)

        response = client.post(
            '/calendar-sync/outlook/select-calendar',
            json={'calendar_id': 'cal-1', 'calendar_name': 'Podcast'},
            headers=HEADERS,
        )

        assert response.json()['data']['calendar_name'] == 'Podcast'
        assert engine.connections.get(ctx, Provider.OUTLOOK).calendar_id == 'cal-1'

    def test_manual_sync(self, client, engine, ctx, google):
        connect(engine, ctx)
        create(client, sync_enabled=False)

        body = client.post('/calendar-sync/google/sync', headers=HEADERS).json()

        assert body['success']
        assert body['data']['errors'] == []

    def test_manual_sync_without_calendar(self, client, engine, ctx):
        connect(engine, ctx, calendar_id=None)
        assert client.post('/calendar-sync/google/sync', headers=HEADERS).status_code == 400

    def test_unknown_provider(self, client):
        assert client.post('/calendar-sync/yahoo/sync', headers=HEADERS).status_code == 422

    def test_settings(self, client, engine, ctx):
        connect(engine, ctx)

        assert client.patch('/calendar-sync/settings', json={}, headers=HEADERS).status_code == 400

        response = client.patch(
            '/calendar-sync/settings', json={'provider': 'google', 'sync_direction': 'pull'}, headers=HEADERS
        )
        assert response.json()['data']['sync_direction'] == 'pull'

    def test_disconnect(self, client, engine, ctx):
        connect(engine, ctx)

        assert client.post('/calendar-sync/google/disconnect', headers=HEADERS).json()['success']
        assert engine.connections.get(ctx, Provider.GOOGLE) is None
        assert client.post('/calendar-sync/google/disconnect', headers=HEADERS).status_code == 401

    def test_login_sync_without_connection(self, client):
        body = client.post('/calendar-sync/login-sync', headers=HEADERS).json()
        assert body == {'success': True, 'data': None}


class TestOAuthFlow:

    def test_authorize_and_callback(self, client, engine, ctx):
        auth_url = client.get('/calendar-sync/google/auth', headers=HEADERS).json()['data']['auth_url']
        state = parse_qs(urlparse(auth_url).query)['state'][0]

        response = client.get(
            '/calendar-sync/google/callback',
            params={'code': 'abc', 'state': state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = response.headers['location']
        assert location.startswith('https://crm.example.com/calendar?')
        assert parse_qs(urlparse(location).query)['calendar_connected'] == ['1']
        assert engine.connections.get(ctx, Provider.GOOGLE) is not None

    def test_callback_with_unknown_state(self, client):
        response = client.get(
            '/calendar-sync/google/callback',
            params={'code': 'abc', 'state': 'forged'},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert 'calendar_error=' in response.headers['location']


class TestAppearanceHooks:

    def test_date_sync(self, client, engine, ctx, seed_appearance):
        seed_appearance(42, record_date='2025-03-01', podcast_title='The Growth Show')

        response = client.post(
            '/appearances/42/date-sync', json={'updated_fields': ['record_date']}, headers=HEADERS
        )

        assert response.json()['data'] == {'record_date': 'created'}
        events = client.get('/calendar-events/by-appearance/42', headers=HEADERS).json()['data']
        assert [e['title'] for e in events] == ['Recording: The Growth Show']

    def test_backfill(self, client, seed_appearance):
        seed_appearance(1, record_date='2025-03-01', air_date='2025-04-01')

        assert client.post('/appearances/backfill', headers=HEADERS).json()['data'] == {'created': 2}
        assert client.post('/appearances/backfill', headers=HEADERS).json()['data'] == {'created': 0}
