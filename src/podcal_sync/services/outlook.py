"""Outlook calendar provider backed by Microsoft Graph."""

from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

import httpx
import pytz
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BACKREF_APPEARANCE_ID, BACKREF_EVENT_ID, BACKREF_EVENT_TYPE,
    AuthenticationError, BaseCalendarProvider, CalendarNotFoundError, CalendarServiceError,
    EventNotFoundError, RateLimitError, SyncTokenExpiredError,
)
from ..config import Settings
from ..database import CalendarEventDB
from ..models import CalendarInfo, ChangeSet, Provider, ProviderEvent, ProviderUserInfo, TokenSet

GRAPH_API_URL = "https://graph.microsoft.com/v1.0"
LOGIN_URL = "https://login.microsoftonline.com"
EXTENDED_PROPERTY_PREFIX = "String {00000000-0000-0000-0000-000000000000} Name "

OUTLOOK_COLORS = {
    'auto': '#0078d4',
    'lightBlue': '#0078d4',
    'lightGreen': '#107c10',
    'lightOrange': '#ff8c00',
    'lightGray': '#767676',
    'lightYellow': '#c19c00',
    'lightTeal': '#008272',
    'lightPink': '#e3008c',
    'lightBrown': '#8e562e',
    'lightRed': '#d13438',
    'maxColor': '#0078d4',
}

# Graph error codes that mean the delta link can no longer be used
RESYNC_ERROR_CODES = ("SyncStateNotFound", "SyncStateInvalid", "resyncRequired")


class OutlookCalendarProvider(BaseCalendarProvider):
    """Outlook / Microsoft 365 calendars through the Graph REST API."""

    provider = Provider.OUTLOOK

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize Outlook provider.

        Args:
            settings: Application settings
            transport: Optional httpx transport, used to stub Graph in tests
        """
        super().__init__(settings)
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return self.settings.provider_configured(Provider.OUTLOOK)

    @property
    def _token_url(self) -> str:
        return f"{LOGIN_URL}/{self.settings.outlook_tenant}/oauth2/v2.0/token"

    def _client(self, timeout: Optional[int] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.settings.request_timeout_seconds,
            transport=self._transport,
            limits=httpx.Limits(max_connections=self.settings.max_concurrent_requests),
        )

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    # OAuth

    def get_auth_url(self, state: str, code_verifier: Optional[str] = None) -> str:
        params = {
            'client_id': self.settings.outlook_client_id,
            'response_type': 'code',
            'redirect_uri': self.redirect_uri,
            'response_mode': 'query',
            'scope': ' '.join(self.settings.outlook_scopes),
            'state': state,
        }
        url = httpx.URL(f"{LOGIN_URL}/{self.settings.outlook_tenant}/oauth2/v2.0/authorize", params=params)
        return str(url)

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        return await self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
        })

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })

    async def _token_request(self, data: Dict[str, str]) -> TokenSet:
        form = {
            'client_id': self.settings.outlook_client_id,
            'client_secret': self.settings.outlook_client_secret,
            'scope': ' '.join(self.settings.outlook_scopes),
            **data,
        }
        async with self._client(self.settings.crud_timeout_seconds) as client:
            response = await client.post(self._token_url, data=form)

        body = self._json(response)
        if response.status_code != 200 or 'access_token' not in body:
            message = body.get('error_description') or body.get('error') or f"HTTP {response.status_code}"
            raise AuthenticationError(f"Outlook token request failed: {message}", status_code=response.status_code)

        return TokenSet(
            access_token=body['access_token'],
            refresh_token=body.get('refresh_token'),
            expires_in=int(body.get('expires_in', 3600)),
            token_type=body.get('token_type'),
        )

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        body = await self._request('GET', f"{GRAPH_API_URL}/me", access_token, context="Failed to get user info")
        return ProviderUserInfo(
            id=body.get('id'),
            email=body.get('mail') or body.get('userPrincipalName'),
            name=body.get('displayName'),
        )

    # Calendars

    async def get_calendars(self, access_token: str) -> List[CalendarInfo]:
        body = await self._request(
            'GET', f"{GRAPH_API_URL}/me/calendars", access_token, context="Failed to list Outlook calendars"
        )
        calendars = []
        for item in body.get('value', []):
            if not item.get('canEdit', False):
                continue
            calendars.append(CalendarInfo(
                id=item['id'],
                name=item.get('name') or 'Calendar',
                primary=bool(item.get('isDefaultCalendar', False)),
                color=item.get('hexColor') or OUTLOOK_COLORS.get(item.get('color'), OUTLOOK_COLORS['auto']),
            ))
        return calendars

    # Events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError)
    )
    async def create_event(self, access_token: str, calendar_id: str, event: CalendarEventDB) -> str:
        created = await self._request(
            'POST',
            f"{GRAPH_API_URL}/me/calendars/{calendar_id}/events",
            access_token,
            json=self._event_body(self._to_outlook_format, event),
            timeout=self.settings.crud_timeout_seconds,
            context=f"Failed to create Outlook event for {event.id}",
        )
        self.logger.debug(f"Created Outlook event {created.get('id')} for local event {event.id}")
        return created['id']

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError)
    )
    async def update_event(
        self, access_token: str, calendar_id: str, remote_id: str, event: CalendarEventDB
    ) -> str:
        try:
            updated = await self._request(
                'PATCH',
                f"{GRAPH_API_URL}/me/events/{remote_id}",
                access_token,
                json=self._event_body(self._to_outlook_format, event),
                timeout=self.settings.crud_timeout_seconds,
                context=f"Failed to update Outlook event {remote_id}",
            )
        except CalendarNotFoundError as e:
            raise EventNotFoundError(f"Outlook event {remote_id} not found", status_code=e.status_code)
        return updated.get('id', remote_id)

    async def delete_event(self, access_token: str, calendar_id: str, remote_id: str) -> bool:
        async with self._client(self.settings.crud_timeout_seconds) as client:
            response = await client.delete(
                f"{GRAPH_API_URL}/me/events/{remote_id}", headers=self._auth_headers(access_token)
            )
        if response.status_code in (200, 204, 404, 410):
            return True
        raise self._error_for(response, f"Failed to delete Outlook event {remote_id}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError)
    )
    async def get_events(
        self, access_token: str, calendar_id: str, sync_token: Optional[str] = None
    ) -> ChangeSet[ProviderEvent]:
        """Fetch events through a Graph delta query.

        ``sync_token`` is the ``@odata.deltaLink`` of the previous round.
        """
        page_size = self.settings.sync_config.pull_page_size
        tz_name = self.settings.sync_config.default_timezone
        headers = {
            **self._auth_headers(access_token),
            'Prefer': f'odata.maxpagesize={page_size}, outlook.timezone="{tz_name}"',
        }

        if sync_token:
            url = sync_token
            params = None
        else:
            url = f"{GRAPH_API_URL}/me/calendars/{calendar_id}/events/delta"
            time_min = self._full_sync_start().strftime('%Y-%m-%dT%H:%M:%SZ')
            params = {
                '$filter': f"start/dateTime ge '{time_min}'",
                '$top': page_size,
            }

        events: List[ProviderEvent] = []
        delta_link: Optional[str] = None
        async with self._client() as client:
            while url:
                response = await client.get(url, headers=headers, params=params)
                params = None
                if response.status_code != 200:
                    if sync_token and self._is_resync_required(response):
                        self.logger.warning("Outlook delta link expired, full resync required")
                        raise SyncTokenExpiredError("Outlook delta link expired", status_code=response.status_code)
                    raise self._error_for(response, f"Failed to get Outlook events for {calendar_id}")

                body = response.json()
                for item in body.get('value', []):
                    try:
                        events.append(self._from_outlook_format(item))
                    except (KeyError, ValueError) as e:
                        self.logger.warning(f"Skipping unparseable Outlook event {item.get('id')}: {e}")

                delta_link = body.get('@odata.deltaLink') or delta_link
                url = body.get('@odata.nextLink')

        return ChangeSet[ProviderEvent](
            events=events,
            next_sync_token=delta_link,
            used_sync_token=bool(sync_token),
        )

    # Translation

    def _to_outlook_format(self, event: CalendarEventDB) -> Dict[str, Any]:
        """Convert a local event to a Graph event resource."""
        tz_name = self._event_timezone(event)
        body: Dict[str, Any] = {
            'subject': event.title,
            'body': {'contentType': 'text', 'content': event.description or ''},
            'isAllDay': bool(event.is_all_day),
        }
        if event.location:
            body['location'] = {'displayName': event.location}

        if event.is_all_day:
            start_date, end_date = self._all_day_bounds(event)
            body['start'] = {'dateTime': f"{start_date.isoformat()}T00:00:00", 'timeZone': tz_name}
            body['end'] = {'dateTime': f"{end_date.isoformat()}T00:00:00", 'timeZone': tz_name}
        else:
            body['start'] = {'dateTime': event.start_datetime.strftime('%Y-%m-%dT%H:%M:%S'), 'timeZone': tz_name}
            body['end'] = {'dateTime': self._event_end(event).strftime('%Y-%m-%dT%H:%M:%S'), 'timeZone': tz_name}

        if event.reminders:
            body['isReminderOn'] = True
            body['reminderMinutesBeforeStart'] = min(int(r.get('minutes', 15)) for r in event.reminders)

        body['singleValueExtendedProperties'] = [
            {'id': f"{EXTENDED_PROPERTY_PREFIX}{name}", 'value': value}
            for name, value in self._backrefs(event).items()
        ]
        return body

    def _from_outlook_format(self, item: Dict[str, Any]) -> ProviderEvent:
        """Convert a Graph event resource to a provider-neutral event."""
        remote_id = item['id']
        if '@removed' in item or item.get('isCancelled'):
            return ProviderEvent(remote_id=remote_id, cancelled=True)

        props = {}
        for prop in item.get('singleValueExtendedProperties') or []:
            name = prop.get('id', '').rsplit(' ', 1)[-1]
            props[name] = prop.get('value')

        default_tz = self.settings.sync_config.default_timezone
        start = item.get('start') or {}
        end = item.get('end') or {}
        all_day = bool(item.get('isAllDay', False))

        start_dt = self._to_wall_clock(start['dateTime'], start.get('timeZone'), default_tz)
        end_dt = self._to_wall_clock(end['dateTime'], end.get('timeZone'), default_tz) if end.get('dateTime') else None
        if all_day:
            start_dt = datetime.combine(start_dt.date(), time.min)
            if end_dt is not None:
                end_dt = datetime.combine(end_dt.date() - timedelta(days=1), time(23, 59, 59))

        updated = None
        if item.get('lastModifiedDateTime'):
            updated = datetime.strptime(item['lastModifiedDateTime'][:19], '%Y-%m-%dT%H:%M:%S')

        return ProviderEvent(
            remote_id=remote_id,
            title=item.get('subject') or '(No title)',
            description=(item.get('body') or {}).get('content'),
            location=(item.get('location') or {}).get('displayName') or None,
            start=start_dt,
            end=end_dt,
            is_all_day=all_day,
            timezone=default_tz,
            html_link=item.get('webLink'),
            updated=updated,
            local_event_id=self._parse_int(props.get(BACKREF_EVENT_ID)),
            local_event_type=props.get(BACKREF_EVENT_TYPE),
            local_appearance_id=self._parse_int(props.get(BACKREF_APPEARANCE_ID)),
        )

    @staticmethod
    def _to_wall_clock(value: str, source_tz: Optional[str], target_tz: str) -> datetime:
        """Graph datetimes carry 7 fractional digits and a separate zone name."""
        parsed = datetime.strptime(value[:19], '%Y-%m-%dT%H:%M:%S')
        if not source_tz or source_tz == target_tz:
            return parsed
        try:
            source = pytz.timezone(source_tz)
        except pytz.UnknownTimeZoneError:
            return parsed
        return source.localize(parsed).astimezone(pytz.timezone(target_tz)).replace(tzinfo=None)

    # HTTP helpers

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
        context: str = "Outlook request failed",
    ) -> Dict[str, Any]:
        async with self._client(timeout) as client:
            response = await self._rate_limited_request(
                client.request(method, url, headers=self._auth_headers(access_token), json=json)
            )
        if response.status_code not in (200, 201):
            raise self._error_for(response, context)
        return self._json(response)

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _error_for(self, response: httpx.Response, context: str) -> CalendarServiceError:
        status = response.status_code
        error = self._json(response).get('error') or {}
        message = error.get('message') if isinstance(error, dict) else str(error)
        message = f"{context}: {message or f'HTTP {status}'}"
        if status == 429:
            self.logger.warning("Microsoft Graph rate limited, retrying...")
            return RateLimitError(message, status_code=status)
        if status in (401, 403):
            return AuthenticationError(message, status_code=status)
        if status == 404:
            return CalendarNotFoundError(message, status_code=status)
        return CalendarServiceError(message, status_code=status)

    def _is_resync_required(self, response: httpx.Response) -> bool:
        if response.status_code == 410:
            return True
        error = self._json(response).get('error') or {}
        return isinstance(error, dict) and error.get('code') in RESYNC_ERROR_CODES
