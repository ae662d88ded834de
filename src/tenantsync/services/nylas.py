"""HTTP provider client for a Nylas v3 style unified API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseProviderClient, ProviderError, ProviderAuthError, RateLimitError, ProviderNotFoundError
)
from ..config import Settings
from ..models import Page, RemoteCalendar, RemoteContact, RemoteEvent, RemoteFolder

# Upper bound on cursor hops for list endpoints that are always read in full.
_MAX_LIST_PAGES = 50


class NylasProviderClient(BaseProviderClient):
    """Provider client speaking the ``/v3/grants/{grant}/...`` REST surface."""

    name = "nylas"

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize the client.

        Args:
            settings: Application settings
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        super().__init__()
        self.settings = settings
        headers = {'Accept': 'application/json'}
        if settings.nylas_api_key:
            headers['Authorization'] = f"Bearer {settings.nylas_api_key}"
        self._http_client = httpx.AsyncClient(
            base_url=settings.nylas_api_uri,
            headers=headers,
            timeout=settings.request_timeout_seconds,
            transport=transport
        )

    async def close(self) -> None:
        await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send one request, retrying only when the provider rate-limits us."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.provider_retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(RateLimitError),
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(method, path, params=params, json=json)

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        try:
            response = await self._http_client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e

        if response.status_code == 429:
            self.logger.warning(f"Rate limited on {method} {path}")
            raise RateLimitError("Provider rate limit exceeded", status_code=429)
        if response.status_code in (401, 403):
            raise ProviderAuthError(self._error_message(response), status_code=response.status_code)
        if response.status_code == 404:
            raise ProviderNotFoundError(self._error_message(response), status_code=404)
        if response.status_code >= 400:
            raise ProviderError(self._error_message(response), status_code=response.status_code)

        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Provider returned HTTP {response.status_code}"
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get('message'):
            return error['message']
        return f"Provider returned HTTP {response.status_code}"

    @staticmethod
    def _payload(body: Dict[str, Any], what: str) -> Dict[str, Any]:
        data = body.get('data')
        if not isinstance(data, dict) or not data.get('id'):
            raise ProviderError(f"Provider response did not include the created {what}")
        return data

    async def _list_all(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        params = dict(params or {})
        for _ in range(_MAX_LIST_PAGES):
            body = await self._request('GET', path, params=params)
            items.extend(body.get('data') or [])
            cursor = body.get('next_cursor')
            if not cursor:
                break
            params['page_token'] = cursor
        return items

    # -- calendars and events -----------------------------------------------

    async def list_calendars(self, grant_id: str) -> List[RemoteCalendar]:
        data = await self._list_all(f"/v3/grants/{grant_id}/calendars")
        return [RemoteCalendar.model_validate(item) for item in data]

    async def list_events(
        self,
        grant_id: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        limit: int,
        page_token: Optional[str] = None
    ) -> Page[RemoteEvent]:
        params: Dict[str, Any] = {
            'calendar_id': calendar_id,
            'start': int(start.timestamp()),
            'end': int(end.timestamp()),
            'limit': limit,
        }
        if page_token:
            params['page_token'] = page_token

        body = await self._request('GET', f"/v3/grants/{grant_id}/events", params=params)
        return Page(
            data=[RemoteEvent.model_validate(item) for item in body.get('data') or []],
            next_cursor=body.get('next_cursor')
        )

    async def create_event(self, grant_id: str, calendar_id: str, payload: Dict[str, Any]) -> RemoteEvent:
        body = await self._request(
            'POST', f"/v3/grants/{grant_id}/events",
            params={'calendar_id': calendar_id}, json=payload
        )
        return RemoteEvent.model_validate(self._payload(body, "event"))

    async def update_event(
        self,
        grant_id: str,
        calendar_id: str,
        event_id: str,
        payload: Dict[str, Any]
    ) -> RemoteEvent:
        body = await self._request(
            'PUT', f"/v3/grants/{grant_id}/events/{event_id}",
            params={'calendar_id': calendar_id}, json=payload
        )
        return RemoteEvent.model_validate(body.get('data') or {'id': event_id})

    async def delete_event(self, grant_id: str, calendar_id: str, event_id: str) -> None:
        await self._request(
            'DELETE', f"/v3/grants/{grant_id}/events/{event_id}",
            params={'calendar_id': calendar_id}
        )

    # -- folders --------------------------------------------------------------

    async def list_folders(self, grant_id: str) -> List[RemoteFolder]:
        data = await self._list_all(f"/v3/grants/{grant_id}/folders")
        return [RemoteFolder.model_validate(item) for item in data]

    async def create_folder(self, grant_id: str, name: str, parent_id: Optional[str] = None) -> RemoteFolder:
        payload: Dict[str, Any] = {'name': name}
        if parent_id:
            payload['parent_id'] = parent_id
        body = await self._request('POST', f"/v3/grants/{grant_id}/folders", json=payload)
        return RemoteFolder.model_validate(self._payload(body, "folder"))

    async def update_folder(self, grant_id: str, folder_id: str, name: str) -> RemoteFolder:
        body = await self._request(
            'PUT', f"/v3/grants/{grant_id}/folders/{folder_id}", json={'name': name}
        )
        return RemoteFolder.model_validate(body.get('data') or {'id': folder_id, 'name': name})

    async def delete_folder(self, grant_id: str, folder_id: str) -> None:
        await self._request('DELETE', f"/v3/grants/{grant_id}/folders/{folder_id}")

    # -- contacts and messages -------------------------------------------------

    async def list_contacts(self, grant_id: str) -> List[RemoteContact]:
        data = await self._list_all(f"/v3/grants/{grant_id}/contacts", params={'limit': 100})
        return [RemoteContact.model_validate(item) for item in data]

    async def create_contact(self, grant_id: str, payload: Dict[str, Any]) -> RemoteContact:
        body = await self._request('POST', f"/v3/grants/{grant_id}/contacts", json=payload)
        return RemoteContact.model_validate(self._payload(body, "contact"))

    async def update_contact(self, grant_id: str, contact_id: str, payload: Dict[str, Any]) -> RemoteContact:
        body = await self._request(
            'PUT', f"/v3/grants/{grant_id}/contacts/{contact_id}", json=payload
        )
        return RemoteContact.model_validate(body.get('data') or {'id': contact_id})

    async def delete_contact(self, grant_id: str, contact_id: str) -> None:
        await self._request('DELETE', f"/v3/grants/{grant_id}/contacts/{contact_id}")

    async def update_message(self, grant_id: str, message_id: str, payload: Dict[str, Any]) -> None:
        await self._request('PUT', f"/v3/grants/{grant_id}/messages/{message_id}", json=payload)
