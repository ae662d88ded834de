"""Tests for the HTTP provider client."""

import json
from datetime import datetime, timedelta

import httpx
import pytest
import pytz

from tenantsync.services import (
    NylasProviderClient, ProviderAuthError, ProviderError, ProviderNotFoundError, RateLimitError
)

from conftest import make_settings


def client_for(tmp_path, handler, **overrides):
    settings = make_settings(tmp_path)
    for key, value in overrides.items():
        setattr(settings, key, value)
    return NylasProviderClient(settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_list_calendars_follows_cursors(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        if 'page_token' not in request.url.params:
            return httpx.Response(200, json={
                'data': [{'id': 'cal-1', 'name': 'Work', 'is_primary': True}],
                'next_cursor': 'c2'
            })
        return httpx.Response(200, json={'data': [{'id': 'cal-2', 'name': 'Team', 'read_only': True}]})

    client = client_for(tmp_path, handler)
    calendars = await client.list_calendars('grant-1')
    await client.close()

    assert [c.id for c in calendars] == ['cal-1', 'cal-2']
    assert calendars[1].read_only
    assert seen[0].url.path == '/v3/grants/grant-1/calendars'
    assert seen[0].headers['Authorization'] == 'Bearer test-key'
    assert seen[1].url.params['page_token'] == 'c2'


@pytest.mark.asyncio
async def test_list_events_sends_window_and_returns_page(tmp_path):
    seen = []
    start = datetime(2024, 3, 1, tzinfo=pytz.UTC)
    end = start + timedelta(days=7)

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            'data': [{
                'id': 'evt-1',
                'title': 'Review',
                'when': {'start_time': 1709290800, 'end_time': 1709294400, 'object': 'timespan'},
                'busy': False
            }],
            'next_cursor': 'next-page'
        })

    client = client_for(tmp_path, handler)
    page = await client.list_events('grant-1', 'cal-1', start, end, limit=50, page_token='p1')
    await client.close()

    params = seen[0].url.params
    assert params['calendar_id'] == 'cal-1'
    assert params['start'] == str(int(start.timestamp()))
    assert params['end'] == str(int(end.timestamp()))
    assert params['limit'] == '50'
    assert params['page_token'] == 'p1'
    assert page.next_cursor == 'next-page'
    assert page.data[0].when.start_time == 1709290800
    assert page.data[0].busy is False


@pytest.mark.asyncio
async def test_not_found_maps_to_provider_not_found(tmp_path):
    def handler(request):
        return httpx.Response(404, json={'error': {'type': 'not_found', 'message': 'Event not found'}})

    client = client_for(tmp_path, handler)
    with pytest.raises(ProviderNotFoundError, match="Event not found") as excinfo:
        await client.delete_event('grant-1', 'cal-1', 'evt-9')
    await client.close()

    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_unauthorized_maps_to_auth_error(tmp_path):
    def handler(request):
        return httpx.Response(401, text="nope")

    client = client_for(tmp_path, handler)
    with pytest.raises(ProviderAuthError, match="HTTP 401"):
        await client.list_folders('grant-1')
    await client.close()


@pytest.mark.asyncio
async def test_rate_limit_is_retried(tmp_path):
    responses = [
        httpx.Response(429),
        httpx.Response(200, json={'data': [{'id': 'fld-1', 'name': 'Inbox'}]}),
    ]

    def handler(request):
        return responses.pop(0)

    client = client_for(tmp_path, handler, provider_retry_attempts=2)
    folders = await client.list_folders('grant-1')
    await client.close()

    assert [f.name for f in folders] == ['Inbox']
    assert responses == []


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_attempts(tmp_path):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429)

    client = client_for(tmp_path, handler, provider_retry_attempts=1)
    with pytest.raises(RateLimitError):
        await client.list_calendars('grant-1')
    await client.close()

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_create_event_posts_payload(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={'data': {'id': 'evt-new', 'title': 'Kickoff', 'status': 'confirmed'}})

    payload = {'title': 'Kickoff', 'when': {'start_time': 1, 'end_time': 2}}
    client = client_for(tmp_path, handler)
    event = await client.create_event('grant-1', 'cal-1', payload)
    await client.close()

    assert seen[0].method == 'POST'
    assert seen[0].url.params['calendar_id'] == 'cal-1'
    assert json.loads(seen[0].content) == payload
    assert event.id == 'evt-new'
    assert event.status == 'confirmed'


@pytest.mark.asyncio
async def test_create_without_id_is_an_error(tmp_path):
    def handler(request):
        return httpx.Response(200, json={'data': {}})

    client = client_for(tmp_path, handler)
    with pytest.raises(ProviderError, match="created event"):
        await client.create_event('grant-1', 'cal-1', {'title': 'x'})
    await client.close()


@pytest.mark.asyncio
async def test_create_folder_sends_parent(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={'data': {'id': 'fld-9', 'name': 'Invoices', 'parent_id': 'fld-1'}})

    client = client_for(tmp_path, handler)
    folder = await client.create_folder('grant-1', 'Invoices', parent_id='fld-1')
    await client.close()

    assert json.loads(seen[0].content) == {'name': 'Invoices', 'parent_id': 'fld-1'}
    assert folder.parent_id == 'fld-1'


@pytest.mark.asyncio
async def test_find_folder_by_name_is_case_insensitive(tmp_path):
    def handler(request):
        return httpx.Response(200, json={'data': [
            {'id': 'fld-1', 'name': 'Inbox'},
            {'id': 'fld-2', 'name': 'Receipts'},
        ]})

    client = client_for(tmp_path, handler)
    found = await client.find_folder_by_name('grant-1', 'receipts')
    missing = await client.find_folder_by_name('grant-1', 'Taxes')
    await client.close()

    assert found.id == 'fld-2'
    assert missing is None


@pytest.mark.asyncio
async def test_transport_failure_becomes_provider_error(tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = client_for(tmp_path, handler)
    with pytest.raises(ProviderError, match="connection refused"):
        await client.list_calendars('grant-1')
    await client.close()


@pytest.mark.asyncio
async def test_list_contacts_parses_nested_records(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={'data': [{
            'id': 'ctc-1',
            'given_name': 'Ann',
            'emails': [{'email': 'ann@acme.test', 'type': 'work'}],
            'birthday': 'not a date',
            'groups': [{'id': 'g-1'}],
        }]})

    client = client_for(tmp_path, handler)
    contacts = await client.list_contacts('grant-1')
    await client.close()

    assert seen[0].url.path == '/v3/grants/grant-1/contacts'
    assert seen[0].url.params['limit'] == '100'
    assert contacts[0].primary_email == 'ann@acme.test'
    assert contacts[0].birthday is None
    assert contacts[0].group_ids == ['g-1']


@pytest.mark.asyncio
async def test_update_message_puts_folder_list(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={'data': {'id': 'msg-1'}})

    client = client_for(tmp_path, handler)
    await client.update_message('grant-1', 'msg-1', {'folders': ['fld-9']})
    await client.close()

    assert seen[0].method == 'PUT'
    assert seen[0].url.path == '/v3/grants/grant-1/messages/msg-1'
    assert json.loads(seen[0].content) == {'folders': ['fld-9']}
