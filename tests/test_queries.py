import pytest
from datetime import timedelta

from tenantsync.database import TenantDB
from tenantsync.errors import TenantInactiveError
from tenantsync.models import RemoteCalendar, RemoteContact, RemoteFolder

from conftest import connect, timed_event


@pytest.fixture
def calendars(provider):
    provider.calendars['grant-1'] = [
        RemoteCalendar(id='cal-b', name='Beta'),
        RemoteCalendar(id='cal-a', name='Alpha'),
        RemoteCalendar(id='cal-p', name='Zulu', is_primary=True),
    ]


async def sync_events(engine, store, provider, now):
    connect(store, 'acme')
    await engine.sync_calendars('acme')
    provider.events[('grant-1', 'cal-a')] = [
        timed_event('a-later', now + timedelta(days=3)),
        timed_event('a-soon', now + timedelta(hours=2)),
    ]
    provider.events[('grant-1', 'cal-b')] = [
        timed_event('b-past', now - timedelta(days=2)),
        timed_event('b-next-month', now + timedelta(days=30)),
    ]
    await engine.sync_calendar_events('acme', 'cal-a')
    await engine.sync_calendar_events('acme', 'cal-b')


@pytest.mark.asyncio
async def test_calendars_primary_first_then_name(engine, store, provider, queries, calendars):
    connect(store, 'acme')
    await engine.sync_calendars('acme')

    assert [c.name for c in queries.get_cached_calendars('acme')] == ['Zulu', 'Alpha', 'Beta']


@pytest.mark.asyncio
async def test_events_ordered_by_start_across_calendars(engine, store, provider, queries, calendars, now):
    await sync_events(engine, store, provider, now)
    provider.calls.clear()

    events = queries.get_cached_events('acme')

    assert [e.provider_id for e in events] == ['b-past', 'a-soon', 'a-later', 'b-next-month']
    assert provider.calls == []


@pytest.mark.asyncio
async def test_events_filtered_by_calendar_and_window(engine, store, provider, queries, calendars, now):
    await sync_events(engine, store, provider, now)

    by_provider_id = queries.get_cached_events('acme', calendar_id='cal-a')
    assert [e.provider_id for e in by_provider_id] == ['a-soon', 'a-later']

    windowed = queries.get_cached_events('acme', start_date=now, end_date=now + timedelta(days=7))
    assert [e.provider_id for e in windowed] == ['a-soon', 'a-later']

    limited = queries.get_cached_events('acme', limit=1)
    assert [e.provider_id for e in limited] == ['b-past']


@pytest.mark.asyncio
async def test_unknown_calendar_filter_is_ignored(engine, store, provider, queries, calendars, now):
    await sync_events(engine, store, provider, now)

    unfiltered = [e.provider_id for e in queries.get_cached_events('acme')]
    assert [e.provider_id for e in queries.get_cached_events('acme', calendar_id='missing')] == unfiltered
    assert len(unfiltered) == 4


@pytest.mark.asyncio
async def test_get_event_by_either_id(engine, store, provider, queries, calendars, now):
    await sync_events(engine, store, provider, now)

    by_provider = queries.get_event('acme', 'a-soon')
    by_local = queries.get_event('acme', by_provider.id)

    assert by_local.provider_id == 'a-soon'
    assert by_local.start_time.tzinfo is not None
    assert queries.get_event('acme', 'missing') is None


@pytest.mark.asyncio
async def test_upcoming_events_look_ahead(engine, store, provider, queries, calendars, now):
    await sync_events(engine, store, provider, now)

    assert [e.provider_id for e in queries.get_upcoming_events('acme')] == ['a-soon', 'a-later']
    assert [e.provider_id for e in queries.get_upcoming_events('acme', days=1)] == ['a-soon']
    assert [e.provider_id for e in queries.get_upcoming_events('acme', limit=1)] == ['a-soon']


@pytest.mark.asyncio
async def test_folders_and_single_folder(engine, store, provider, queries):
    connect(store, 'acme')
    provider.folders['grant-1'] = [
        RemoteFolder(id='f-custom', name='Projects'),
        RemoteFolder(id='f-inbox', name='Inbox'),
    ]
    await engine.sync_folders('acme')

    assert [f.name for f in queries.get_cached_folders('acme')] == ['Inbox', 'Projects']
    assert queries.get_folder('acme', 'f-custom').path == 'Projects'
    assert queries.get_folder('acme', 'nope') is None


def test_reads_do_not_provision_unknown_tenants(store, queries):
    assert queries.get_cached_calendars('fresh') == []
    assert queries.get_cached_events('fresh') == []
    assert queries.get_upcoming_events('fresh') == []
    assert queries.get_cached_folders('fresh') == []
    assert queries.get_event('fresh', 'e1') is None
    assert queries.get_folder('fresh', 'f1') is None
    assert queries.get_contact('fresh', 'c1') is None
    assert queries.get_cached_contacts('fresh').total == 0
    assert queries.search_contacts('fresh', 'ann') == []

    status = queries.get_sync_status('fresh')
    assert status['calendars_synced_at'] is None
    assert status['recent_activity'] == []

    with store.get_session() as session:
        assert session.query(TenantDB).count() == 0


def test_reads_reject_inactive_tenant(store, queries):
    connect(store, 'acme')
    with store.get_session() as session:
        session.query(TenantDB).update({TenantDB.is_active: False})
        session.commit()

    with pytest.raises(TenantInactiveError):
        queries.get_cached_calendars('acme')


@pytest.mark.asyncio
async def test_sync_status_reports_activity(engine, store, provider, queries, calendars):
    connect(store, 'acme')

    await engine.initial_calendar_sync('acme')
    status = queries.get_sync_status('acme')

    assert status['calendars_synced_at'] is not None
    assert status['folders_synced_at'] is None
    assert [entry['action'] for entry in status['recent_activity']] == ['calendar_sync']


@pytest.fixture
def address_book(provider):
    provider.contacts['grant-1'] = [
        RemoteContact(id='c-ann', given_name='Ann', surname='Lee', company_name='Initech',
                      emails=[{'email': 'ann@initech.test'}]),
        RemoteContact(id='c-bob', given_name='Bob', emails=[{'email': 'bob@globex.test'}]),
        RemoteContact(id='c-carl', surname='Annand', company_name='Globex'),
        RemoteContact(id='c-mail', emails=[{'email': 'zed@example.test'}]),
    ]


class TestContactReads:

    @pytest.mark.asyncio
    async def test_paged_by_display_name_with_total(self, engine, store, provider, queries, address_book):
        connect(store, 'acme')
        await engine.sync_contacts('acme')

        first = queries.get_cached_contacts('acme', limit=2)
        second = queries.get_cached_contacts('acme', limit=2, offset=2)

        assert [c.display_name for c in first.contacts] == ['Ann Lee', 'Annand']
        assert [c.display_name for c in second.contacts] == ['Bob', 'zed@example.test']
        assert first.total == second.total == 4

    @pytest.mark.asyncio
    async def test_search_matches_name_email_or_company(self, engine, store, provider, queries, address_book):
        connect(store, 'acme')
        await engine.sync_contacts('acme')

        assert queries.get_cached_contacts('acme', search='GLOBEX').total == 2
        by_company = queries.get_cached_contacts('acme', search='initech')
        assert [c.provider_id for c in by_company.contacts] == ['c-ann']

    @pytest.mark.asyncio
    async def test_search_contacts_includes_name_parts(self, engine, store, provider, queries, address_book):
        connect(store, 'acme')
        await engine.sync_contacts('acme')

        assert [c.provider_id for c in queries.search_contacts('acme', 'ann')] == ['c-ann', 'c-carl']
        assert [c.provider_id for c in queries.search_contacts('acme', 'ann', limit=1)] == ['c-ann']
        assert queries.search_contacts('acme', '  ') == []

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, engine, store, provider, queries, address_book):
        connect(store, 'acme')
        await engine.sync_contacts('acme')

        assert queries.search_contacts('acme', '%') == []

    @pytest.mark.asyncio
    async def test_get_contact_by_either_id(self, engine, store, provider, queries, address_book):
        connect(store, 'acme')
        await engine.sync_contacts('acme')

        by_provider = queries.get_contact('acme', 'c-bob')
        assert queries.get_contact('acme', by_provider.id).email == 'bob@globex.test'
        assert queries.get_contact('acme', 'nobody') is None
