import pytest
from datetime import timedelta

from tenantsync.database import CalendarDB, CalendarEventDB, ContactDB, FolderDB
from tenantsync.errors import (
    InvalidContactError, InvalidEventError, InvalidFolderError, NotConnectedError, ReadOnlyCalendarError,
    ResourceNotFoundError, SystemFolderError
)
from tenantsync.models import (
    ContactCreate, ContactUpdate, EventCreate, EventUpdate, Participant, RemoteCalendar, RemoteContact,
    RemoteFolder
)
from tenantsync.services import ProviderError

from conftest import connect, timed_event


async def prepare_calendars(engine, store, provider):
    connect(store, 'acme')
    provider.calendars['grant-1'] = [
        RemoteCalendar(id='cal-work', name='Work', is_primary=True),
        RemoteCalendar(id='cal-holidays', name='Holidays', read_only=True),
    ]
    await engine.sync_calendars('acme')


async def prepare_folders(engine, store, provider):
    connect(store, 'acme')
    provider.folders['grant-1'] = [
        RemoteFolder(id='f-inbox', name='Inbox'),
        RemoteFolder(id='f-clients', name='Clients'),
        RemoteFolder(id='f-acme', name='Acme', parent_id='f-clients'),
        RemoteFolder(id='f-acme-2024', name='2024', parent_id='f-acme'),
    ]
    await engine.sync_folders('acme')


def event_params(now, **overrides):
    values = dict(
        calendar_id='cal-work',
        title='Kickoff',
        start_time=now + timedelta(days=1),
        end_time=now + timedelta(days=1, hours=1),
    )
    values.update(overrides)
    return EventCreate(**values)


class TestEventMutations:

    @pytest.mark.asyncio
    async def test_create_writes_provider_then_cache(self, engine, mutations, store, provider, now):
        await prepare_calendars(engine, store, provider)
        provider.calls.clear()

        event = await mutations.create_and_sync_event(
            'acme',
            event_params(now, participants=[Participant(email='a@acme.test', name='A')])
        )

        method, grant_id, calendar_id, payload = provider.calls[0]
        assert (method, grant_id, calendar_id) == ('create_event', 'grant-1', 'cal-work')
        assert payload['title'] == 'Kickoff'
        assert payload['when']['end_time'] - payload['when']['start_time'] == 3600
        assert payload['participants'] == [{'email': 'a@acme.test', 'name': 'A'}]

        assert event.provider_id == 'evt-1'
        assert event.title == 'Kickoff'
        assert event.status == 'confirmed'
        with store.get_session() as session:
            row = session.get(CalendarEventDB, event.id)
            assert row.provider_id == 'evt-1'
            assert row.calendar.provider_id == 'cal-work'

    @pytest.mark.asyncio
    async def test_create_provider_failure_leaves_no_orphan(self, engine, mutations, store, provider, now):
        await prepare_calendars(engine, store, provider)
        provider.fail('create_event', ProviderError("rejected", status_code=422))

        with pytest.raises(ProviderError):
            await mutations.create_and_sync_event('acme', event_params(now))

        with store.get_session() as session:
            assert session.query(CalendarEventDB).count() == 0

    @pytest.mark.asyncio
    async def test_create_rejects_read_only_calendar_before_remote_call(
        self, engine, mutations, store, provider, now
    ):
        await prepare_calendars(engine, store, provider)
        provider.calls.clear()

        with pytest.raises(ReadOnlyCalendarError):
            await mutations.create_and_sync_event('acme', event_params(now, calendar_id='cal-holidays'))

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_create_unknown_calendar(self, engine, mutations, store, provider, now):
        await prepare_calendars(engine, store, provider)

        with pytest.raises(ResourceNotFoundError):
            await mutations.create_and_sync_event('acme', event_params(now, calendar_id='missing'))

    @pytest.mark.asyncio
    async def test_create_requires_connection(self, mutations, now):
        with pytest.raises(NotConnectedError):
            await mutations.create_and_sync_event('beta', event_params(now))

    @pytest.mark.asyncio
    async def test_update_sends_only_supplied_fields(self, engine, mutations, store, provider, now):
        await prepare_calendars(engine, store, provider)
        created = await mutations.create_and_sync_event('acme', event_params(now, location='Room 1'))
        provider.calls.clear()

        updated = await mutations.update_and_sync_event('acme', created.id, EventUpdate(title='Renamed'))

        assert provider.calls == [('update_event', 'grant-1', 'cal-work', 'evt-1', {'title': 'Renamed'})]
        assert updated.title == 'Renamed'
        assert updated.location == 'Room 1'
        assert updated.start_time == created.start_time

    @pytest.mark.asyncio
    async def test_update_combines_single_bound_with_cached_bound(self, engine, mutations, store, provider, now):
        await prepare_calendars(engine, store, provider)
        created = await mutations.create_and_sync_event('acme', event_params(now))
        new_end = created.end_time + timedelta(hours=1)

        updated = await mutations.update_and_sync_event('acme', 'evt-1', EventUpdate(end_time=new_end))

        payload = provider.calls[-1][-1]
        assert payload['when'] == {
            'start_time': int(created.start_time.timestamp()),
            'end_time': int(new_end.timestamp()),
        }
        assert updated.end_time == new_end
        assert updated.start_time == created.start_time

    @pytest.mark.asyncio
    async def test_update_rejects_inverted_times_before_remote_call(
        self, engine, mutations, store, provider, now
    ):
        await prepare_calendars(engine, store, provider)
        created = await mutations.create_and_sync_event('acme', event_params(now))
        provider.calls.clear()

        with pytest.raises(InvalidEventError):
            await mutations.update_and_sync_event(
                'acme', created.id, EventUpdate(end_time=created.start_time - timedelta(minutes=5))
            )

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_update_requires_some_field(self, mutations):
        with pytest.raises(InvalidEventError):
            await mutations.update_and_sync_event('acme', 'evt-1', EventUpdate())

    @pytest.mark.asyncio
    async def test_update_provider_failure_keeps_cached_values(self, engine, mutations, store, provider, now):
        await prepare_calendars(engine, store, provider)
        created = await mutations.create_and_sync_event('acme', event_params(now))
        provider.fail('update_event', ProviderError("boom", status_code=500))

        with pytest.raises(ProviderError):
            await mutations.update_and_sync_event('acme', created.id, EventUpdate(title='Nope'))

        with store.get_session() as session:
            assert session.get(CalendarEventDB, created.id).title == 'Kickoff'

    @pytest.mark.asyncio
    async def test_delete_removes_cached_event(self, engine, mutations, store, provider, now):
        await prepare_calendars(engine, store, provider)
        provider.events[('grant-1', 'cal-work')] = [timed_event('remote-1', now + timedelta(days=1))]
        await engine.sync_calendar_events('acme', 'cal-work')

        await mutations.delete_and_sync_event('acme', 'remote-1')

        assert provider.calls[-1] == ('delete_event', 'grant-1', 'cal-work', 'remote-1')
        with store.get_session() as session:
            assert session.query(CalendarEventDB).count() == 0
            assert session.query(CalendarDB).count() == 2

    @pytest.mark.asyncio
    async def test_delete_unknown_event(self, engine, mutations, store, provider):
        await prepare_calendars(engine, store, provider)
        provider.calls.clear()

        with pytest.raises(ResourceNotFoundError):
            await mutations.delete_and_sync_event('acme', 'missing')
        assert provider.calls == []


class TestFolderMutations:

    @pytest.mark.asyncio
    async def test_create_nested_folder_derives_path(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        folder = await mutations.create_and_sync_folder('acme', 'Invoices', parent_id='f-acme')

        assert provider.calls[-1] == ('create_folder', 'grant-1', 'Invoices', 'f-acme')
        assert folder.path == 'Clients/Acme/Invoices'
        assert folder.parent_id == 'f-acme'
        assert folder.folder_type.value == 'custom'

    @pytest.mark.asyncio
    async def test_create_with_unknown_parent(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)
        provider.calls.clear()

        with pytest.raises(ResourceNotFoundError):
            await mutations.create_and_sync_folder('acme', 'Invoices', parent_id='nope')
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_create_rejects_blank_name(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        with pytest.raises(InvalidFolderError):
            await mutations.create_and_sync_folder('acme', '   ')

    @pytest.mark.asyncio
    async def test_rename_rewrites_descendant_paths(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        renamed = await mutations.update_and_sync_folder('acme', 'f-acme', 'Acme Corp')

        assert renamed.path == 'Clients/Acme Corp'
        with store.get_session() as session:
            child = session.query(FolderDB).filter(FolderDB.provider_id == 'f-acme-2024').one()
            assert child.path == 'Clients/Acme Corp/2024'

    @pytest.mark.asyncio
    async def test_system_folders_are_protected(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)
        provider.calls.clear()

        with pytest.raises(SystemFolderError):
            await mutations.delete_and_sync_folder('acme', 'f-inbox')
        with pytest.raises(SystemFolderError):
            await mutations.update_and_sync_folder('acme', 'f-inbox', 'Renamed')
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_delete_removes_descendants(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        await mutations.delete_and_sync_folder('acme', 'f-acme')

        assert provider.calls[-1] == ('delete_folder', 'grant-1', 'f-acme')
        with store.get_session() as session:
            remaining = sorted(f.provider_id for f in session.query(FolderDB).all())
            assert remaining == ['f-clients', 'f-inbox']

    @pytest.mark.asyncio
    async def test_find_or_create_prefers_cache(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)
        provider.calls.clear()

        folder = await mutations.find_or_create_folder('acme', 'clients')

        assert folder.provider_id == 'f-clients'
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_find_or_create_caches_provider_hit(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)
        provider.folders['grant-1'].append(RemoteFolder(id='f-new', name='Receipts'))

        folder = await mutations.find_or_create_folder('acme', 'Receipts')

        assert folder.provider_id == 'f-new'
        assert 'create_folder' not in provider.call_names()
        with store.get_session() as session:
            assert session.query(FolderDB).filter(FolderDB.provider_id == 'f-new').count() == 1

    @pytest.mark.asyncio
    async def test_find_or_create_creates_when_missing(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        folder = await mutations.find_or_create_folder('acme', 'Receipts')

        assert provider.call_names()[-2:] == ['list_folders', 'create_folder']
        assert folder.path == 'Receipts'

    @pytest.mark.asyncio
    async def test_find_without_create_returns_none(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        folder = await mutations.find_or_create_folder('acme', 'Receipts', create_if_missing=False)

        assert folder is None
        assert 'create_folder' not in provider.call_names()

    @pytest.mark.asyncio
    async def test_move_email_targets_existing_folder(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)
        provider.calls.clear()

        result = await mutations.move_email_to_folder('acme', 'msg-1', 'clients')

        assert result.success is True
        assert result.folder.provider_id == 'f-clients'
        assert provider.calls == [('update_message', 'grant-1', 'msg-1', {'folders': ['f-clients']})]

    @pytest.mark.asyncio
    async def test_move_email_creates_missing_folder(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        result = await mutations.move_email_to_folder('acme', 'msg-1', 'Receipts')

        assert provider.call_names()[-3:] == ['list_folders', 'create_folder', 'update_message']
        assert provider.calls[-1][3] == {'folders': [result.folder.provider_id]}
        with store.get_session() as session:
            assert session.query(FolderDB).filter(FolderDB.name == 'Receipts').count() == 1

    @pytest.mark.asyncio
    async def test_move_email_without_create_reports_missing_folder(self, engine, mutations, store, provider):
        await prepare_folders(engine, store, provider)

        with pytest.raises(ResourceNotFoundError, match='Folder not found: Receipts'):
            await mutations.move_email_to_folder('acme', 'msg-1', 'Receipts', create_if_missing=False)
        assert 'update_message' not in provider.call_names()

    @pytest.mark.asyncio
    async def test_move_email_requires_message_and_folder(self, mutations, provider):
        with pytest.raises(InvalidFolderError):
            await mutations.move_email_to_folder('acme', '', 'Receipts')
        with pytest.raises(InvalidFolderError):
            await mutations.move_email_to_folder('acme', 'msg-1', '  ')
        assert provider.calls == []


async def prepare_contacts(engine, store, provider):
    connect(store, 'acme')
    provider.contacts['grant-1'] = [
        RemoteContact(id='c-ann', given_name='Ann', surname='Lee', emails=[{'email': 'ann@acme.test'}]),
    ]
    await engine.sync_contacts('acme')


class TestContactMutations:

    @pytest.mark.asyncio
    async def test_create_sends_work_email_and_phone(self, mutations, store, provider):
        connect(store, 'acme')

        contact = await mutations.create_and_sync_contact(
            'acme',
            ContactCreate(given_name='Bo', email='bo@acme.test', phone_number='555-0101', company_name='Acme')
        )

        method, grant_id, payload = provider.calls[0]
        assert (method, grant_id) == ('create_contact', 'grant-1')
        assert payload == {
            'given_name': 'Bo',
            'company_name': 'Acme',
            'emails': [{'email': 'bo@acme.test', 'type': 'work'}],
            'phone_numbers': [{'number': '555-0101', 'type': 'work'}],
        }
        assert contact.provider_id == 'ctc-1'
        assert contact.display_name == 'Bo'
        assert contact.email == 'bo@acme.test'
        with store.get_session() as session:
            assert session.query(ContactDB).count() == 1

    @pytest.mark.asyncio
    async def test_create_requires_name_or_email(self, mutations, store, provider):
        connect(store, 'acme')

        with pytest.raises(InvalidContactError):
            await mutations.create_and_sync_contact('acme', ContactCreate(company_name='Acme'))
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_create_provider_failure_leaves_cache_empty(self, mutations, store, provider):
        connect(store, 'acme')
        provider.fail('create_contact', ProviderError("rejected"))

        with pytest.raises(ProviderError):
            await mutations.create_and_sync_contact('acme', ContactCreate(surname='Lee'))
        with store.get_session() as session:
            assert session.query(ContactDB).count() == 0

    @pytest.mark.asyncio
    async def test_update_merges_and_recomputes_display_name(self, engine, mutations, store, provider):
        await prepare_contacts(engine, store, provider)
        provider.calls.clear()

        contact = await mutations.update_and_sync_contact('acme', 'c-ann', ContactUpdate(surname='Park'))

        assert provider.calls == [('update_contact', 'grant-1', 'c-ann', {'surname': 'Park'})]
        assert contact.display_name == 'Ann Park'
        assert contact.email == 'ann@acme.test'

    @pytest.mark.asyncio
    async def test_update_requires_some_field(self, mutations):
        with pytest.raises(InvalidContactError):
            await mutations.update_and_sync_contact('acme', 'c-ann', ContactUpdate())

    @pytest.mark.asyncio
    async def test_update_unknown_contact(self, engine, mutations, store, provider):
        await prepare_contacts(engine, store, provider)

        with pytest.raises(ResourceNotFoundError, match='Contact not found: nobody'):
            await mutations.update_and_sync_contact('acme', 'nobody', ContactUpdate(surname='X'))

    @pytest.mark.asyncio
    async def test_delete_by_local_id(self, engine, mutations, store, provider):
        await prepare_contacts(engine, store, provider)
        with store.get_session() as session:
            local_id = session.query(ContactDB).one().id

        await mutations.delete_and_sync_contact('acme', local_id)

        assert provider.calls[-1] == ('delete_contact', 'grant-1', 'c-ann')
        with store.get_session() as session:
            assert session.query(ContactDB).count() == 0
