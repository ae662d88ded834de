import pytest
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic_settings import SettingsConfigDict

from tenantsync.config import Settings
from tenantsync.database import CacheStore
from tenantsync.locking import TenantLockManager
from tenantsync.models import (
    EventWhen, GrantRegistration, Page, RemoteCalendar, RemoteContact, RemoteEvent, RemoteFolder,
    SyncConfiguration, utc_now
)
from tenantsync.mutations import MutationService
from tenantsync.queries import CacheQueries
from tenantsync.services import BaseProviderClient, ProviderNotFoundError
from tenantsync.sync_engine import SyncEngine
from tenantsync.tenants import TenantResolver


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **sync_overrides):
    return TestSettings(
        nylas_api_key='test-key',
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        sync_config=SyncConfiguration(**sync_overrides)
    )


def timed_event(event_id: str, start: datetime, hours: int = 1, **fields) -> RemoteEvent:
    """Remote event with a timed window starting at ``start``."""
    end = start + timedelta(hours=hours)
    return RemoteEvent(
        id=event_id,
        when=EventWhen(start_time=int(start.timestamp()), end_time=int(end.timestamp())),
        **fields
    )


class FakeProvider(BaseProviderClient):
    """In-memory provider keyed by grant id. Records every call in order."""

    name = "fake"

    def __init__(self):
        super().__init__()
        self.calendars: Dict[str, List[RemoteCalendar]] = {}
        self.events: Dict[Tuple[str, str], List[RemoteEvent]] = {}
        self.folders: Dict[str, List[RemoteFolder]] = {}
        self.contacts: Dict[str, List[RemoteContact]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.page_size: Optional[int] = None
        self._next_id = 0
        self.closed = False

    def fail(self, method: str, error: Exception) -> None:
        self.failures[method] = error

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        error = self.failures.get(method)
        if error is not None:
            raise error

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def list_calendars(self, grant_id):
        self._record('list_calendars', grant_id)
        return list(self.calendars.get(grant_id, []))

    async def list_events(self, grant_id, calendar_id, start, end, limit, page_token=None):
        self._record('list_events', grant_id, calendar_id, page_token)
        items = self.events.get((grant_id, calendar_id), [])
        size = min(limit, self.page_size or limit)
        offset = int(page_token or 0)
        chunk = items[offset:offset + size]
        next_offset = offset + size
        return Page(data=chunk, next_cursor=str(next_offset) if next_offset < len(items) else None)

    async def create_event(self, grant_id, calendar_id, payload):
        self._record('create_event', grant_id, calendar_id, payload)
        event = RemoteEvent(
            id=self._new_id('evt'),
            calendar_id=calendar_id,
            title=payload.get('title'),
            when=EventWhen(**payload['when']),
            status='confirmed'
        )
        self.events.setdefault((grant_id, calendar_id), []).append(event)
        return event

    async def update_event(self, grant_id, calendar_id, event_id, payload):
        self._record('update_event', grant_id, calendar_id, event_id, payload)
        return RemoteEvent(id=event_id, calendar_id=calendar_id)

    async def delete_event(self, grant_id, calendar_id, event_id):
        self._record('delete_event', grant_id, calendar_id, event_id)

    async def list_folders(self, grant_id):
        self._record('list_folders', grant_id)
        return list(self.folders.get(grant_id, []))

    async def create_folder(self, grant_id, name, parent_id=None):
        self._record('create_folder', grant_id, name, parent_id)
        folder = RemoteFolder(id=self._new_id('fld'), name=name, parent_id=parent_id)
        self.folders.setdefault(grant_id, []).append(folder)
        return folder

    async def update_folder(self, grant_id, folder_id, name):
        self._record('update_folder', grant_id, folder_id, name)
        for folder in self.folders.get(grant_id, []):
            if folder.id == folder_id:
                folder.name = name
                return folder
        raise ProviderNotFoundError(f"Folder {folder_id} not found", status_code=404)

    async def delete_folder(self, grant_id, folder_id):
        self._record('delete_folder', grant_id, folder_id)

    async def list_contacts(self, grant_id):
        self._record('list_contacts', grant_id)
        return list(self.contacts.get(grant_id, []))

    async def create_contact(self, grant_id, payload):
        self._record('create_contact', grant_id, payload)
        contact = RemoteContact(id=self._new_id('ctc'), **payload)
        self.contacts.setdefault(grant_id, []).append(contact)
        return contact

    async def update_contact(self, grant_id, contact_id, payload):
        self._record('update_contact', grant_id, contact_id, payload)
        for contact in self.contacts.get(grant_id, []):
            if contact.id == contact_id:
                return contact.model_copy(update=payload)
        raise ProviderNotFoundError(f"Contact {contact_id} not found", status_code=404)

    async def delete_contact(self, grant_id, contact_id):
        self._record('delete_contact', grant_id, contact_id)

    async def update_message(self, grant_id, message_id, payload):
        self._record('update_message', grant_id, message_id, payload)

    async def close(self):
        self.closed = True


def connect(store: CacheStore, tenant: str, grant_id: str = 'grant-1', **fields) -> None:
    """Register an active primary grant for ``tenant``."""
    with store.get_session() as session:
        TenantResolver(store).register_grant(
            session, tenant, GrantRegistration(grant_id=grant_id, **fields)
        )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def store(settings):
    store = CacheStore(settings)
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def locks():
    return TenantLockManager()


@pytest.fixture
def engine(store, provider, settings, locks):
    return SyncEngine(store, provider, settings, locks)


@pytest.fixture
def mutations(store, provider, settings, locks):
    return MutationService(store, provider, settings, locks)


@pytest.fixture
def queries(store):
    return CacheQueries(store)


@pytest.fixture
def now():
    return utc_now()
