"""Sync orchestrator: pulls provider state and reconciles it into the cache."""

import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from .config import Settings
from .database import CacheStore, CalendarDB, ProviderGrantDB, TenantDB
from .errors import InvalidWindowError, ResourceNotFoundError
from .locking import TenantLockManager
from .models import (
    CachedCalendar, CachedContact, CachedEvent, CachedFolder, CalendarSyncResult, ContactSyncResult,
    EventSyncResult, FolderSyncResult, InitialCalendarSyncResult, RemoteEvent, ResourceKind,
    ensure_utc, utc_now
)
from .reconciler import (
    CalendarAdapter, ContactAdapter, EventAdapter, FolderAdapter, ReconcileResult, Reconciler
)
from .services import BaseProviderClient
from .tenants import TenantResolver

logger = logging.getLogger(__name__)


class SyncEngine:
    """Provider-to-cache synchronization for calendars, events, folders and contacts.

    Every public operation resolves the tenant (provisioning it on first
    reference), picks the tenant's active grant and runs under the tenant's
    lock. Provider errors abort the operation as-is; reconciliation steps that
    already committed stay committed.
    """

    def __init__(
        self,
        store: CacheStore,
        provider: BaseProviderClient,
        settings: Optional[Settings] = None,
        locks: Optional[TenantLockManager] = None
    ):
        """Initialize sync engine.

        Args:
            store: Cache store handle
            provider: Provider client
            settings: Application settings (defaults to the store's)
            locks: Shared tenant lock manager
        """
        self.store = store
        self.provider = provider
        self.settings = settings or store.settings
        self.locks = locks or TenantLockManager()
        self.tenants = TenantResolver(store)
        self.reconciler = Reconciler(store)
        self.logger = logger.getChild('sync_engine')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Create cache tables if needed."""
        self.store.init_db()
        self.logger.info("Sync engine initialized successfully")

    async def cleanup(self) -> None:
        """Release the provider client."""
        await self.provider.close()
        self.logger.info("Sync engine cleaned up")

    # -- calendars -------------------------------------------------------

    async def sync_calendars(self, tenant_id: str, account: Optional[str] = None) -> CalendarSyncResult:
        """Reconcile the tenant's calendar list against the provider.

        Args:
            tenant_id: Tenant id or slug
            account: Optional grant id or email selecting one grant

        Returns:
            Counters plus the converged calendar list

        Raises:
            NotConnectedError: If the tenant has no active grant
            ProviderError: If the provider call fails
        """
        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                result = await self._sync_calendars(session, tenant, grant)
                return self._calendar_result(result)

    async def _sync_calendars(self, session: Session, tenant: TenantDB, grant: ProviderGrantDB) -> ReconcileResult:
        remote = await self.provider.list_calendars(grant.grant_id)
        result = self.reconciler.run(session, CalendarAdapter(self.store, tenant.id), remote)
        self.logger.info(
            f"Calendar sync for {tenant.slug}: {result.added} added, {result.updated} updated, "
            f"{result.removed} removed ({len(result.items)} total)"
        )
        return result

    @staticmethod
    def _calendar_result(result: ReconcileResult) -> CalendarSyncResult:
        return CalendarSyncResult(
            added=result.added,
            removed=result.removed,
            updated=result.updated,
            skipped=result.skipped,
            calendars=[CachedCalendar.model_validate(row) for row in result.items]
        )

    # -- events ----------------------------------------------------------

    def resolve_window(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> Tuple[datetime, datetime]:
        """Fill in the default sync window and validate it.

        Raises:
            InvalidWindowError: If start is not before end
        """
        config = self.settings.sync_config
        now = utc_now()
        start = ensure_utc(start_date) if start_date else now - timedelta(days=config.sync_past_days)
        end = ensure_utc(end_date) if end_date else now + timedelta(days=config.sync_future_days)
        if start >= end:
            raise InvalidWindowError(
                f"Invalid sync window: start {start.isoformat()} is not before end {end.isoformat()}"
            )
        return start, end

    async def sync_calendar_events(
        self,
        tenant_id: str,
        calendar_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        account: Optional[str] = None
    ) -> EventSyncResult:
        """Reconcile one calendar's events within a time window.

        Args:
            tenant_id: Tenant id or slug
            calendar_id: Local calendar id or provider calendar id
            start_date: Window start (defaults to ``sync_past_days`` ago)
            end_date: Window end (defaults to ``sync_future_days`` ahead)
            account: Optional grant id or email selecting one grant

        Raises:
            InvalidWindowError: If the window is empty or inverted
            ResourceNotFoundError: If the calendar is not cached
            NotConnectedError: If the tenant has no active grant
        """
        start, end = self.resolve_window(start_date, end_date)

        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                calendar = self.store.resolve(session, tenant.id, ResourceKind.CALENDAR, calendar_id)
                if calendar is None:
                    raise ResourceNotFoundError(ResourceKind.CALENDAR.value, calendar_id)
                return await self._sync_calendar_events(session, tenant, grant, calendar, start, end)

    async def _fetch_events(
        self,
        grant: ProviderGrantDB,
        calendar: CalendarDB,
        start: datetime,
        end: datetime
    ) -> Tuple[List[RemoteEvent], bool]:
        """Fetch the window's events; returns them with a truncation flag."""
        config = self.settings.sync_config
        page = await self.provider.list_events(
            grant.grant_id, calendar.provider_id, start, end, config.event_page_size
        )
        events = list(page.data)
        pages = 1

        while page.next_cursor and config.follow_pagination and pages < config.max_pages:
            page = await self.provider.list_events(
                grant.grant_id, calendar.provider_id, start, end, config.event_page_size,
                page_token=page.next_cursor
            )
            events.extend(page.data)
            pages += 1

        truncated = bool(page.next_cursor)
        if truncated:
            self.logger.warning(
                f"Event fetch for calendar {calendar.provider_id} stopped after {pages} page(s) "
                f"with more results available; cached events beyond them will be removed"
            )
        return events, truncated

    async def _sync_calendar_events(
        self,
        session: Session,
        tenant: TenantDB,
        grant: ProviderGrantDB,
        calendar: CalendarDB,
        start: datetime,
        end: datetime
    ) -> EventSyncResult:
        remote, truncated = await self._fetch_events(grant, calendar, start, end)
        adapter = EventAdapter(self.store, tenant.id, calendar, window_start=start, window_end=end)
        result = self.reconciler.run(session, adapter, remote)

        self.logger.info(
            f"Event sync for {tenant.slug}/{calendar.name}: {result.added} added, "
            f"{result.updated} updated, {result.removed} removed, {result.skipped} skipped"
        )
        return EventSyncResult(
            added=result.added,
            removed=result.removed,
            updated=result.updated,
            skipped=result.skipped,
            calendar_id=calendar.id,
            window_start=start,
            window_end=end,
            truncated=truncated,
            events=[CachedEvent.model_validate(row) for row in result.items]
        )

    async def initial_calendar_sync(
        self,
        tenant_id: str,
        account: Optional[str] = None
    ) -> InitialCalendarSyncResult:
        """Sync calendars, then every calendar's events, and record the run.

        The tenant's sync state is stamped and a ``calendar_sync`` activity is
        logged. On failure an ``error`` activity is logged and the error is
        re-raised.
        """
        started = time.monotonic()
        start, end = self.resolve_window()

        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                try:
                    calendars = await self._sync_calendars(session, tenant, grant)
                    events: List[EventSyncResult] = []
                    for calendar in calendars.items:
                        events.append(
                            await self._sync_calendar_events(session, tenant, grant, calendar, start, end)
                        )

                    self.store.mark_synced(session, tenant.id, 'calendars')
                    result = InitialCalendarSyncResult(
                        calendars=self._calendar_result(calendars),
                        events=events
                    )
                    self.store.log_activity(
                        session, tenant.id, 'calendar_sync', 'success',
                        input={'account': account},
                        output={
                            'calendars': {
                                'added': calendars.added,
                                'removed': calendars.removed,
                                'updated': calendars.updated,
                                'total': len(calendars.items),
                            },
                            'events': {'total': result.total_events},
                        },
                        duration_ms=int((time.monotonic() - started) * 1000)
                    )
                except Exception as e:
                    session.rollback()
                    self.logger.error(f"Initial calendar sync failed for {tenant.slug}: {e}")
                    self.store.log_activity(
                        session, tenant.id, 'calendar_sync', 'error',
                        input={'account': account},
                        error=str(e),
                        duration_ms=int((time.monotonic() - started) * 1000)
                    )
                    raise

        self.logger.info(
            f"Initial calendar sync for {tenant_id} complete: "
            f"{len(result.calendars.calendars)} calendars, {result.total_events} events"
        )
        return result

    # -- folders ---------------------------------------------------------

    async def sync_folders(self, tenant_id: str, account: Optional[str] = None) -> FolderSyncResult:
        """Reconcile the tenant's mail folders against the provider."""
        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                return self._folder_result(await self._sync_folders(session, tenant, grant))

    async def _sync_folders(self, session: Session, tenant: TenantDB, grant: ProviderGrantDB) -> ReconcileResult:
        remote = await self.provider.list_folders(grant.grant_id)
        result = self.reconciler.run(session, FolderAdapter(self.store, tenant.id, remote), remote)
        self.logger.info(
            f"Folder sync for {tenant.slug}: {result.added} added, {result.updated} updated, "
            f"{result.removed} removed ({len(result.items)} total)"
        )
        return result

    @staticmethod
    def _folder_result(result: ReconcileResult) -> FolderSyncResult:
        return FolderSyncResult(
            added=result.added,
            removed=result.removed,
            updated=result.updated,
            skipped=result.skipped,
            folders=[CachedFolder.model_validate(row) for row in result.items]
        )

    async def initial_folder_sync(self, tenant_id: str, account: Optional[str] = None) -> FolderSyncResult:
        """Sync folders, stamp the sync state and log a ``folder_sync`` activity."""
        started = time.monotonic()

        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                try:
                    folders = await self._sync_folders(session, tenant, grant)
                    self.store.mark_synced(session, tenant.id, 'folders')
                    self.store.log_activity(
                        session, tenant.id, 'folder_sync', 'success',
                        input={'account': account},
                        output={
                            'added': folders.added,
                            'removed': folders.removed,
                            'updated': folders.updated,
                            'total': len(folders.items),
                        },
                        duration_ms=int((time.monotonic() - started) * 1000)
                    )
                except Exception as e:
                    session.rollback()
                    self.logger.error(f"Initial folder sync failed for {tenant.slug}: {e}")
                    self.store.log_activity(
                        session, tenant.id, 'folder_sync', 'error',
                        input={'account': account},
                        error=str(e),
                        duration_ms=int((time.monotonic() - started) * 1000)
                    )
                    raise

        return self._folder_result(folders)

    # -- contacts --------------------------------------------------------

    async def sync_contacts(self, tenant_id: str, account: Optional[str] = None) -> ContactSyncResult:
        """Reconcile the tenant's address book against the provider."""
        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                return self._contact_result(await self._sync_contacts(session, tenant, grant))

    async def _sync_contacts(self, session: Session, tenant: TenantDB, grant: ProviderGrantDB) -> ReconcileResult:
        remote = await self.provider.list_contacts(grant.grant_id)
        result = self.reconciler.run(session, ContactAdapter(self.store, tenant.id), remote)
        self.logger.info(
            f"Contact sync for {tenant.slug}: {result.added} added, {result.updated} updated, "
            f"{result.removed} removed ({len(result.items)} total)"
        )
        return result

    @staticmethod
    def _contact_result(result: ReconcileResult) -> ContactSyncResult:
        return ContactSyncResult(
            added=result.added,
            removed=result.removed,
            updated=result.updated,
            skipped=result.skipped,
            contacts=[CachedContact.model_validate(row) for row in result.items]
        )

    async def initial_contact_sync(self, tenant_id: str, account: Optional[str] = None) -> ContactSyncResult:
        """Sync contacts, stamp the sync state and log a ``contact_sync`` activity."""
        started = time.monotonic()

        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                try:
                    contacts = await self._sync_contacts(session, tenant, grant)
                    self.store.mark_synced(session, tenant.id, 'contacts')
                    self.store.log_activity(
                        session, tenant.id, 'contact_sync', 'success',
                        input={'account': account},
                        output={
                            'added': contacts.added,
                            'removed': contacts.removed,
                            'updated': contacts.updated,
                            'total': len(contacts.items),
                        },
                        duration_ms=int((time.monotonic() - started) * 1000)
                    )
                except Exception as e:
                    session.rollback()
                    self.logger.error(f"Initial contact sync failed for {tenant.slug}: {e}")
                    self.store.log_activity(
                        session, tenant.id, 'contact_sync', 'error',
                        input={'account': account},
                        error=str(e),
                        duration_ms=int((time.monotonic() - started) * 1000)
                    )
                    raise

        return self._contact_result(contacts)
