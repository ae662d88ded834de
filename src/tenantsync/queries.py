"""Cache-only reads. Nothing here talks to the provider."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .database import CacheStore
from .models import (
    CachedCalendar, CachedContact, CachedEvent, CachedFolder, ContactPage, ResourceKind, utc_now
)
from .tenants import TenantResolver

logger = logging.getLogger(__name__)


class CacheQueries:
    """Read path over the cache store.

    Reads never provision tenants: an unknown tenant has an empty cache.
    """

    def __init__(self, store: CacheStore):
        self.store = store
        self.settings = store.settings
        self.tenants = TenantResolver(store)

    def get_cached_calendars(self, tenant_id: str) -> List[CachedCalendar]:
        """Calendars, primary first, then by name."""
        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return []
            return [
                CachedCalendar.model_validate(row)
                for row in self.store.list_calendars(session, tenant.id)
            ]

    def get_cached_events(
        self,
        tenant_id: str,
        calendar_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[CachedEvent]:
        """Cached events ordered by start time.

        Args:
            tenant_id: Tenant id or slug
            calendar_id: Local or provider calendar id; an unknown calendar is
                ignored and events from every calendar are returned
            start_date: Only events starting at or after this instant
            end_date: Only events ending at or before this instant
            limit: Maximum events returned (defaults to ``cached_events_limit``)
        """
        if limit is None:
            limit = self.settings.sync_config.cached_events_limit

        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return []

            local_calendar_id = None
            if calendar_id:
                calendar = self.store.resolve(session, tenant.id, ResourceKind.CALENDAR, calendar_id)
                if calendar is not None:
                    local_calendar_id = calendar.id
                else:
                    logger.debug(f"Calendar {calendar_id} not cached for {tenant_id}; not filtering")

            rows = self.store.list_events(
                session, tenant.id,
                calendar_id=local_calendar_id,
                start_min=start_date,
                end_max=end_date,
                limit=limit
            )
            return [CachedEvent.model_validate(row) for row in rows]

    def get_event(self, tenant_id: str, event_id: str) -> Optional[CachedEvent]:
        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return None
            row = self.store.resolve(session, tenant.id, ResourceKind.EVENT, event_id)
            return CachedEvent.model_validate(row) if row is not None else None

    def get_upcoming_events(
        self,
        tenant_id: str,
        days: Optional[int] = None,
        limit: Optional[int] = None
    ) -> List[CachedEvent]:
        """Events starting between now and ``days`` from now."""
        config = self.settings.sync_config
        days = config.upcoming_days if days is None else days
        limit = config.upcoming_limit if limit is None else limit

        now = utc_now()
        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return []
            rows = self.store.list_events(
                session, tenant.id,
                start_min=now,
                start_max=now + timedelta(days=days),
                limit=limit
            )
            return [CachedEvent.model_validate(row) for row in rows]

    def get_cached_folders(self, tenant_id: str) -> List[CachedFolder]:
        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return []
            return [
                CachedFolder.model_validate(row)
                for row in self.store.list_folders(session, tenant.id)
            ]

    def get_folder(self, tenant_id: str, folder_id: str) -> Optional[CachedFolder]:
        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return None
            row = self.store.resolve(session, tenant.id, ResourceKind.FOLDER, folder_id)
            return CachedFolder.model_validate(row) if row is not None else None

    def get_cached_contacts(
        self,
        tenant_id: str,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> ContactPage:
        """One page of contacts by display name, with the total match count.

        Args:
            tenant_id: Tenant id or slug
            search: Case-insensitive match on display name, email or company
            limit: Page size (defaults to ``cached_contacts_limit``)
            offset: Rows skipped before the page
        """
        if limit is None:
            limit = self.settings.sync_config.cached_contacts_limit

        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return ContactPage()
            rows, total = self.store.list_contacts(
                session, tenant.id, search=search, limit=limit, offset=max(offset, 0)
            )
            return ContactPage(
                contacts=[CachedContact.model_validate(row) for row in rows],
                total=total
            )

    def get_contact(self, tenant_id: str, contact_id: str) -> Optional[CachedContact]:
        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return None
            row = self.store.resolve(session, tenant.id, ResourceKind.CONTACT, contact_id)
            return CachedContact.model_validate(row) if row is not None else None

    def search_contacts(self, tenant_id: str, text: str, limit: Optional[int] = None) -> List[CachedContact]:
        """Contacts whose name parts, email or company contain ``text``."""
        if limit is None:
            limit = self.settings.sync_config.contact_search_limit
        if not (text or '').strip():
            return []

        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return []
            return [
                CachedContact.model_validate(row)
                for row in self.store.search_contacts(session, tenant.id, text, limit)
            ]

    def get_sync_status(self, tenant_id: str) -> dict:
        """Last sync stamps plus recent activity for one tenant."""
        with self.store.get_session() as session:
            tenant = self.tenants.find_active_tenant(session, tenant_id)
            if tenant is None:
                return {
                    'tenant_id': tenant_id,
                    'calendars_synced_at': None,
                    'folders_synced_at': None,
                    'contacts_synced_at': None,
                    'recent_activity': [],
                }
            state = self.store.get_sync_state(session, tenant.id)
            activity = self.store.get_recent_activity(session, tenant.id)
            return {
                'tenant_id': tenant.id,
                'calendars_synced_at': state.calendars_synced_at if state else None,
                'folders_synced_at': state.folders_synced_at if state else None,
                'contacts_synced_at': state.contacts_synced_at if state else None,
                'recent_activity': [
                    {
                        'action': entry.action,
                        'status': entry.status,
                        'output': entry.output,
                        'error': entry.error,
                        'duration_ms': entry.duration_ms,
                        'created_at': entry.created_at,
                    }
                    for entry in activity
                ],
            }
