"""Reconciliation of remote snapshots against the local cache.

A reconciliation pass is authoritative: every remote item matched by
``provider_id`` overwrites all mapped fields of its cached row and re-stamps
``synced_at`` whether or not anything changed. There is no field-level diff and
no fuzzy matching.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Tuple, Type, TypeVar

from sqlalchemy.orm import Session

from .database import CacheStore, CalendarDB, CalendarEventDB, ContactDB, FolderDB, CachedRow
from .models import (
    RemoteCalendar, RemoteContact, RemoteEvent, RemoteFolder, ResourceKind,
    contact_display_name, folder_type_for, utc_now
)

logger = logging.getLogger(__name__)

R = TypeVar('R')


@dataclass
class ReconcilePlan(Generic[R]):
    """Add/update/remove sets computed from one remote and one cached snapshot."""

    to_add: List[R] = field(default_factory=list)
    to_update: List[Tuple[CachedRow, R]] = field(default_factory=list)
    to_remove: List[CachedRow] = field(default_factory=list)


@dataclass
class ReconcileResult:
    """Counters plus the converged cached set, in display order."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    skipped: int = 0
    items: List[CachedRow] = field(default_factory=list)


def reconcile(
    remote_items: Iterable[R],
    existing_items: Iterable[CachedRow],
    remote_key: Callable[[R], str] = lambda item: item.id
) -> ReconcilePlan[R]:
    """Diff a remote snapshot against cached rows, joining on provider id.

    Pure: touches neither the provider nor the store. When the remote snapshot
    repeats an id, the last occurrence wins.
    """
    remote_map: Dict[str, R] = {}
    for item in remote_items:
        remote_map[remote_key(item)] = item

    existing_map: Dict[str, CachedRow] = {}
    for row in existing_items:
        existing_map.setdefault(row.provider_id, row)

    plan: ReconcilePlan[R] = ReconcilePlan()
    for provider_id, item in remote_map.items():
        row = existing_map.get(provider_id)
        if row is None:
            plan.to_add.append(item)
        else:
            plan.to_update.append((row, item))

    for provider_id, row in existing_map.items():
        if provider_id not in remote_map:
            plan.to_remove.append(row)

    return plan


class ResourceAdapter(ABC, Generic[R]):
    """Maps one remote record type onto one cached table."""

    kind: ResourceKind
    model: Type

    def __init__(self, store: CacheStore, tenant_id: str):
        self.store = store
        self.tenant_id = tenant_id

    @abstractmethod
    def fields(self, remote: R) -> Optional[Dict[str, Any]]:
        """Column values for ``remote``, or None to skip it."""

    @abstractmethod
    def existing(self, session: Session) -> List[CachedRow]:
        """Cached rows in this adapter's scope."""

    @abstractmethod
    def converged(self, session: Session) -> List[CachedRow]:
        """Cached rows in scope, in deterministic display order."""

    def remove(self, session: Session, row: CachedRow) -> None:
        session.delete(row)


class CalendarAdapter(ResourceAdapter[RemoteCalendar]):
    kind = ResourceKind.CALENDAR
    model = CalendarDB

    def fields(self, remote: RemoteCalendar) -> Optional[Dict[str, Any]]:
        return {
            'provider_id': remote.id,
            'name': remote.name or 'Unnamed Calendar',
            'description': remote.description or None,
            'location': remote.location or None,
            'timezone': remote.timezone or None,
            'is_primary': bool(remote.is_primary),
            'is_read_only': bool(remote.read_only),
            'color': remote.hex_color or None,
        }

    def existing(self, session: Session) -> List[CalendarDB]:
        return session.query(CalendarDB).filter(CalendarDB.tenant_id == self.tenant_id).all()

    def converged(self, session: Session) -> List[CalendarDB]:
        return self.store.list_calendars(session, self.tenant_id)

    def remove(self, session: Session, row: CalendarDB) -> None:
        # ORM cascade removes the calendar's events with it.
        session.delete(row)


class EventAdapter(ResourceAdapter[RemoteEvent]):
    """Events of one calendar, restricted to the sync window."""

    kind = ResourceKind.EVENT
    model = CalendarEventDB

    def __init__(
        self,
        store: CacheStore,
        tenant_id: str,
        calendar: CalendarDB,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None
    ):
        super().__init__(store, tenant_id)
        self.calendar = calendar
        self.window_start = window_start
        self.window_end = window_end

    def fields(self, remote: RemoteEvent) -> Optional[Dict[str, Any]]:
        span = remote.when.resolve() if remote.when is not None else None
        if span is None:
            logger.debug(f"Skipping event {remote.id}: no timed window or date range")
            return None

        start_time, end_time, all_day = span
        if self.window_end is not None and start_time > self.window_end:
            logger.debug(f"Skipping event {remote.id}: starts after sync window")
            return None
        if self.window_start is not None and start_time < self.window_start:
            logger.debug(f"Skipping event {remote.id}: starts before sync window")
            return None

        return {
            'provider_id': remote.id,
            'calendar_id': self.calendar.id,
            'title': remote.title or 'Untitled Event',
            'description': remote.description or None,
            'location': remote.location or None,
            'start_time': start_time,
            'end_time': end_time,
            'all_day': all_day,
            'status': remote.status or None,
            'busy': remote.busy is not False,
            'recurrence': remote.recurrence or None,
            'participants': remote.participants or None,
            'organizer': remote.organizer or None,
            'reminders': remote.reminders or None,
            'conferencing': remote.conferencing or None,
            'master_event_id': remote.master_event_id or None,
        }

    def existing(self, session: Session) -> List[CalendarEventDB]:
        return session.query(CalendarEventDB).filter(
            CalendarEventDB.tenant_id == self.tenant_id,
            CalendarEventDB.calendar_id == self.calendar.id
        ).all()

    def converged(self, session: Session) -> List[CalendarEventDB]:
        return self.store.list_events(session, self.tenant_id, calendar_id=self.calendar.id)


class FolderAdapter(ResourceAdapter[RemoteFolder]):
    """Folders, with paths derived from the remote snapshot's parent chain."""

    kind = ResourceKind.FOLDER
    model = FolderDB

    def __init__(self, store: CacheStore, tenant_id: str, remote_folders: List[RemoteFolder]):
        super().__init__(store, tenant_id)
        self.paths = build_folder_paths(remote_folders)

    def fields(self, remote: RemoteFolder) -> Optional[Dict[str, Any]]:
        name = remote.name or ''
        return {
            'provider_id': remote.id,
            'name': name,
            'parent_id': remote.parent_id or None,
            'path': self.paths.get(remote.id) or name,
            'folder_type': folder_type_for(name).value,
            'total_count': remote.total_count or 0,
            'unread_count': remote.unread_count or 0,
        }

    def existing(self, session: Session) -> List[FolderDB]:
        return session.query(FolderDB).filter(FolderDB.tenant_id == self.tenant_id).all()

    def converged(self, session: Session) -> List[FolderDB]:
        return self.store.list_folders(session, self.tenant_id)


class ContactAdapter(ResourceAdapter[RemoteContact]):
    kind = ResourceKind.CONTACT
    model = ContactDB

    def fields(self, remote: RemoteContact) -> Optional[Dict[str, Any]]:
        email = remote.primary_email
        return {
            'provider_id': remote.id,
            'email': email,
            'given_name': remote.given_name or None,
            'surname': remote.surname or None,
            'display_name': contact_display_name(remote.given_name, remote.surname, email),
            'company_name': remote.company_name or None,
            'job_title': remote.job_title or None,
            'phone_numbers': remote.phone_numbers or None,
            'emails': remote.emails or None,
            'addresses': remote.physical_addresses or None,
            'birthday': remote.birthday,
            'notes': remote.notes or None,
            'photo_url': remote.picture_url or None,
            'groups': remote.group_ids,
            'source': remote.source or None,
        }

    def existing(self, session: Session) -> List[ContactDB]:
        return session.query(ContactDB).filter(ContactDB.tenant_id == self.tenant_id).all()

    def converged(self, session: Session) -> List[ContactDB]:
        contacts, _ = self.store.list_contacts(session, self.tenant_id)
        return contacts


def build_folder_paths(folders: List[RemoteFolder]) -> Dict[str, str]:
    """Map folder id to its slash-joined ancestry (``Clients/Acme``)."""
    by_id = {folder.id: folder for folder in folders}
    paths: Dict[str, str] = {}

    def path_of(folder: RemoteFolder, seen: set) -> str:
        if folder.id in paths:
            return paths[folder.id]
        name = folder.name or ''
        parent = by_id.get(folder.parent_id) if folder.parent_id else None
        if parent is None or parent.id in seen:
            return name
        return f"{path_of(parent, seen | {folder.id})}/{name}"

    for folder in folders:
        paths[folder.id] = path_of(folder, {folder.id})
    return paths


class Reconciler:
    """Applies reconciliation plans to the cache store."""

    def __init__(self, store: CacheStore):
        self.store = store
        self.logger = logger.getChild('reconciler')

    def plan(self, session: Session, adapter: ResourceAdapter[R], remote_items: Iterable[R]) -> ReconcilePlan[R]:
        return reconcile(remote_items, adapter.existing(session))

    def apply(
        self,
        session: Session,
        adapter: ResourceAdapter[R],
        plan: ReconcilePlan[R]
    ) -> ReconcileResult:
        """Write ``plan`` and read back the converged set.

        The whole pass commits once; on error it is rolled back and re-raised.
        """
        result = ReconcileResult()
        synced_at = utc_now()

        try:
            for remote in plan.to_add:
                values = adapter.fields(remote)
                if values is None:
                    result.skipped += 1
                    continue
                session.add(adapter.model(tenant_id=adapter.tenant_id, synced_at=synced_at, **values))
                result.added += 1

            for row, remote in plan.to_update:
                values = adapter.fields(remote)
                if values is None:
                    # The remote counterpart exists but cannot be cached; it is
                    # no longer part of the converged set.
                    adapter.remove(session, row)
                    result.skipped += 1
                    result.removed += 1
                    continue
                for column, value in values.items():
                    setattr(row, column, value)
                row.synced_at = synced_at
                result.updated += 1

            for row in plan.to_remove:
                adapter.remove(session, row)
                result.removed += 1

            session.commit()
        except Exception:
            session.rollback()
            raise

        result.items = adapter.converged(session)
        self.logger.debug(
            f"Reconciled {adapter.kind.value}s for tenant {adapter.tenant_id}: "
            f"+{result.added} ~{result.updated} -{result.removed} (skipped {result.skipped})"
        )
        return result

    def run(self, session: Session, adapter: ResourceAdapter[R], remote_items: Iterable[R]) -> ReconcileResult:
        """Plan and apply in one step."""
        return self.apply(session, adapter, self.plan(session, adapter, remote_items))
