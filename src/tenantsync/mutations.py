"""Dual-write mutations: provider first, then the cache."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from .config import Settings
from .database import CacheStore, CalendarEventDB, ContactDB, FolderDB, ProviderGrantDB, TenantDB
from .errors import (
    InvalidContactError, InvalidEventError, InvalidFolderError, ReadOnlyCalendarError,
    ResourceNotFoundError, SystemFolderError
)
from .locking import TenantLockManager
from .models import (
    CachedContact, CachedEvent, CachedFolder, ContactCreate, ContactUpdate, EventCreate, EventUpdate,
    FolderType, MoveEmailResult, RemoteContact, RemoteFolder, ResourceKind, contact_display_name,
    ensure_utc, folder_type_for, utc_now
)
from .reconciler import ContactAdapter
from .services import BaseProviderClient
from .tenants import TenantResolver

logger = logging.getLogger(__name__)


def _when(start, end) -> Dict[str, int]:
    return {'start_time': int(start.timestamp()), 'end_time': int(end.timestamp())}


def _contact_payload(params) -> Dict[str, Any]:
    """Provider payload for the supplied contact fields."""
    payload: Dict[str, Any] = {}
    for name in ('given_name', 'surname', 'company_name', 'job_title'):
        value = getattr(params, name)
        if value is not None:
            payload[name] = value
    if params.email is not None:
        payload['emails'] = [{'email': params.email, 'type': 'work'}]
    if params.phone_number is not None:
        payload['phone_numbers'] = [{'number': params.phone_number, 'type': 'work'}]
    return payload


class MutationService:
    """Applies writes to the provider and mirrors them into the cache.

    The provider call always happens first. If it fails the cache is left
    untouched. If the cache write fails afterwards the error is logged and
    re-raised; the next full sync repairs the divergence.
    """

    def __init__(
        self,
        store: CacheStore,
        provider: BaseProviderClient,
        settings: Optional[Settings] = None,
        locks: Optional[TenantLockManager] = None
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or store.settings
        self.locks = locks or TenantLockManager()
        self.tenants = TenantResolver(store)
        self.logger = logger.getChild('mutations')

    @asynccontextmanager
    async def _tenant_scope(
        self,
        tenant_id: str,
        account: Optional[str] = None
    ) -> AsyncIterator[Tuple[Session, TenantDB, ProviderGrantDB]]:
        with self.store.get_session() as session:
            tenant = self.tenants.get_tenant(session, tenant_id)
            async with self.locks.hold(tenant.id):
                grant = self.tenants.get_grant(session, tenant, account)
                yield session, tenant, grant

    def _commit_mirror(self, session: Session, what: str) -> None:
        try:
            session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Provider accepted {what} but the cache write failed: {e}")
            raise

    # -- events ----------------------------------------------------------

    async def create_and_sync_event(
        self,
        tenant_id: str,
        params: EventCreate,
        account: Optional[str] = None
    ) -> CachedEvent:
        """Create an event remotely and cache it.

        Raises:
            ResourceNotFoundError: If the calendar is not cached
            ReadOnlyCalendarError: If the calendar is read-only
        """
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            calendar = self.store.resolve(session, tenant.id, ResourceKind.CALENDAR, params.calendar_id)
            if calendar is None:
                raise ResourceNotFoundError(ResourceKind.CALENDAR.value, params.calendar_id)
            if calendar.is_read_only:
                raise ReadOnlyCalendarError(f"Calendar is read-only: {calendar.name}")

            payload: Dict[str, Any] = {
                'title': params.title,
                'when': _when(params.start_time, params.end_time),
            }
            if params.description:
                payload['description'] = params.description
            if params.location:
                payload['location'] = params.location
            participants = None
            if params.participants:
                participants = [p.model_dump(exclude_none=True) for p in params.participants]
                payload['participants'] = participants

            remote = await self.provider.create_event(grant.grant_id, calendar.provider_id, payload)

            event = session.query(CalendarEventDB).filter(
                CalendarEventDB.tenant_id == tenant.id,
                CalendarEventDB.calendar_id == calendar.id,
                CalendarEventDB.provider_id == remote.id
            ).first()
            if event is None:
                event = CalendarEventDB(tenant_id=tenant.id, calendar_id=calendar.id, provider_id=remote.id)
                session.add(event)

            event.title = params.title
            event.description = params.description or None
            event.location = params.location or None
            event.start_time = params.start_time
            event.end_time = params.end_time
            event.all_day = False
            event.status = remote.status or None
            event.busy = remote.busy is not False
            event.participants = participants
            event.synced_at = utc_now()
            self._commit_mirror(session, f"event {remote.id}")

            self.logger.info(f"Created event {remote.id} in calendar {calendar.provider_id} for {tenant.slug}")
            return CachedEvent.model_validate(event)

    async def update_and_sync_event(
        self,
        tenant_id: str,
        event_id: str,
        params: EventUpdate,
        account: Optional[str] = None
    ) -> CachedEvent:
        """Apply a partial update remotely and to the cached event.

        Only supplied fields are sent. A lone start or end is combined with the
        cached value of the other bound.

        Raises:
            ResourceNotFoundError: If the event is not cached
            InvalidEventError: If nothing is supplied or the times are inverted
        """
        if params.is_empty():
            raise InvalidEventError("No event fields supplied for update")

        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            event = self.store.resolve(session, tenant.id, ResourceKind.EVENT, event_id)
            if event is None:
                raise ResourceNotFoundError(ResourceKind.EVENT.value, event_id)
            calendar = event.calendar
            if calendar.is_read_only:
                raise ReadOnlyCalendarError(f"Calendar is read-only: {calendar.name}")

            payload: Dict[str, Any] = {}
            for name in ('title', 'description', 'location'):
                value = getattr(params, name)
                if value is not None:
                    payload[name] = value

            start = params.start_time or ensure_utc(event.start_time)
            end = params.end_time or ensure_utc(event.end_time)
            times_changed = params.start_time is not None or params.end_time is not None
            if times_changed:
                if end <= start:
                    raise InvalidEventError(
                        f"End time ({end.isoformat()}) must be after start time ({start.isoformat()})"
                    )
                payload['when'] = _when(start, end)

            participants = None
            if params.participants is not None:
                participants = [p.model_dump(exclude_none=True) for p in params.participants]
                payload['participants'] = participants

            await self.provider.update_event(grant.grant_id, calendar.provider_id, event.provider_id, payload)

            for name in ('title', 'description', 'location'):
                if name in payload:
                    setattr(event, name, payload[name])
            if times_changed:
                event.start_time = start
                event.end_time = end
                event.all_day = False
            if participants is not None:
                event.participants = participants
            event.synced_at = utc_now()
            self._commit_mirror(session, f"update of event {event.provider_id}")

            self.logger.info(f"Updated event {event.provider_id} for {tenant.slug}")
            return CachedEvent.model_validate(event)

    async def delete_and_sync_event(
        self,
        tenant_id: str,
        event_id: str,
        account: Optional[str] = None
    ) -> None:
        """Delete an event remotely and drop it from the cache."""
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            event = self.store.resolve(session, tenant.id, ResourceKind.EVENT, event_id)
            if event is None:
                raise ResourceNotFoundError(ResourceKind.EVENT.value, event_id)
            calendar = event.calendar
            if calendar.is_read_only:
                raise ReadOnlyCalendarError(f"Calendar is read-only: {calendar.name}")

            await self.provider.delete_event(grant.grant_id, calendar.provider_id, event.provider_id)

            session.delete(event)
            self._commit_mirror(session, f"deletion of event {event.provider_id}")
            self.logger.info(f"Deleted event {event.provider_id} for {tenant.slug}")

    # -- folders ---------------------------------------------------------

    def _cache_folder(
        self,
        session: Session,
        tenant: TenantDB,
        remote: RemoteFolder,
        fallback_name: Optional[str] = None
    ) -> FolderDB:
        """Insert or overwrite the cached row mirroring ``remote``."""
        name = remote.name or fallback_name or ''
        path = name
        if remote.parent_id:
            parent = self.store.resolve(session, tenant.id, ResourceKind.FOLDER, remote.parent_id)
            if parent is not None:
                path = f"{parent.path}/{name}"

        folder = session.query(FolderDB).filter(
            FolderDB.tenant_id == tenant.id,
            FolderDB.provider_id == remote.id
        ).first()
        if folder is None:
            folder = FolderDB(tenant_id=tenant.id, provider_id=remote.id)
            session.add(folder)

        folder.name = name
        folder.parent_id = remote.parent_id or None
        folder.path = path
        folder.folder_type = folder_type_for(name).value
        folder.total_count = remote.total_count or 0
        folder.unread_count = remote.unread_count or 0
        folder.synced_at = utc_now()
        return folder

    def _require_folder(self, session: Session, tenant: TenantDB, folder_id: str) -> FolderDB:
        folder = self.store.resolve(session, tenant.id, ResourceKind.FOLDER, folder_id)
        if folder is None:
            raise ResourceNotFoundError(ResourceKind.FOLDER.value, folder_id)
        if folder.folder_type != FolderType.CUSTOM.value:
            raise SystemFolderError(f"Cannot modify system folder: {folder.name}")
        return folder

    async def create_and_sync_folder(
        self,
        tenant_id: str,
        name: str,
        parent_id: Optional[str] = None,
        account: Optional[str] = None
    ) -> CachedFolder:
        """Create a folder remotely, optionally below a cached parent."""
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            return await self._create_folder(session, tenant, grant, name, parent_id)

    async def _create_folder(
        self,
        session: Session,
        tenant: TenantDB,
        grant: ProviderGrantDB,
        name: str,
        parent_id: Optional[str] = None
    ) -> CachedFolder:
        name = (name or '').strip()
        if not name:
            raise InvalidFolderError("Folder name must not be empty")

        remote_parent_id = None
        if parent_id:
            parent = self.store.resolve(session, tenant.id, ResourceKind.FOLDER, parent_id)
            if parent is None:
                raise ResourceNotFoundError(ResourceKind.FOLDER.value, parent_id)
            remote_parent_id = parent.provider_id

        remote = await self.provider.create_folder(grant.grant_id, name, remote_parent_id)
        if remote_parent_id and not remote.parent_id:
            remote = remote.model_copy(update={'parent_id': remote_parent_id})

        folder = self._cache_folder(session, tenant, remote, fallback_name=name)
        self._commit_mirror(session, f"folder {remote.id}")
        self.logger.info(f"Created folder {folder.path} for {tenant.slug}")
        return CachedFolder.model_validate(folder)

    async def update_and_sync_folder(
        self,
        tenant_id: str,
        folder_id: str,
        name: str,
        account: Optional[str] = None
    ) -> CachedFolder:
        """Rename a custom folder and rewrite the cached paths beneath it."""
        name = (name or '').strip()
        if not name:
            raise InvalidFolderError("Folder name must not be empty")

        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            folder = self._require_folder(session, tenant, folder_id)

            await self.provider.update_folder(grant.grant_id, folder.provider_id, name)

            old_path = folder.path
            prefix, _, _ = old_path.rpartition('/')
            new_path = f"{prefix}/{name}" if prefix else name
            for child in self.store.folder_descendants(session, folder):
                child.path = new_path + child.path[len(old_path):]
            folder.name = name
            folder.path = new_path
            folder.folder_type = folder_type_for(name).value
            folder.synced_at = utc_now()
            self._commit_mirror(session, f"rename of folder {folder.provider_id}")

            self.logger.info(f"Renamed folder {old_path} to {new_path} for {tenant.slug}")
            return CachedFolder.model_validate(folder)

    async def delete_and_sync_folder(
        self,
        tenant_id: str,
        folder_id: str,
        account: Optional[str] = None
    ) -> None:
        """Delete a custom folder remotely and drop it and its descendants from the cache.

        Raises:
            SystemFolderError: If the folder is a provider system folder
        """
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            folder = self._require_folder(session, tenant, folder_id)

            await self.provider.delete_folder(grant.grant_id, folder.provider_id)

            for child in self.store.folder_descendants(session, folder):
                session.delete(child)
            session.delete(folder)
            self._commit_mirror(session, f"deletion of folder {folder.provider_id}")
            self.logger.info(f"Deleted folder {folder.path} for {tenant.slug}")

    async def find_or_create_folder(
        self,
        tenant_id: str,
        name: str,
        create_if_missing: bool = True,
        account: Optional[str] = None
    ) -> Optional[CachedFolder]:
        """Return the folder called ``name``, looking in the cache, then the provider.

        Creates the folder when it exists in neither place and
        ``create_if_missing`` is set; otherwise returns None.
        """
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            return await self._find_or_create_folder(session, tenant, grant, name, create_if_missing)

    async def _find_or_create_folder(
        self,
        session: Session,
        tenant: TenantDB,
        grant: ProviderGrantDB,
        name: str,
        create_if_missing: bool
    ) -> Optional[CachedFolder]:
        folder = self.store.find_folder_by_name(session, tenant.id, name)
        if folder is not None:
            return CachedFolder.model_validate(folder)

        remote = await self.provider.find_folder_by_name(grant.grant_id, name)
        if remote is not None:
            folder = self._cache_folder(session, tenant, remote)
            self._commit_mirror(session, f"folder {remote.id}")
            return CachedFolder.model_validate(folder)

        if not create_if_missing:
            return None
        return await self._create_folder(session, tenant, grant, name)

    async def move_email_to_folder(
        self,
        tenant_id: str,
        email_id: str,
        folder_name: str,
        create_if_missing: bool = True,
        account: Optional[str] = None
    ) -> MoveEmailResult:
        """Move a message into the folder called ``folder_name``.

        The folder is found or created as in ``find_or_create_folder``; the
        message's folder list is then replaced with that single folder.

        Raises:
            InvalidFolderError: If the message id or folder name is blank
            ResourceNotFoundError: If the folder is missing and may not be created
        """
        email_id = (email_id or '').strip()
        folder_name = (folder_name or '').strip()
        if not email_id or not folder_name:
            raise InvalidFolderError("Email id and folder name are required")

        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            folder = await self._find_or_create_folder(session, tenant, grant, folder_name, create_if_missing)
            if folder is None:
                raise ResourceNotFoundError(ResourceKind.FOLDER.value, folder_name)

            await self.provider.update_message(grant.grant_id, email_id, {'folders': [folder.provider_id]})
            self.logger.info(f"Moved message {email_id} to folder {folder.path} for {tenant.slug}")
            return MoveEmailResult(folder=folder)

    # -- contacts --------------------------------------------------------

    def _cache_contact(self, session: Session, tenant: TenantDB, remote: RemoteContact) -> ContactDB:
        contact = session.query(ContactDB).filter(
            ContactDB.tenant_id == tenant.id,
            ContactDB.provider_id == remote.id
        ).first()
        if contact is None:
            contact = ContactDB(tenant_id=tenant.id, provider_id=remote.id)
            session.add(contact)

        for column, value in ContactAdapter(self.store, tenant.id).fields(remote).items():
            setattr(contact, column, value)
        contact.synced_at = utc_now()
        return contact

    def _require_contact(self, session: Session, tenant: TenantDB, contact_id: str) -> ContactDB:
        contact = self.store.resolve(session, tenant.id, ResourceKind.CONTACT, contact_id)
        if contact is None:
            raise ResourceNotFoundError(ResourceKind.CONTACT.value, contact_id)
        return contact

    async def create_and_sync_contact(
        self,
        tenant_id: str,
        params: ContactCreate,
        account: Optional[str] = None
    ) -> CachedContact:
        """Create a contact remotely and cache it.

        Raises:
            InvalidContactError: If neither a name part nor an email is given
        """
        if not params.has_identity():
            raise InvalidContactError("At least one of given name, surname or email is required")

        payload = _contact_payload(params)
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            remote = await self.provider.create_contact(grant.grant_id, payload)

            # Fill what the provider echoed back sparsely from the request.
            missing = {key: value for key, value in payload.items() if not getattr(remote, key)}
            if missing:
                remote = remote.model_copy(update=missing)

            contact = self._cache_contact(session, tenant, remote)
            self._commit_mirror(session, f"contact {remote.id}")
            self.logger.info(f"Created contact {contact.display_name} for {tenant.slug}")
            return CachedContact.model_validate(contact)

    async def update_and_sync_contact(
        self,
        tenant_id: str,
        contact_id: str,
        params: ContactUpdate,
        account: Optional[str] = None
    ) -> CachedContact:
        """Apply a partial contact update remotely and to the cached row.

        Only supplied fields are sent; the display name is recomputed from the
        merged name parts and email.
        """
        if params.is_empty():
            raise InvalidContactError("No contact fields supplied for update")

        payload = _contact_payload(params)
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            contact = self._require_contact(session, tenant, contact_id)

            await self.provider.update_contact(grant.grant_id, contact.provider_id, payload)

            for name in ('given_name', 'surname', 'company_name', 'job_title'):
                if name in payload:
                    setattr(contact, name, payload[name])
            if params.email is not None:
                contact.email = params.email
                contact.emails = payload['emails']
            if params.phone_number is not None:
                contact.phone_numbers = payload['phone_numbers']
            contact.display_name = contact_display_name(contact.given_name, contact.surname, contact.email)
            contact.synced_at = utc_now()
            self._commit_mirror(session, f"update of contact {contact.provider_id}")

            self.logger.info(f"Updated contact {contact.provider_id} for {tenant.slug}")
            return CachedContact.model_validate(contact)

    async def delete_and_sync_contact(
        self,
        tenant_id: str,
        contact_id: str,
        account: Optional[str] = None
    ) -> None:
        """Delete a contact remotely and drop it from the cache."""
        async with self._tenant_scope(tenant_id, account) as (session, tenant, grant):
            contact = self._require_contact(session, tenant, contact_id)

            await self.provider.delete_contact(grant.grant_id, contact.provider_id)

            session.delete(contact)
            self._commit_mirror(session, f"deletion of contact {contact.provider_id}")
            self.logger.info(f"Deleted contact {contact.provider_id} for {tenant.slug}")
