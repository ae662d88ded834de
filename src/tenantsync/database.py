"""Database models and the cache store handle."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type, Union
from uuid import uuid4

from sqlalchemy import (
    create_engine, Column, String, Date, DateTime, Boolean, Text, Integer, JSON,
    ForeignKey, Index, UniqueConstraint, event as sa_event, func, or_
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
import pytz

from .config import Settings
from .models import ResourceKind, SYSTEM_FOLDER_ORDER, FolderType, ensure_utc

Base = declarative_base()


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(pytz.UTC)


class TenantDB(Base):
    """Tenant owning every cached resource."""

    __tablename__ = 'tenants'

    id = Column(String(255), primary_key=True, default=_new_id)
    slug = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    plan = Column(String(50), nullable=False, default='free')
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    grants = relationship(
        "ProviderGrantDB", back_populates="tenant", cascade="all, delete-orphan",
        order_by="ProviderGrantDB.created_at"
    )


class ProviderGrantDB(Base):
    """A tenant's authorized connection to one provider account."""

    __tablename__ = 'provider_grants'

    id = Column(String(32), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    grant_id = Column(String(255), nullable=False)
    email = Column(String(320), nullable=True)
    provider = Column(String(50), nullable=False, default='nylas')
    is_active = Column(Boolean, nullable=False, default=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    tenant = relationship("TenantDB", back_populates="grants")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'grant_id', name='uq_provider_grant_tenant'),
        Index('idx_provider_grant_tenant_active', 'tenant_id', 'is_active'),
    )


class CalendarDB(Base):
    """Cached calendar, one row per remote calendar."""

    __tablename__ = 'calendars'

    id = Column(String(255), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    provider_id = Column(String(500), nullable=False)
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)
    timezone = Column(String(100), nullable=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    is_read_only = Column(Boolean, nullable=False, default=False)
    color = Column(String(20), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    events = relationship(
        "CalendarEventDB", back_populates="calendar", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider_id', name='uq_calendar_provider'),
        Index('idx_calendar_tenant', 'tenant_id'),
    )


class CalendarEventDB(Base):
    """Cached calendar event, foreign-keyed to its calendar."""

    __tablename__ = 'calendar_events'

    id = Column(String(255), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    calendar_id = Column(String(255), ForeignKey('calendars.id', ondelete='CASCADE'), nullable=False)
    provider_id = Column(String(500), nullable=False)
    title = Column(String(1000), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(1000), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    all_day = Column(Boolean, nullable=False, default=False)
    status = Column(String(50), nullable=True)
    busy = Column(Boolean, nullable=False, default=True)
    recurrence = Column(JSON, nullable=True)
    participants = Column(JSON, nullable=True)
    organizer = Column(JSON, nullable=True)
    reminders = Column(JSON, nullable=True)
    conferencing = Column(JSON, nullable=True)
    master_event_id = Column(String(500), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    calendar = relationship("CalendarDB", back_populates="events")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'calendar_id', 'provider_id', name='uq_event_provider'),
        Index('idx_event_tenant_start', 'tenant_id', 'start_time'),
        Index('idx_event_calendar', 'calendar_id'),
    )


class FolderDB(Base):
    """Cached mail folder."""

    __tablename__ = 'folders'

    id = Column(String(255), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    provider_id = Column(String(500), nullable=False)
    name = Column(String(500), nullable=False)
    parent_id = Column(String(500), nullable=True)  # provider id of the parent folder
    path = Column(String(2000), nullable=False)
    folder_type = Column(String(20), nullable=False, default=FolderType.CUSTOM.value)
    total_count = Column(Integer, nullable=False, default=0)
    unread_count = Column(Integer, nullable=False, default=0)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider_id', name='uq_folder_provider'),
        Index('idx_folder_tenant', 'tenant_id'),
    )


class ContactDB(Base):
    """Cached address-book contact."""

    __tablename__ = 'contacts'

    id = Column(String(255), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    provider_id = Column(String(500), nullable=False)
    email = Column(String(320), nullable=True)
    given_name = Column(String(255), nullable=True)
    surname = Column(String(255), nullable=True)
    display_name = Column(String(500), nullable=False)
    company_name = Column(String(500), nullable=True)
    job_title = Column(String(500), nullable=True)
    phone_numbers = Column(JSON, nullable=True)
    emails = Column(JSON, nullable=True)
    addresses = Column(JSON, nullable=True)
    birthday = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    photo_url = Column(String(2000), nullable=True)
    groups = Column(JSON, nullable=True)
    source = Column(String(50), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider_id', name='uq_contact_provider'),
        Index('idx_contact_tenant_name', 'tenant_id', 'display_name'),
    )


class SyncStateDB(Base):
    """Marker that a baseline sync has happened for a tenant. Holds no cursor."""

    __tablename__ = 'sync_states'

    tenant_id = Column(String(255), ForeignKey('tenants.id', ondelete='CASCADE'), primary_key=True)
    calendars_synced_at = Column(DateTime(timezone=True), nullable=True)
    folders_synced_at = Column(DateTime(timezone=True), nullable=True)
    contacts_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class ActivityLogDB(Base):
    """Audit row written by bootstrap syncs."""

    __tablename__ = 'activity_logs'

    id = Column(String(32), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), nullable=False)
    action = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)  # 'success', 'error'
    input = Column(JSON, nullable=True)
    output = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index('idx_activity_tenant_created', 'tenant_id', 'created_at'),
    )


CachedRow = Union[CalendarDB, CalendarEventDB, FolderDB, ContactDB]

_KIND_MODELS: Dict[ResourceKind, Type[Base]] = {
    ResourceKind.CALENDAR: CalendarDB,
    ResourceKind.EVENT: CalendarEventDB,
    ResourceKind.FOLDER: FolderDB,
    ResourceKind.CONTACT: ContactDB,
}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class CacheStore:
    """Handle on the per-tenant cache.

    Built once by the process entry point and passed to every component;
    ``close()`` disposes the connection pool.
    """

    def __init__(self, settings: Settings, engine: Optional[Engine] = None):
        """Initialize the cache store.

        Args:
            settings: Application settings
            engine: Optional pre-built SQLAlchemy engine
        """
        self.settings = settings
        if engine is None:
            connect_args = {}
            if settings.database_url.startswith('sqlite'):
                connect_args['check_same_thread'] = False
            engine = create_engine(
                settings.database_url,
                echo=settings.debug,
                pool_pre_ping=True,
                connect_args=connect_args
            )
        if engine.dialect.name == 'sqlite':
            sa_event.listen(engine, 'connect', _enable_sqlite_foreign_keys)
        self.engine = engine
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def close(self) -> None:
        self.engine.dispose()

    # -- typed resolver --------------------------------------------------

    def resolve(
        self,
        session: Session,
        tenant_id: str,
        kind: ResourceKind,
        identifier: str
    ) -> Optional[CachedRow]:
        """Resolve a cached row of ``kind`` by local id or provider id.

        A local-id match wins over a provider-id match. Lookups are always
        scoped to ``tenant_id``.

        Args:
            session: Database session
            tenant_id: Resolved tenant id
            kind: Resource kind tag
            identifier: Local id or provider id

        Returns:
            Matching row or None if not found
        """
        model = _KIND_MODELS[ResourceKind(kind)]
        row = session.query(model).filter(
            model.tenant_id == tenant_id,
            model.id == identifier
        ).first()
        if row is not None:
            return row
        return session.query(model).filter(
            model.tenant_id == tenant_id,
            model.provider_id == identifier
        ).order_by(model.id).first()

    # -- collection reads ------------------------------------------------

    def list_calendars(self, session: Session, tenant_id: str) -> List[CalendarDB]:
        """Calendars ordered primary-first, then by name."""
        return session.query(CalendarDB).filter(
            CalendarDB.tenant_id == tenant_id
        ).order_by(CalendarDB.is_primary.desc(), CalendarDB.name.asc(), CalendarDB.id.asc()).all()

    def list_events(
        self,
        session: Session,
        tenant_id: str,
        calendar_id: Optional[str] = None,
        start_min: Optional[datetime] = None,
        start_max: Optional[datetime] = None,
        end_max: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[CalendarEventDB]:
        """Events ordered by start time ascending.

        Args:
            session: Database session
            tenant_id: Resolved tenant id
            calendar_id: Local calendar id filter
            start_min: Inclusive lower bound on start time
            start_max: Inclusive upper bound on start time
            end_max: Inclusive upper bound on end time
            limit: Maximum rows returned
        """
        query = session.query(CalendarEventDB).filter(CalendarEventDB.tenant_id == tenant_id)

        if calendar_id is not None:
            query = query.filter(CalendarEventDB.calendar_id == calendar_id)
        if start_min is not None:
            query = query.filter(CalendarEventDB.start_time >= ensure_utc(start_min))
        if start_max is not None:
            query = query.filter(CalendarEventDB.start_time <= ensure_utc(start_max))
        if end_max is not None:
            query = query.filter(CalendarEventDB.end_time <= ensure_utc(end_max))

        query = query.order_by(CalendarEventDB.start_time.asc(), CalendarEventDB.id.asc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def list_folders(self, session: Session, tenant_id: str) -> List[FolderDB]:
        """Folders with system folders first, then custom folders by path."""
        folders = session.query(FolderDB).filter(FolderDB.tenant_id == tenant_id).all()
        return sort_folders(folders)

    def find_folder_by_name(self, session: Session, tenant_id: str, name: str) -> Optional[FolderDB]:
        """Case-insensitive folder lookup by display name."""
        return session.query(FolderDB).filter(
            FolderDB.tenant_id == tenant_id,
            func.lower(FolderDB.name) == name.strip().lower()
        ).order_by(FolderDB.path.asc()).first()

    def folder_descendants(self, session: Session, folder: FolderDB) -> List[FolderDB]:
        """Cached folders nested anywhere below ``folder``."""
        return session.query(FolderDB).filter(
            FolderDB.tenant_id == folder.tenant_id,
            FolderDB.id != folder.id,
            FolderDB.path.startswith(f"{folder.path}/", autoescape=True)
        ).all()

    def list_contacts(
        self,
        session: Session,
        tenant_id: str,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[ContactDB], int]:
        """Contacts ordered by display name, plus the count before paging.

        ``search`` matches display name, email or company, case-insensitively.
        """
        query = session.query(ContactDB).filter(ContactDB.tenant_id == tenant_id)
        if search:
            query = query.filter(_contact_matches(
                search, ContactDB.display_name, ContactDB.email, ContactDB.company_name
            ))

        total = query.count()
        query = query.order_by(ContactDB.display_name.asc(), ContactDB.id.asc())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all(), total

    def search_contacts(self, session: Session, tenant_id: str, text: str, limit: int) -> List[ContactDB]:
        """Name, email and company search, including the separate name parts."""
        return session.query(ContactDB).filter(
            ContactDB.tenant_id == tenant_id,
            _contact_matches(
                text,
                ContactDB.display_name, ContactDB.given_name, ContactDB.surname,
                ContactDB.email, ContactDB.company_name
            )
        ).order_by(ContactDB.display_name.asc(), ContactDB.id.asc()).limit(limit).all()

    # -- bookkeeping -----------------------------------------------------

    def mark_synced(self, session: Session, tenant_id: str, scope: str) -> SyncStateDB:
        """Create or touch the tenant's sync-state marker.

        Args:
            session: Database session
            tenant_id: Resolved tenant id
            scope: 'calendars', 'folders' or 'contacts'
        """
        state = session.get(SyncStateDB, tenant_id)
        if state is None:
            state = SyncStateDB(tenant_id=tenant_id)
            session.add(state)
        setattr(state, f"{scope}_synced_at", _now())
        session.commit()
        return state

    def get_sync_state(self, session: Session, tenant_id: str) -> Optional[SyncStateDB]:
        return session.get(SyncStateDB, tenant_id)

    def log_activity(
        self,
        session: Session,
        tenant_id: str,
        action: str,
        status: str,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None
    ) -> ActivityLogDB:
        """Write one activity-log row."""
        entry = ActivityLogDB(
            tenant_id=tenant_id,
            action=action,
            status=status,
            input=input,
            output=output,
            error=error,
            duration_ms=duration_ms
        )
        session.add(entry)
        session.commit()
        return entry

    def get_recent_activity(self, session: Session, tenant_id: str, limit: int = 10) -> List[ActivityLogDB]:
        return session.query(ActivityLogDB).filter(
            ActivityLogDB.tenant_id == tenant_id
        ).order_by(ActivityLogDB.created_at.desc()).limit(limit).all()


def _contact_matches(text: str, *columns):
    needle = text.strip().lower()
    return or_(*(func.lower(column).contains(needle, autoescape=True) for column in columns))


def sort_folders(folders: List[FolderDB]) -> List[FolderDB]:
    """Order folders: system folders in display order, then custom folders by path."""
    order = {folder_type.value: index for index, folder_type in enumerate(SYSTEM_FOLDER_ORDER)}

    def sort_key(folder: FolderDB):
        rank = order.get(folder.folder_type, len(order))
        return (rank, (folder.path or folder.name).lower(), folder.id)

    return sorted(folders, key=sort_key)
