"""Data models for provider-to-cache synchronization."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, validator
import pytz

# Alias so EventWhen can expose a field literally named ``date``.
CalendarDate = date


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return ``dt`` as a timezone-aware UTC datetime (naive values are assumed UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def _date_to_utc(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=pytz.UTC)


class ResourceKind(str, Enum):
    """Kinds of cached resources addressable by local or provider id."""

    CALENDAR = "calendar"
    EVENT = "event"
    FOLDER = "folder"
    CONTACT = "contact"


class FolderType(str, Enum):
    """Folder classification derived from provider folder names."""

    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    CUSTOM = "custom"


SYSTEM_FOLDER_TYPES: Dict[str, FolderType] = {
    'inbox': FolderType.INBOX,
    'sent': FolderType.SENT,
    'sent mail': FolderType.SENT,
    'sent items': FolderType.SENT,
    'drafts': FolderType.DRAFTS,
    'draft': FolderType.DRAFTS,
    'trash': FolderType.TRASH,
    'deleted': FolderType.TRASH,
    'deleted items': FolderType.TRASH,
    'spam': FolderType.SPAM,
    'junk': FolderType.SPAM,
    'junk email': FolderType.SPAM,
    'archive': FolderType.ARCHIVE,
    'all mail': FolderType.ARCHIVE,
}

# Display order for system folders; custom folders follow, sorted by path.
SYSTEM_FOLDER_ORDER: List[FolderType] = [
    FolderType.INBOX,
    FolderType.SENT,
    FolderType.DRAFTS,
    FolderType.ARCHIVE,
    FolderType.SPAM,
    FolderType.TRASH,
]


def folder_type_for(name: Optional[str]) -> FolderType:
    """Classify a folder by its display name."""
    return SYSTEM_FOLDER_TYPES.get((name or '').strip().lower(), FolderType.CUSTOM)


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    sync_past_days: int = Field(30, ge=0)
    sync_future_days: int = Field(90, ge=0)
    event_page_size: int = Field(200, ge=1, le=1000)
    follow_pagination: bool = Field(False, description="Follow provider page cursors during event sync")
    max_pages: int = Field(10, ge=1, description="Upper bound on pages fetched when following cursors")
    cached_events_limit: int = Field(100, ge=1)
    upcoming_days: int = Field(7, ge=1)
    upcoming_limit: int = Field(20, ge=1)
    cached_contacts_limit: int = Field(50, ge=1)
    contact_search_limit: int = Field(20, ge=1)


# ---------------------------------------------------------------------------
# Remote records (what the provider client returns)
# ---------------------------------------------------------------------------

class Participant(BaseModel):
    """Event participant or organizer."""

    email: str
    name: Optional[str] = None
    status: Optional[str] = None


class EventWhen(BaseModel):
    """Provider time descriptor: a timed span, a date span or a single date."""

    start_time: Optional[int] = Field(None, description="Unix seconds")
    end_time: Optional[int] = Field(None, description="Unix seconds")
    start_date: Optional[CalendarDate] = None
    end_date: Optional[CalendarDate] = None
    date: Optional[CalendarDate] = None
    start_timezone: Optional[str] = None
    end_timezone: Optional[str] = None

    def resolve(self) -> Optional[Tuple[datetime, datetime, bool]]:
        """Return ``(start, end, all_day)`` or None when no usable window exists."""
        if self.start_time is not None:
            start = datetime.fromtimestamp(self.start_time, tz=pytz.UTC)
            end_ts = self.end_time if self.end_time is not None else self.start_time
            return start, datetime.fromtimestamp(end_ts, tz=pytz.UTC), False
        if self.start_date is not None:
            end_date = self.end_date or self.start_date
            return _date_to_utc(self.start_date), _date_to_utc(end_date), True
        if self.date is not None:
            start = _date_to_utc(self.date)
            return start, start + timedelta(days=1), True
        return None


class RemoteCalendar(BaseModel):
    """Calendar as reported by the provider."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    timezone: Optional[str] = None
    is_primary: bool = False
    read_only: bool = False
    hex_color: Optional[str] = None


class RemoteEvent(BaseModel):
    """Event as reported by the provider."""

    id: str
    calendar_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    when: Optional[EventWhen] = None
    status: Optional[str] = None
    busy: Optional[bool] = None
    recurrence: Optional[Any] = None
    participants: Optional[List[Dict[str, Any]]] = None
    organizer: Optional[Dict[str, Any]] = None
    reminders: Optional[Any] = None
    conferencing: Optional[Any] = None
    master_event_id: Optional[str] = None


class RemoteFolder(BaseModel):
    """Mail folder as reported by the provider."""

    id: str
    name: Optional[str] = None
    parent_id: Optional[str] = None
    total_count: int = 0
    unread_count: int = 0


class RemoteContact(BaseModel):
    """Address-book contact as reported by the provider."""

    id: str
    given_name: Optional[str] = None
    surname: Optional[str] = None
    emails: Optional[List[Dict[str, Any]]] = None
    phone_numbers: Optional[List[Dict[str, Any]]] = None
    physical_addresses: Optional[List[Dict[str, Any]]] = None
    company_name: Optional[str] = None
    job_title: Optional[str] = None
    birthday: Optional[CalendarDate] = None
    notes: Optional[str] = None
    picture_url: Optional[str] = None
    groups: Optional[List[Any]] = None
    source: Optional[str] = None

    @validator('birthday', pre=True)
    def parse_birthday(cls, v):
        """Accept any ISO-ish date; unparseable birthdays are dropped."""
        if isinstance(v, str):
            if not v.strip():
                return None
            try:
                return date_parser.isoparse(v).date()
            except ValueError:
                return None
        return v

    @property
    def primary_email(self) -> Optional[str]:
        for entry in self.emails or []:
            if entry.get('email'):
                return entry['email']
        return None

    @property
    def group_ids(self) -> List[str]:
        ids = []
        for group in self.groups or []:
            if isinstance(group, dict):
                group = group.get('id') or group.get('name')
            if group:
                ids.append(str(group))
        return ids


def contact_display_name(
    given_name: Optional[str],
    surname: Optional[str],
    email: Optional[str] = None
) -> str:
    """Full name when both parts exist, else whichever part or the email."""
    if given_name and surname:
        return f"{given_name} {surname}".strip()
    return given_name or surname or email or 'Unknown'


T = TypeVar('T')


@dataclass
class Page(Generic[T]):
    """One page of remote records plus the cursor for the next page, if any."""

    data: List[T] = field(default_factory=list)
    next_cursor: Optional[str] = None


# ---------------------------------------------------------------------------
# Cached records (what the read path returns)
# ---------------------------------------------------------------------------

class CachedRecord(BaseModel):
    """Base for records read back from the cache store."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    provider_id: str
    synced_at: datetime

    @validator('synced_at', pre=True, check_fields=False)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class CachedCalendar(CachedRecord):
    """Calendar row from the cache."""

    name: str
    description: Optional[str] = None
    location: Optional[str] = None
    timezone: Optional[str] = None
    is_primary: bool = False
    is_read_only: bool = False
    color: Optional[str] = None


class CachedEvent(CachedRecord):
    """Calendar event row from the cache."""

    calendar_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    status: Optional[str] = None
    busy: bool = True
    recurrence: Optional[Any] = None
    participants: Optional[List[Dict[str, Any]]] = None
    organizer: Optional[Dict[str, Any]] = None
    reminders: Optional[Any] = None
    conferencing: Optional[Any] = None
    master_event_id: Optional[str] = None

    @validator('start_time', 'end_time', pre=True)
    def ensure_window_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class CachedFolder(CachedRecord):
    """Folder row from the cache."""

    name: str
    parent_id: Optional[str] = None
    path: str
    folder_type: FolderType = FolderType.CUSTOM
    total_count: int = 0
    unread_count: int = 0


class CachedContact(CachedRecord):
    """Contact row from the cache."""

    email: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    display_name: str
    company_name: Optional[str] = None
    job_title: Optional[str] = None
    phone_numbers: Optional[List[Dict[str, Any]]] = None
    emails: Optional[List[Dict[str, Any]]] = None
    addresses: Optional[List[Dict[str, Any]]] = None
    birthday: Optional[CalendarDate] = None
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    groups: List[str] = Field(default_factory=list)
    source: Optional[str] = None

    @validator('groups', pre=True)
    def default_groups(cls, v):
        return v or []


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SyncResult(BaseModel):
    """Reconciliation counters shared by every sync scope."""

    success: bool = True
    added: int = 0
    removed: int = 0
    updated: int = 0
    skipped: int = 0


class CalendarSyncResult(SyncResult):
    calendars: List[CachedCalendar] = Field(default_factory=list)


class EventSyncResult(SyncResult):
    calendar_id: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    truncated: bool = Field(False, description="Provider reported more pages than were fetched")
    events: List[CachedEvent] = Field(default_factory=list)


class FolderSyncResult(SyncResult):
    folders: List[CachedFolder] = Field(default_factory=list)


class ContactSyncResult(SyncResult):
    contacts: List[CachedContact] = Field(default_factory=list)


class ContactPage(BaseModel):
    """One page of cached contacts plus the unpaged match count."""

    contacts: List[CachedContact] = Field(default_factory=list)
    total: int = 0


class MoveEmailResult(BaseModel):
    success: bool = True
    folder: CachedFolder


class InitialCalendarSyncResult(BaseModel):
    """Combined outcome of a bootstrap calendar + event sync."""

    success: bool = True
    calendars: CalendarSyncResult
    events: List[EventSyncResult] = Field(default_factory=list)

    @property
    def total_events(self) -> int:
        return sum(len(result.events) for result in self.events)


# ---------------------------------------------------------------------------
# Mutation parameters
# ---------------------------------------------------------------------------

class EventCreate(BaseModel):
    """Parameters for creating an event through the provider."""

    calendar_id: str = Field(..., description="Local or provider calendar id")
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    participants: Optional[List[Participant]] = None

    @validator('start_time', 'end_time', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v

    @validator('end_time')
    def end_after_start(cls, v, values):
        """Ensure end time is after start time."""
        if 'start_time' in values and v <= values['start_time']:
            raise ValueError(f"End time ({v}) must be after start time ({values['start_time']})")
        return v


class EventUpdate(BaseModel):
    """Partial event update; None leaves a field unchanged."""

    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    participants: Optional[List[Participant]] = None

    @validator('start_time', 'end_time', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class ContactCreate(BaseModel):
    """Parameters for creating a contact; at least one name part or an email is required."""

    given_name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    company_name: Optional[str] = None
    job_title: Optional[str] = None

    def has_identity(self) -> bool:
        return bool(self.given_name or self.surname or self.email)


class ContactUpdate(BaseModel):
    """Partial contact update; None leaves a field unchanged."""

    given_name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    company_name: Optional[str] = None
    job_title: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class GrantRegistration(BaseModel):
    """A provider grant handed over by the OAuth layer."""

    grant_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    provider: str = Field("nylas")
    is_primary: bool = True
