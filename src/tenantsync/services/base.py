"""Base provider client interface with async support."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..models import Page, RemoteCalendar, RemoteContact, RemoteEvent, RemoteFolder

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for provider client errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Authentication-related errors (revoked or expired grant, bad API key)."""
    pass


class RateLimitError(ProviderError):
    """Rate limiting errors."""
    pass


class ProviderNotFoundError(ProviderError):
    """Remote resource not found."""
    pass


class BaseProviderClient(ABC):
    """Abstract base class for provider clients.

    Every call is scoped to one grant and is a single bounded request (or, for
    list endpoints of small collections, a short sequence of them).
    """

    name = "provider"

    def __init__(self):
        self.logger = logger.getChild(self.name)

    @abstractmethod
    async def list_calendars(self, grant_id: str) -> List[RemoteCalendar]:
        """Get every calendar visible to the grant.

        Raises:
            ProviderError: If calendars cannot be retrieved
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        grant_id: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        limit: int,
        page_token: Optional[str] = None
    ) -> Page[RemoteEvent]:
        """Get one page of events overlapping ``[start, end]``.

        Args:
            grant_id: Provider grant
            calendar_id: Provider calendar id
            start: Window start
            end: Window end
            limit: Page size
            page_token: Cursor returned by the previous page

        Returns:
            Page of events with the next cursor, if any

        Raises:
            ProviderError: If events cannot be retrieved
        """
        pass

    @abstractmethod
    async def create_event(
        self,
        grant_id: str,
        calendar_id: str,
        payload: Dict[str, Any]
    ) -> RemoteEvent:
        """Create a new event and return the provider's record of it."""
        pass

    @abstractmethod
    async def update_event(
        self,
        grant_id: str,
        calendar_id: str,
        event_id: str,
        payload: Dict[str, Any]
    ) -> RemoteEvent:
        """Update an existing event.

        Raises:
            ProviderNotFoundError: If the event does not exist remotely
        """
        pass

    @abstractmethod
    async def delete_event(self, grant_id: str, calendar_id: str, event_id: str) -> None:
        """Delete an event."""
        pass

    @abstractmethod
    async def list_folders(self, grant_id: str) -> List[RemoteFolder]:
        """Get every mail folder visible to the grant."""
        pass

    @abstractmethod
    async def create_folder(
        self,
        grant_id: str,
        name: str,
        parent_id: Optional[str] = None
    ) -> RemoteFolder:
        """Create a folder, optionally nested below ``parent_id``."""
        pass

    @abstractmethod
    async def update_folder(self, grant_id: str, folder_id: str, name: str) -> RemoteFolder:
        """Rename a folder."""
        pass

    @abstractmethod
    async def delete_folder(self, grant_id: str, folder_id: str) -> None:
        """Delete a folder."""
        pass

    @abstractmethod
    async def list_contacts(self, grant_id: str) -> List[RemoteContact]:
        """Get every contact in the grant's address book."""
        pass

    @abstractmethod
    async def create_contact(self, grant_id: str, payload: Dict[str, Any]) -> RemoteContact:
        pass

    @abstractmethod
    async def update_contact(self, grant_id: str, contact_id: str, payload: Dict[str, Any]) -> RemoteContact:
        """Update an existing contact.

        Raises:
            ProviderNotFoundError: If the contact does not exist remotely
        """
        pass

    @abstractmethod
    async def delete_contact(self, grant_id: str, contact_id: str) -> None:
        pass

    @abstractmethod
    async def update_message(self, grant_id: str, message_id: str, payload: Dict[str, Any]) -> None:
        """Update a mail message, e.g. its ``folders`` list to move it."""
        pass

    async def find_folder_by_name(self, grant_id: str, name: str) -> Optional[RemoteFolder]:
        """Find a remote folder by case-insensitive name."""
        wanted = name.strip().lower()
        for folder in await self.list_folders(grant_id):
            if (folder.name or '').strip().lower() == wanted:
                return folder
        return None

    async def close(self) -> None:
        """Release network resources."""
        return None
