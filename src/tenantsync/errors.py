"""Engine-level exceptions raised by sync, mutation and read operations."""

from typing import Optional


class SyncError(Exception):
    """Base exception for synchronization engine errors."""
    pass


class NotConnectedError(SyncError):
    """Tenant has no active provider grant."""

    def __init__(self, tenant_id: str, account: Optional[str] = None):
        self.tenant_id = tenant_id
        self.account = account
        if account:
            message = f"Tenant {tenant_id} has no active provider grant for account {account}"
        else:
            message = f"Tenant {tenant_id} not connected to a provider"
        super().__init__(message)


class TenantInactiveError(SyncError):
    """Tenant exists but has been deactivated."""

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant is inactive: {tenant_id}")


class ResourceNotFoundError(SyncError):
    """Referenced calendar, event or folder is absent from the cache."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class InvalidWindowError(SyncError, ValueError):
    """Sync window whose start is not before its end."""
    pass


class InvalidEventError(SyncError, ValueError):
    """Event payload rejected before reaching the provider."""
    pass


class ReadOnlyCalendarError(SyncError):
    """Write attempted against a read-only calendar."""
    pass


class SystemFolderError(SyncError):
    """Mutation attempted against a provider system folder."""
    pass


class InvalidFolderError(SyncError, ValueError):
    """Folder request rejected before reaching the provider."""
    pass


class InvalidContactError(SyncError, ValueError):
    """Contact request rejected before reaching the provider."""
    pass
