"""Provider client interfaces and implementations."""

from .base import (
    BaseProviderClient,
    ProviderError,
    ProviderAuthError,
    RateLimitError,
    ProviderNotFoundError,
)
from .nylas import NylasProviderClient

__all__ = [
    'BaseProviderClient',
    'ProviderError',
    'ProviderAuthError',
    'RateLimitError',
    'ProviderNotFoundError',
    'NylasProviderClient',
]
