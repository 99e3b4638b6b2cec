"""
Identity provider integrations.
"""

from typing import Dict, Any

from idp_sync.config import ConfigurationError
from .base import (
    IdentityProviderBase,
    ProviderError,
    ProviderConnectionError,
    ProviderAuthenticationError,
)
from .keycloak import KeycloakProvider

SUPPORTED_PROVIDERS = ['keycloak']


class UnsupportedProviderError(ConfigurationError):
    """Raised when the requested provider type has no implementation."""
    pass


def create_provider(provider_type: str, settings: Dict[str, Any]) -> IdentityProviderBase:
    """
    Create the provider client for the given type.

    Args:
        provider_type: Provider name, e.g. 'keycloak'
        settings: Full sync settings; the provider reads its own section

    Raises:
        UnsupportedProviderError: If the provider type is unknown
    """
    if provider_type == 'keycloak':
        return KeycloakProvider(settings['keycloak'])

    raise UnsupportedProviderError(
        f"Unsupported provider: {provider_type}. Supported: {', '.join(SUPPORTED_PROVIDERS)}")


__all__ = [
    'IdentityProviderBase',
    'KeycloakProvider',
    'ProviderError',
    'ProviderConnectionError',
    'ProviderAuthenticationError',
    'UnsupportedProviderError',
    'SUPPORTED_PROVIDERS',
    'create_provider',
]
