"""Providers perform create/read/update/delete calls against the target cloud."""

from typing import Optional, Protocol, runtime_checkable

from config import ConfigError


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider classes.

    Implementations raise errors.ProviderError on failure; set
    transient=True when a retry may succeed.
    """

    def create(self, resource_type: str, attributes: dict) -> dict:
        """Create a resource and return its outputs (must include 'id')."""

    def read(self, resource_type: str, outputs: dict) -> Optional[dict]:
        """Return current outputs, or None if the resource no longer exists."""

    def update(self, resource_type: str, outputs: dict, attributes: dict) -> dict:
        """Update a resource in place and return its new outputs."""

    def delete(self, resource_type: str, outputs: dict) -> None:
        """Delete a resource. Deleting a missing resource is not an error."""


def get_provider(settings: dict) -> Provider:
    """Build a provider from the config 'provider' section.

    Raises:
        ConfigError: If the provider name is unknown or settings are invalid
    """
    name = settings.get('name')
    if name == 'local':
        from providers.local import LocalProvider
        return LocalProvider(root=settings.get('path', '.infra/cloud'))
    if name == 'http':
        from providers.http import HttpProvider
        if not settings.get('endpoint'):
            raise ConfigError("http provider requires 'endpoint'")
        return HttpProvider(
            endpoint=settings['endpoint'],
            token_env=settings.get('token_env', 'INFRA_PROVIDER_TOKEN'),
            timeout=float(settings.get('timeout', 30)),
            verify_tls=bool(settings.get('verify_tls', True)),
        )
    raise ConfigError(f"Unknown provider '{name}'. Available: local, http")


__all__ = [
    'Provider',
    'get_provider',
]
