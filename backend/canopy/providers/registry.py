"""Provider registry: stores configured chat provider instances."""

from canopy.providers.base import ChatProvider

_providers: dict[str, ChatProvider] = {}


def register_provider(provider: ChatProvider) -> None:
    """Register a provider instance by name."""
    _providers[provider.name] = provider


def get_provider(name: str) -> ChatProvider:
    """Get a registered provider by name. Raises ProviderNotFoundError if not found."""
    try:
        return _providers[name]
    except KeyError:
        available = ", ".join(_providers.keys()) or "(none)"
        raise ProviderNotFoundError(
            f"Provider '{name}' not registered. Available: {available}"
        )


def list_providers() -> list[str]:
    """Return names of all registered providers."""
    return list(_providers.keys())


def get_all_providers() -> list[ChatProvider]:
    """Return all registered provider instances, in registration order."""
    return list(_providers.values())


def clear_providers() -> None:
    """Clear all registered providers. Used in tests."""
    _providers.clear()


class ProviderNotFoundError(Exception):
    pass
