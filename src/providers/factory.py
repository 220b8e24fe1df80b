"""
Provider factory for creating transcription providers.

Providers register themselves with ``@register_provider``; optional ones are
skipped when their dependencies are missing.
"""

from typing import Any, Dict, List, Optional, Type

from .base import TranscriptionProvider, ProviderNotAvailableError


# Registry of known providers (populated by register_provider)
_provider_registry: Dict[str, Type[TranscriptionProvider]] = {}


def register_provider(provider_class: Type[TranscriptionProvider]) -> Type[TranscriptionProvider]:
    """
    Register a provider class in the registry.

    Use as a decorator:
        @register_provider
        class MyProvider(TranscriptionProvider):
            PROVIDER_ID = "my_provider"
    """
    _provider_registry[provider_class.PROVIDER_ID] = provider_class
    return provider_class


def get_available_providers() -> List[str]:
    """Get IDs of providers whose dependencies are installed."""
    return [pid for pid, cls in _provider_registry.items() if cls.is_available()]


def is_provider_available(provider_id: str) -> bool:
    """Check if a specific provider is registered and usable."""
    if provider_id not in _provider_registry:
        return False
    return _provider_registry[provider_id].is_available()


def create_provider(provider_id: str, credentials: Optional[Dict[str, str]] = None,
                    **options: Any) -> TranscriptionProvider:
    """
    Create an instance of the specified provider.

    Args:
        provider_id: The provider ID to instantiate
        credentials: Session-scoped secrets (e.g. {"api_key": ...})
        **options: Provider-specific options

    Raises:
        ProviderNotAvailableError: If the provider's dependencies are missing
        ValueError: If the provider ID is unknown or credentials are missing
    """
    if provider_id not in _provider_registry:
        available = list(_provider_registry.keys())
        raise ValueError(f"Unknown provider '{provider_id}'. Available: {available}")

    provider_class = _provider_registry[provider_id]

    if not provider_class.is_available():
        raise ProviderNotAvailableError(provider_id, provider_class.get_install_hint())

    if provider_class.REQUIRES_CREDENTIALS and not (credentials or {}).get("api_key"):
        raise ValueError(f"Provider '{provider_id}' requires an api_key")

    return provider_class(credentials, **options)


def get_provider_class(provider_id: str) -> Optional[Type[TranscriptionProvider]]:
    """Get the class for a specific provider (without instantiating)."""
    return _provider_registry.get(provider_id)


def get_all_providers() -> Dict[str, Type[TranscriptionProvider]]:
    """Get all registered providers (available or not)."""
    return dict(_provider_registry)


def _register_providers():
    """Import provider modules to register them."""
    from . import assemblyai, openai_whisper, server, local_whisper  # noqa: F401


_register_providers()
