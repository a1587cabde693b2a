"""
Model providers.

Providers are registered in a global registry and created by name from
the store configuration. Concrete backends load lazily on first use.
"""

from .base import LazyModel, Model, ProviderRegistry, get_registry

__all__ = ["LazyModel", "Model", "ProviderRegistry", "get_registry"]
