"""Extension framework and the built-in extensions."""

from .base import Extension, ExtensionConfig
from .loader import BUILTIN_EXTENSIONS, ExtensionFactory, ExtensionLoader

__all__ = [
    "BUILTIN_EXTENSIONS",
    "Extension",
    "ExtensionConfig",
    "ExtensionFactory",
    "ExtensionLoader",
]
