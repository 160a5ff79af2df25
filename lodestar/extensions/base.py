"""Extension base class and the per-extension config view."""

from typing import TYPE_CHECKING, Any, Dict, List

import structlog

from ..models import CommandEntry

if TYPE_CHECKING:
    from ..context import RuntimeContext


class ExtensionConfig:
    """Settings an extension may read.

    Only the extension's own ``extensions.<name>`` section is exposed
    through ``get_config``; top-level values are read-only through
    ``get_global``.
    """

    def __init__(self, extension_name: str, settings: dict):
        self.extension_name = extension_name
        self._settings = settings
        section = (settings.get("extensions") or {}).get(extension_name, {})
        self._extension_settings = section if isinstance(section, dict) else {}
        self.logger = structlog.get_logger("lodestar.extensions").bind(extension=extension_name)

    def get_config(self, key: str, default: Any = None) -> Any:
        """Read ``extensions.<name>.<key>`` from settings.yaml."""
        return self._extension_settings.get(key, default)

    def get_global(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    @property
    def enabled(self) -> bool:
        """Whether this extension is enabled in config (default True)."""
        return self._extension_settings.get("enabled", True) is not False


class Extension:
    """Base class for lodestar extensions.

    Subclass it, override what you need, and add the class to the
    loader's factory table under its module id.

    Handlers named by ``CommandEntry.handler`` are looked up as
    attributes of the instance and called as ``handler(event, ctx)``.
    """

    name: str = ""
    description: str = ""
    version: str = "1.0.0"

    def __init__(self, config: ExtensionConfig):
        self.config = config

    def commands(self) -> List[CommandEntry]:
        """Commands and subcommands to register, with default policy."""
        return []

    def capabilities(self, ctx: "RuntimeContext") -> Dict[str, Any]:
        """Capabilities to attach to the context, keyed by dotted path."""
        return {}

    async def setup(self, ctx: "RuntimeContext") -> None:
        """Called once per engine start after capabilities are attached."""
        pass

    async def teardown(self, ctx: "RuntimeContext") -> None:
        """Called on engine shutdown. Cancel timers, drop listeners."""
        pass
