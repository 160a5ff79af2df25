"""Extension resolution, caching and lifecycle.

Extensions are resolved through a static factory table keyed by module
id. The first ``load_module`` call instantiates the extension and
caches it; later calls return the cached instance. Failed resolutions
are not cached.

``register_all`` brings every allowed extension up in three passes:
instantiate, attach capabilities (``extend_core``), then register
commands and run ``setup``. A failure in one extension is logged and
that extension is skipped; the others still load.
"""

import re
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import structlog

from ..exceptions import ModuleResolutionError
from ..models import CUSTOM_MODULE, CommandEntry
from .base import Extension, ExtensionConfig
from .commands import CommandsExtension
from .points import PointsExtension

if TYPE_CHECKING:
    from ..context import RuntimeContext

logger = structlog.get_logger("lodestar.extensions")

ExtensionFactory = Callable[[ExtensionConfig], Extension]

BUILTIN_EXTENSIONS: Dict[str, ExtensionFactory] = {
    "commands": CommandsExtension,
    "points": PointsExtension,
}

_COMMAND_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


class ExtensionLoader:
    """Loads extensions from a factory table and manages their lifecycle.

    Args:
        factories: Module id -> factory. Defaults to BUILTIN_EXTENSIONS.
        settings: Parsed settings.yaml (for the allowlist and the
            per-extension sections).
    """

    def __init__(
        self,
        factories: Optional[Dict[str, ExtensionFactory]] = None,
        settings: Optional[dict] = None,
    ):
        self._factories: Dict[str, ExtensionFactory] = dict(
            BUILTIN_EXTENSIONS if factories is None else factories
        )
        self._settings = settings or {}
        self._cache: Dict[str, Extension] = {}
        self._active: List[str] = []

    def register_factory(self, module_id: str, factory: ExtensionFactory) -> None:
        if module_id == CUSTOM_MODULE:
            raise ModuleResolutionError(
                f"'{CUSTOM_MODULE}' is reserved for custom commands", module_id=module_id
            )
        if module_id in self._factories:
            logger.warning("extension_factory_replaced", extension=module_id)
        self._factories[module_id] = factory
        self._cache.pop(module_id, None)

    def module_ids(self) -> List[str]:
        return list(self._factories)

    @property
    def active(self) -> List[str]:
        """Module ids whose setup completed."""
        return list(self._active)

    def is_cached(self, module_id: str) -> bool:
        return module_id in self._cache

    def _blocked_reason(self, module_id: str) -> Optional[str]:
        allowlist = self._settings.get("extension_allowlist")
        if allowlist is not None and not isinstance(allowlist, list):
            logger.error("extension_allowlist_invalid_type", type=type(allowlist).__name__)
            allowlist = None
        if allowlist is not None and module_id not in allowlist:
            return "not_in_allowlist"
        section = (self._settings.get("extensions") or {}).get(module_id, {})
        if isinstance(section, dict) and section.get("enabled") is False:
            return "disabled"
        return None

    def load_module(self, module_id: str) -> Extension:
        """Resolve ``module_id`` to its extension instance, caching it.

        Raises:
            ModuleResolutionError: Unknown id, or the factory failed.
        """
        cached = self._cache.get(module_id)
        if cached is not None:
            return cached

        factory = self._factories.get(module_id)
        if factory is None:
            raise ModuleResolutionError(f"Unknown extension '{module_id}'", module_id=module_id)
        try:
            extension = factory(ExtensionConfig(module_id, self._settings))
        except Exception as e:
            raise ModuleResolutionError(
                f"Extension '{module_id}' failed to load: {e}",
                module_id=module_id, error_type=type(e).__name__,
            ) from e
        if not isinstance(extension, Extension):
            raise ModuleResolutionError(
                f"Factory for '{module_id}' did not return an Extension",
                module_id=module_id,
            )

        self._cache[module_id] = extension
        logger.debug("extension_resolved", extension=module_id)
        return extension

    def get_runner(self, entry: CommandEntry) -> Callable[..., Any]:
        """Return the bound handler for a registry entry.

        Raises:
            ModuleResolutionError: Module or handler cannot be resolved.
        """
        extension = self.load_module(entry.module)
        runner = getattr(extension, entry.handler, None) if entry.handler else None
        if not callable(runner):
            raise ModuleResolutionError(
                f"Extension '{entry.module}' has no handler '{entry.handler}'",
                module_id=entry.module, command=entry.display_name,
            )
        return runner

    async def register_all(self, ctx: "RuntimeContext") -> List[str]:
        """Load, extend and set up every allowed extension.

        Returns:
            Module ids that finished setup.
        """
        ctx.loader = self
        loaded: List[str] = []
        for module_id in self._factories:
            reason = self._blocked_reason(module_id)
            if reason is not None:
                logger.info("extension_skipped", extension=module_id, reason=reason)
                continue
            try:
                self.load_module(module_id)
                loaded.append(module_id)
            except ModuleResolutionError as e:
                logger.error("extension_load_failed", extension=module_id,
                             error=str(e), error_type=e.context.get("error_type"))

        loaded = self.extend_core(ctx, loaded)

        for module_id in loaded:
            extension = self._cache[module_id]
            try:
                await self._register_commands(ctx, module_id, extension)
                await extension.setup(ctx)
            except Exception as e:
                logger.error("extension_setup_failed", extension=module_id,
                             error=str(e), error_type=type(e).__name__)
                ctx.registry.unregister(module_id, cascading=True)
                ctx.detach(module_id)
                self._cache.pop(module_id, None)
                continue
            if module_id not in self._active:
                self._active.append(module_id)
            logger.info("extension_loaded", extension=module_id,
                        version=extension.version,
                        commands=[c.display_name for c in extension.commands()])

        logger.info("extension_loader_complete", extensions=len(self._active),
                    commands=len(ctx.registry.names()))
        return self.active

    async def _register_commands(
        self, ctx: "RuntimeContext", module_id: str, extension: Extension
    ) -> None:
        entries = extension.commands()
        # Parents first so subcommands find them
        for entry in sorted(entries, key=lambda e: e.is_subcommand):
            if not _COMMAND_NAME.match(entry.name):
                logger.warning("extension_invalid_command_name",
                               command=entry.name, extension=module_id)
                continue
            if entry.module != module_id:
                entry = entry.model_copy(update={"module": module_id})
            await ctx.registry.register(entry)

    def extend_core(self, ctx: "RuntimeContext", module_ids: Optional[List[str]] = None) -> List[str]:
        """Attach each extension's capabilities to ``ctx``.

        Attaching replaces an existing capability at the same path, so
        running this again after a reconnect does not duplicate anything.

        Returns:
            The module ids whose capabilities were attached.
        """
        extended = []
        for module_id in (module_ids if module_ids is not None else list(self._cache)):
            extension = self._cache.get(module_id)
            if extension is None:
                continue
            try:
                capabilities = extension.capabilities(ctx)
                for path, value in capabilities.items():
                    ctx.attach(path, value, module_id)
            except Exception as e:
                logger.error("extension_extend_failed", extension=module_id,
                             error=str(e), error_type=type(e).__name__)
                ctx.detach(module_id)
                self._cache.pop(module_id, None)
                continue
            extended.append(module_id)
            logger.debug("extension_extended_core", extension=module_id,
                         capabilities=sorted(capabilities))
        return extended

    async def unload_all(self, ctx: "RuntimeContext") -> None:
        """Tear extensions down in reverse load order and clear the cache."""
        for module_id in reversed(self._active):
            extension = self._cache.get(module_id)
            if extension is None:
                continue
            try:
                await extension.teardown(ctx)
                logger.info("extension_unloaded", extension=module_id)
            except Exception as e:
                logger.error("extension_teardown_failed", extension=module_id,
                             error=str(e), error_type=type(e).__name__)
            ctx.registry.unregister(module_id, cascading=True)
            ctx.detach(module_id)
        self._active.clear()
        self._cache.clear()
