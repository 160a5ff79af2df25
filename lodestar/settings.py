"""Runtime settings stored in the database.

Values live as text in the ``settings`` table (and, per extension, in
``extension_settings``) and are coerced on read: ``"true"``/``"false"``
become booleans and integer strings become ints.
"""

from typing import Any, Optional

import structlog

from .store import Store

logger = structlog.get_logger("lodestar.core")

DEFAULT_SETTINGS = {
    "prefix": "!",
    "defaultCooldown": 30,
    "whisperMode": False,
}


def _encode(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _decode(value: Optional[str]) -> Any:
    if value is None:
        return None
    if value in ("true", "false"):
        return value == "true"
    stripped = value.strip()
    if stripped.lstrip("-").isdigit():
        return int(stripped)
    return value


class Settings:
    """Key/value settings accessor over the store."""

    def __init__(self, store: Store):
        self._store = store

    async def initialize(self) -> None:
        """Write defaults for keys that have never been set."""
        for key, value in DEFAULT_SETTINGS.items():
            await self.confirm(key, value)

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await self._store.get("settings", "value", {"key": key})
        value = _decode(raw)
        return default if value is None else value

    async def set(self, key: str, value: Any, info: Optional[str] = None) -> None:
        values = {"value": _encode(value)}
        if info is not None:
            values["info"] = info
        await self._store.set("settings", values, {"key": key})
        logger.debug("setting_updated", key=key)

    async def confirm(self, key: str, value: Any) -> bool:
        """Set ``key`` only if it does not exist yet. Returns True if written."""
        return await self._store.insert_ignore(
            "settings", {"key": key, "value": _encode(value)}
        )

    async def get_ext_config(self, extension: str, key: str, default: Any = None) -> Any:
        """Read a per-extension setting (e.g. ``points``/``enabled``)."""
        raw = await self._store.get(
            "extension_settings", "value", {"extension": extension, "key": key}
        )
        value = _decode(raw)
        return default if value is None else value

    async def set_ext_config(self, extension: str, key: str, value: Any) -> None:
        await self._store.set(
            "extension_settings",
            {"value": _encode(value)},
            {"extension": extension, "key": key},
        )
        logger.debug("extension_setting_updated", extension=extension, key=key)
