"""Configuration management for lodestar.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a Config object. Property getters provide safe access with
defaults for every subsystem: bot identity, store, logging, chat
connector, extensions and the points payout timer.

This is the file-backed configuration read at startup. Runtime
settings that operators change from chat (command prefix, whisper
mode, point names, payout amounts) live in the store, see
``lodestar.settings``.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
from pathlib import Path
from typing import Any, List, Optional

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("lodestar.core")


class Config:
    """Central configuration manager for lodestar.

    Loads settings.yaml and .env from the config directory. Environment
    variables take precedence over YAML for secrets and identity.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
        settings: Pre-parsed settings mapping. When given, settings.yaml
            is not read (used by tests and embedding hosts).
    """

    def __init__(self, config_dir: Optional[Path] = None, settings: Optional[dict] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = settings if settings is not None else self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def _section(self, name: str) -> dict:
        section = self.settings.get(name, {})
        if not isinstance(section, dict):
            logger.error("config_section_invalid_type", section=name, type=type(section).__name__)
            return {}
        return section

    # Bot identity
    @property
    def bot_name(self) -> str:
        """Bot account name. Env var LODESTAR_BOT_NAME takes precedence."""
        return os.environ.get("LODESTAR_BOT_NAME") or self._section("bot").get("name", "")

    @property
    def bot_auth(self) -> str:
        """Bot OAuth token. Env var LODESTAR_BOT_AUTH takes precedence."""
        return os.environ.get("LODESTAR_BOT_AUTH") or self._section("bot").get("auth", "")

    @property
    def channel_name(self) -> str:
        """Channel the bot joins (lowercased, without leading #)."""
        channel = os.environ.get("LODESTAR_CHANNEL") or self.settings.get("channel", "")
        return str(channel).lstrip("#").lower()

    def validate(self) -> List[str]:
        """Check required settings at startup.

        Logs every missing or malformed value and returns the names of
        missing required keys. Does not raise; the engine decides
        whether it can start.
        """
        missing = []
        for key, value in (
            ("bot.name", self.bot_name),
            ("bot.auth", self.bot_auth),
            ("channel", self.channel_name),
        ):
            if not value:
                logger.error("config_missing_required", key=key)
                missing.append(key)

        allowlist = self.settings.get("extension_allowlist")
        if allowlist is not None and not isinstance(allowlist, list):
            logger.error("config_invalid_value", key="extension_allowlist",
                         type=type(allowlist).__name__)

        tick = self.settings.get("payout_tick_seconds")
        if tick is not None and (not isinstance(tick, int) or tick < 1):
            logger.error("config_invalid_value", key="payout_tick_seconds",
                         value=tick, valid=">= 1")
        return missing

    # Store
    @property
    def database_path(self) -> Path:
        """Path of the SQLite store (default ``data/lodestar.db``)."""
        configured = self.settings.get("database_path")
        if configured:
            return Path(configured).expanduser()
        return Path(self.config_dir).parent / "data" / "lodestar.db"

    # Logging
    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        return self._section("logging").get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"points": "DEBUG"}."""
        return self._section("logging").get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        return self._section("logging").get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        return self._section("logging").get("backup_count", 5)

    # Chat connector
    @property
    def chat_url(self) -> str:
        """Websocket URL of the chat server."""
        return self.settings.get("chat_url", "wss://irc-ws.chat.twitch.tv:443")

    @property
    def reconnect_max_delay(self) -> int:
        """Upper bound in seconds for the reconnect back-off (default 300)."""
        return int(self.settings.get("reconnect_max_delay", 300))

    # Extensions
    @property
    def extension_allowlist(self) -> Optional[List[str]]:
        """Extension ids allowed to load, or None to load all."""
        allowlist = self.settings.get("extension_allowlist")
        if allowlist is None or not isinstance(allowlist, list):
            return None
        return [str(a) for a in allowlist]

    def extension_settings(self, extension: str) -> dict:
        """Return the ``extensions.<extension>`` section (may be empty)."""
        section = self._section("extensions").get(extension, {})
        return section if isinstance(section, dict) else {}

    def extension_enabled(self, extension: str) -> bool:
        """Whether an extension is enabled in config (default True)."""
        return self.extension_settings(extension).get("enabled", True) is not False

    # Timers
    @property
    def payout_tick_seconds(self) -> int:
        """Period of the points payout timer in seconds (default 60)."""
        return int(self.settings.get("payout_tick_seconds", 60))

    @property
    def startup_delay_seconds(self) -> float:
        """Delay before the engine connects (default 0)."""
        return float(self.settings.get("startup_delay_seconds", 0))

    def get(self, key: str, default: Any = None) -> Any:
        """Read a raw top-level value from settings.yaml."""
        return self.settings.get(key, default)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
