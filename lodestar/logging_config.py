"""Logging for lodestar.

Every module logs through ``structlog.get_logger("lodestar.<subsystem>")``.
Events go to stdout, to ``lodestar.log`` and to one file per subsystem:

    lodestar.core        core.log        engine, context, event bus
    lodestar.commands    commands.log    registry, cooldowns, dispatch
    lodestar.extensions  extensions.log  loader and extension setup
    lodestar.points      points.log      balances and payouts
    lodestar.store       store.log       sqlite access
    lodestar.connector   connector.log   chat socket

Chat auth tokens are scrubbed from every event before rendering.
"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

SUBSYSTEMS = ("core", "commands", "extensions", "points", "store", "connector")

LOGGER_PREFIX = "lodestar"

DEFAULT_LOG_DIR = Path(__file__).parent.parent / "logs"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

_SECRET_PATTERNS = [
    re.compile(r"oauth:[a-zA-Z0-9]{10,}"),  # PASS line token
    re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{20,}"),
]

_REDACTED = "***REDACTED***"


def _scrub_value(value: str) -> str:
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(_REDACTED, value)
    return value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor replacing chat tokens with a placeholder.

    Looks at string values, and at strings one level inside lists,
    tuples and dicts.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _scrub_value(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = type(value)(
                _scrub_value(v) if isinstance(v, str) else v for v in value
            )
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _scrub_value(v) if isinstance(v, str) else v for k, v in value.items()
            }
    return event_dict


def subsystem_level(subsystem: str, overrides: Dict[str, str], default: int) -> int:
    """Level for ``lodestar.<subsystem>``: its override if valid, else ``default``."""
    name = str(overrides.get(subsystem, "")).upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def _rotating_file(path: Path, level: int, formatter: logging.Formatter,
                   max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _reset(name: Optional[str], level: int) -> logging.Logger:
    log = logging.getLogger(name)
    log.setLevel(level)
    log.handlers.clear()
    log.propagate = True
    return log


def setup_logging(config=None) -> None:
    """Install handlers and configure structlog.

    ``main`` calls this twice: once with no config so that config loading
    can log, and again with the loaded Config. Loggers are cached only
    after the second call, when levels and paths are final.

    If the log directory cannot be created, only the console is used.
    """
    if config is not None:
        log_dir = config.log_dir
        level = logging.getLevelName(config.logging_level.upper())
        overrides = config.logging_subsystem_levels
        max_bytes = config.logging_max_file_size_mb * 1024 * 1024
        backup_count = config.logging_backup_count
    else:
        log_dir = DEFAULT_LOG_DIR
        level = logging.INFO
        overrides = {}
        max_bytes = DEFAULT_MAX_BYTES
        backup_count = DEFAULT_BACKUP_COUNT
    if not isinstance(level, int):
        level = logging.INFO

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        write_files = True
    except OSError as exc:
        write_files = False
        print(f"WARNING: log directory {log_dir} unavailable ({exc}); logging to console only",
              file=sys.stderr)

    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    _reset(None, logging.DEBUG).addHandler(console)

    combined = _reset(LOGGER_PREFIX, logging.DEBUG)
    if write_files:
        combined.addHandler(_rotating_file(
            log_dir / "lodestar.log", level, file_formatter, max_bytes, backup_count,
        ))

    for subsystem in SUBSYSTEMS:
        sub_level = subsystem_level(subsystem, overrides, level)
        sub_logger = _reset(f"{LOGGER_PREFIX}.{subsystem}", sub_level)
        if write_files:
            sub_logger.addHandler(_rotating_file(
                log_dir / f"{subsystem}.log", sub_level, file_formatter, max_bytes, backup_count,
            ))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=config is not None,
    )
