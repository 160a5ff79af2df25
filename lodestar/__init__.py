"""lodestar: chat command engine.

Routes chat commands through a registry of extension-provided handlers
with per-command permissions, cooldowns and point prices.
"""

__version__ = "0.4.0"
