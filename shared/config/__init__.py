"""
Configuration module: Settings and logging.
"""

from shared.config.settings import settings, get_settings

__all__ = ["settings", "get_settings"]
