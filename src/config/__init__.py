"""
hproxy Configuration Module
Centralized configuration management using pydantic-settings.
"""

from src.config.settings import (
    ProxySettings,
    ServerSettings,
    get_settings,
    load_proxy_settings,
)
from src.config.logging import configure_logging

__all__ = [
    "ProxySettings",
    "ServerSettings",
    "get_settings",
    "load_proxy_settings",
    "configure_logging",
]
