from .settings import (
    DatabaseSettings,
    RegistrySettings,
    WatchSettings,
    Settings,
    get_settings,
    reload_settings,
)

__all__ = [
    "DatabaseSettings",
    "RegistrySettings",
    "WatchSettings",
    "Settings",
    "get_settings",
    "reload_settings",
]
