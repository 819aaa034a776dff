from .settings import Settings, CompletionConfig, get_settings, reload_settings
from .logging_setup import configure_logging

__all__ = ["Settings", "CompletionConfig", "get_settings", "reload_settings", "configure_logging"]
