from .logging import setup_logger
from .loop import (
    bootstrap_dependencies,
    build_session_reporter,
    log_startup_summary,
    run_rescue_runtime,
)
from .settings import AppSettings, SettingsError

__all__ = [
    "AppSettings",
    "SettingsError",
    "bootstrap_dependencies",
    "build_session_reporter",
    "log_startup_summary",
    "run_rescue_runtime",
    "setup_logger",
]
