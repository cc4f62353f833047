from __future__ import annotations

# Re-export loader helpers
from .config_loader import (
    API_KEY_ENV_VAR,
    ConfigurationError,
    get_cache_dir,
    get_config_dir,
    get_default_cache_path,
    load_config,
    resolve_api_key,
)

# Re-export config models
from .config_models import (
    SAVE_FORMATS,
    ReportConfig,
    SchedulerConfig,
    StreamerConfig,
    TrackerConfig,
    ValuationConfig,
)

__all__ = [
    # models
    "SAVE_FORMATS",
    "StreamerConfig",
    "ValuationConfig",
    "ReportConfig",
    "SchedulerConfig",
    "TrackerConfig",
    # loader
    "API_KEY_ENV_VAR",
    "ConfigurationError",
    "get_config_dir",
    "get_cache_dir",
    "get_default_cache_path",
    "load_config",
    "resolve_api_key",
]
