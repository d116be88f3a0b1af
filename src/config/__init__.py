"""Settings models and the YAML + environment loader."""

from src.config.settings import (
    ExitPlanConfig,
    MarginConfig,
    ProtectionConfig,
    Settings,
    load_settings,
)

__all__ = ["ExitPlanConfig", "MarginConfig", "ProtectionConfig", "Settings", "load_settings"]
