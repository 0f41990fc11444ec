"""Configuration and logging setup."""

from strangler.config.base import Config, get_config, reset_config
from strangler.config.logging import log_position_event, setup_logging

__all__ = [
    "Config",
    "get_config",
    "reset_config",
    "setup_logging",
    "log_position_event",
]
