"""
Logging configuration.

The packaged YAML config (`src/midmeet/config/logging.yaml`) describes handlers and
formatters; the level comes from settings (`MIDMEET_LOG_LEVEL`) unless the caller
(e.g., `midmeet serve --log-level debug`) passes one explicitly.
"""

from __future__ import annotations

import copy
import logging.config

from midmeet.config.settings import get_logging_config, get_settings


def configure_logging(level: str | None = None) -> None:
    """Apply the packaged dictConfig with the effective log level."""
    config = copy.deepcopy(get_logging_config())
    effective = (level or get_settings().app.log_level).upper()

    config.setdefault("root", {})["level"] = effective
    for handler in config.get("handlers", {}).values():
        if isinstance(handler, dict) and "level" in handler:
            handler["level"] = effective

    logging.config.dictConfig(config)
