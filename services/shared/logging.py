"""Logging setup shared by the worker and CLI entry points."""

import logging

from services.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging at the level named in settings.

    Args:
        settings: Application settings
    """
    logging.basicConfig(level=getattr(logging, settings.log_level), format=LOG_FORMAT)
