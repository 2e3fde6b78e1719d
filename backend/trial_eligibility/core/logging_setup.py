import logging

from .config import settings


def setup_logging(level: str = None):
    """Configures global logging based on settings in config.py."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format=settings.LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S"
    )
