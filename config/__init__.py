"""Configuration for the chainview explorer."""

from .logging import configure_logging, log_error
from .settings import ExplorerSettings

__all__ = ['ExplorerSettings', 'configure_logging', 'log_error']
