"""Exceptions raised by the explorer cache core."""
from typing import Optional


class ExplorerError(Exception):
    """Base class for explorer errors."""
    pass


class UpstreamError(ExplorerError):
    """
    A call to the indexing service failed.

    Covers network errors, timeouts, non-2xx responses and bodies that
    cannot be decoded. Recovered by aborting the current refresh cycle or
    on-demand fetch only.
    """

    def __init__(self, path: str, message: str, status: Optional[int] = None):
        self.path = path
        self.message = message
        self.status = status
        super().__init__(f"{path}: {message}")


class StorageError(ExplorerError):
    """Writing to the statistics database failed."""
    pass


class StoreNotOpenError(ExplorerError):
    """A store or service was used before open() or after close()."""
    pass
