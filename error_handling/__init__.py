from .errors import ExplorerError, StorageError, StoreNotOpenError, UpstreamError

__all__ = ['ExplorerError', 'StorageError', 'StoreNotOpenError', 'UpstreamError']
