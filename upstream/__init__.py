"""Access to the upstream indexing service."""

from .client import ElectrsClient

__all__ = ['ElectrsClient']
