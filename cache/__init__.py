"""
Explorer caching module.

Two in-memory tiers (live dashboard data and immutable objects addressed by
hash) kept warm by a single-flight Update Manager. The service facade and
the Update Manager are imported from cache.service and cache.update_manager.
"""

from .core import Cache, cache_key
from .snapshot import (
    Block,
    DashboardSnapshot,
    Derived,
    Provenance,
    average_block_time,
    coinbase_reward,
    estimate_hashrate,
)

__all__ = [
    'Cache',
    'cache_key',
    'Block',
    'DashboardSnapshot',
    'Derived',
    'Provenance',
    'average_block_time',
    'coinbase_reward',
    'estimate_hashrate',
]
