import re
import time
from functools import wraps
from typing import Callable

import structlog
from prometheus_client import Counter, Gauge, Histogram

logger = structlog.get_logger()

# Cache tier metrics
CACHE_HITS = Counter(
    'chainview_cache_hits_total',
    'Total number of cache hits',
    ['cache_type']
)
CACHE_MISSES = Counter(
    'chainview_cache_misses_total',
    'Total number of cache misses',
    ['cache_type']
)
CACHE_ITEMS = Gauge(
    'chainview_cache_items',
    'Current number of entries in a cache tier',
    ['cache_type']
)

# Update Manager metrics
UPDATE_CYCLES = Counter(
    'chainview_update_cycles_total',
    'Refresh cycles by outcome',
    ['outcome']
)
UPDATE_CYCLE_DURATION = Histogram(
    'chainview_update_cycle_duration_seconds',
    'Duration of refresh cycles'
)

# Collaborator failures
UPSTREAM_ERRORS = Counter(
    'chainview_upstream_errors_total',
    'Failed calls to the indexing service',
    ['endpoint']
)
STORAGE_ERRORS = Counter(
    'chainview_storage_errors_total',
    'Failed statistics database operations',
    ['operation']
)

LIVE_CACHE = 'live'
IMMUTABLE_CACHE = 'immutable'

_ID_SEGMENT = re.compile(r'^([0-9a-fA-F]{64}|\d+)$')


def endpoint_label(path: str) -> str:
    """Collapse hashes and heights in a path so it is usable as a metric label."""
    path = path.split('?', 1)[0]
    segments = [
        ':id' if _ID_SEGMENT.match(segment) else segment
        for segment in path.split('/')
    ]
    return '/'.join(segments)


def track_cycle(func: Callable):
    """Decorator recording the duration of an async refresh cycle."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            UPDATE_CYCLE_DURATION.observe(time.perf_counter() - start_time)
    return wrapper
