"""
Explorer cache service.

ExplorerCache wires the two cache tiers, the upstream client, the Update
Manager and the statistics store together and is the only object request
handlers talk to. Lifecycle: construct, `await open()`, use, `await close()`.
"""
import asyncio
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from config.settings import ExplorerSettings
from error_handling.errors import StorageError, StoreNotOpenError, UpstreamError
from monitoring.metrics import IMMUTABLE_CACHE, LIVE_CACHE
from stats.store import DailyStatsRecord, StatisticsStore
from upstream.client import ElectrsClient
from .core import Cache
from .snapshot import Block, DashboardSnapshot, Provenance, format_coins, parse_blocks
from .update_manager import CycleResult, LiveKeys, UpdateManager

logger = structlog.get_logger()

# Objects addressed by hash never change once they exist
IMMUTABLE_PATH = re.compile(r'^/(tx|block)/[a-f0-9]{64}')


class ExplorerCache:
    def __init__(self, settings: Optional[ExplorerSettings] = None,
                 client: Any = None, store: Optional[StatisticsStore] = None,
                 clock: Callable[[], float] = time.time,
                 cache_clock: Callable[[], float] = time.monotonic):
        """
        Args:
            settings: Explorer settings, read from the environment if None
            client: Upstream client, an ElectrsClient for ELECTRS_API if None
            store: Statistics store, one for STATS_DB_URL if None
            clock: Wall-clock source for freshness, snapshots and retention
            cache_clock: Time source for cache TTLs
        """
        self.settings = settings or ExplorerSettings()
        s = self.settings
        self._clock = clock

        self.live_cache = Cache(max_size=s.LIVE_CACHE_MAX_SIZE, ttl=s.LIVE_CACHE_TTL,
                                name=LIVE_CACHE, clock=cache_clock)
        self.immutable_cache = Cache(max_size=s.IMMUTABLE_CACHE_MAX_SIZE,
                                     ttl=s.IMMUTABLE_CACHE_TTL,
                                     name=IMMUTABLE_CACHE, clock=cache_clock)
        self.client = client or ElectrsClient(s.ELECTRS_API, timeout=s.REQUEST_TIMEOUT)
        self.store = store or StatisticsStore(s.STATS_DB_URL,
                                              retention_days=s.STATS_RETENTION_DAYS,
                                              clock=clock)
        self.manager = UpdateManager(
            self.client,
            self.live_cache,
            self.immutable_cache,
            store=self.store,
            interval=s.UPDATE_INTERVAL,
            freshness_threshold=s.freshness_threshold,
            default_block_time=s.DEFAULT_BLOCK_TIME,
            dashboard_blocks=s.DASHBOARD_BLOCKS,
            clock=clock,
        )
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, start_updates: bool = True) -> None:
        """
        Connect the upstream client, open the statistics store and start
        the Update Manager.

        A store that cannot be opened leaves the statistics views empty;
        live data keeps working.
        """
        if self._open:
            return
        await self.client.connect()
        try:
            await asyncio.to_thread(self.store.open)
        except StorageError as e:
            logger.error("stats_store_unavailable", error=str(e))
        self._open = True
        if start_updates:
            self.manager.start()
        logger.info("explorer_cache_opened", updates=start_updates)

    async def close(self) -> None:
        if not self._open:
            return
        self.manager.stop()
        await self.manager.wait_idle()
        await self.client.close()
        await asyncio.to_thread(self.store.close)
        self._open = False
        logger.info("explorer_cache_closed")

    # Live tier: read-only for callers

    def get_dashboard(self) -> Optional[DashboardSnapshot]:
        return self.live_cache.get(LiveKeys.DASHBOARD)

    def get_blocks(self) -> Optional[Tuple[Block, ...]]:
        return self.live_cache.get(LiveKeys.BLOCKS)

    def get_tip_height(self) -> Optional[int]:
        return self.live_cache.get(LiveKeys.TIP_HEIGHT)

    def get_mempool(self) -> Optional[tuple]:
        return self.live_cache.get(LiveKeys.MEMPOOL)

    def get_block_reward(self) -> Optional[int]:
        return self.live_cache.get(LiveKeys.BLOCK_REWARD)

    def last_update_time(self) -> Optional[float]:
        return self.manager.last_update_time

    def is_fresh(self) -> bool:
        return self.manager.is_fresh()

    async def force_refresh(self) -> CycleResult:
        return await self.manager.force_refresh()

    # Immutable tier

    def get_immutable(self, key: str) -> Optional[Any]:
        return self.immutable_cache.get(key)

    def set_immutable(self, key: str, value: Any) -> None:
        self.immutable_cache.set(key, value)

    async def fetch(self, path: str) -> Any:
        """
        Fetch a path for a request handler, consulting the immutable tier first.

        Raises:
            UpstreamError: on a miss that the indexing service cannot answer
        """
        cached = self.get_immutable(path)
        if cached is not None:
            return cached

        data = await self.client.fetch(path)
        if IMMUTABLE_PATH.match(path):
            self.set_immutable(path, data)
        return data

    async def dashboard_or_fallback(self) -> Optional[DashboardSnapshot]:
        """
        Cached snapshot, else a forced refresh, else a minimal direct fetch.

        Returns:
            A complete snapshot, or None when every path failed
        """
        snapshot = self.get_dashboard()
        if snapshot is not None:
            return snapshot

        logger.info("dashboard_cache_empty", action="force_refresh")
        await self.force_refresh()
        snapshot = self.get_dashboard()
        if snapshot is not None:
            return snapshot

        try:
            blocks_raw, tip_raw = await asyncio.gather(
                self.client.fetch('/blocks'),
                self.client.fetch('/blocks/tip/height'),
            )
            blocks = parse_blocks(blocks_raw)
            tip_height = int(tip_raw)
        except (UpstreamError, ValueError, TypeError) as e:
            logger.error("dashboard_fallback_failed", error=str(e))
            return None

        return DashboardSnapshot(
            tip_height=tip_height,
            hashrate=0.0,
            avg_block_time=float(self.settings.DEFAULT_BLOCK_TIME),
            mempool_count=0,
            difficulty=blocks[0].difficulty if blocks else 0.0,
            supply=0.0,
            block_reward=0,
            blocks=blocks[:self.settings.DASHBOARD_BLOCKS],
            updated_at=self._clock(),
            provenance={
                'hashrate': Provenance.DEFAULT,
                'avg_block_time': Provenance.DEFAULT,
                'mempool_count': Provenance.DEFAULT,
                'difficulty': Provenance.FRESH if blocks else Provenance.DEFAULT,
                'supply': Provenance.DEFAULT,
                'block_reward': Provenance.DEFAULT,
            },
        )

    def block_reward_info(self) -> Dict[str, Any]:
        reward = self.get_block_reward() or self.manager.last_block_reward or 0
        return {"reward": reward, "rewardCoins": format_coins(reward)}

    # Statistics store: synchronous, call from a worker thread

    def get_daily_stats(self, days: int = 7) -> List[DailyStatsRecord]:
        return self._read_stats(self.store.daily_stats, days)

    def get_daily_tx_counts(self, days: int = 7) -> List[Dict[str, Any]]:
        return self._read_stats(self.store.daily_tx_counts, days)

    def get_daily_block_sizes(self, days: int = 7) -> List[Dict[str, Any]]:
        return self._read_stats(self.store.daily_block_sizes, days)

    def _read_stats(self, query: Callable[[int], list], days: int) -> list:
        if not self.store.is_open:
            return []
        try:
            return query(days)
        except (SQLAlchemyError, StoreNotOpenError) as e:
            logger.error("stats_read_failed", query=query.__name__, error=str(e))
            return []

    def cache_info(self) -> Dict[str, Any]:
        return {
            "live": self.live_cache.get_stats(),
            "immutable": self.immutable_cache.get_stats(),
            "lastUpdateTime": self.manager.last_update_time,
            "isFresh": self.is_fresh(),
            "updateManager": {
                "state": self.manager.state.value,
                "running": self.manager.running,
                "interval": self.manager.interval,
                "cyclesStarted": self.manager.cycles_started,
                "cyclesCompleted": self.manager.cycles_completed,
                "cyclesFailed": self.manager.cycles_failed,
                "cyclesSkipped": self.manager.cycles_skipped,
            },
            "statsStore": {"open": self.store.is_open},
        }
