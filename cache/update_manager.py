"""
Background refresh of the live cache.

One periodic job fans out to the indexing service, derives the dashboard
metrics and publishes them to the live cache as one unit. At most one cycle
runs at a time: a timer tick or force_refresh() that finds a cycle in
flight joins it instead of starting another.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Tuple

import structlog

from config.logging import log_error
from error_handling.errors import UpstreamError
from monitoring.metrics import STORAGE_ERRORS, UPDATE_CYCLES, track_cycle
from .core import Cache, cache_key
from .snapshot import (
    Block,
    DashboardSnapshot,
    Derived,
    Provenance,
    average_block_time,
    coinbase_reward,
    estimate_hashrate,
    parse_blocks,
)

logger = structlog.get_logger()


class LiveKeys:
    """Keys of the live cache; only the Update Manager writes them."""
    DASHBOARD = 'live:dashboard'
    BLOCKS = 'live:blocks'
    TIP_HEIGHT = 'live:tipHeight'
    MEMPOOL = 'live:mempool'
    BLOCK_REWARD = 'live:blockReward'


class UpdateState(Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one refresh cycle."""
    started_at: float
    completed: bool
    snapshot: Optional[DashboardSnapshot] = None
    error: Optional[str] = None
    persisted: bool = False


class UpdateManager:
    def __init__(self, client: Any, live_cache: Cache, immutable_cache: Cache,
                 store: Any = None, interval: float = 10.0,
                 freshness_threshold: Optional[float] = None,
                 default_block_time: float = 120.0, dashboard_blocks: int = 15,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            client: Upstream client exposing `async fetch(path)`
            live_cache: Tier receiving the published snapshot
            immutable_cache: Tier receiving the coinbase transaction
            store: Statistics store exposing `save_blocks(blocks)`, or None
            interval: Seconds between timer ticks
            freshness_threshold: Staleness bound, defaults to 3 intervals
            default_block_time: Used when fewer than two blocks are returned
            dashboard_blocks: Number of blocks kept in the snapshot
            clock: Wall-clock source in epoch seconds
        """
        self.client = client
        self.live_cache = live_cache
        self.immutable_cache = immutable_cache
        self.store = store
        self.interval = interval
        self.freshness_threshold = (
            freshness_threshold if freshness_threshold is not None else interval * 3
        )
        if self.freshness_threshold <= interval:
            raise ValueError("freshness_threshold must exceed the refresh interval")
        self.default_block_time = default_block_time
        self.dashboard_blocks = dashboard_blocks
        self._clock = clock

        self._lock = asyncio.Lock()
        self._state = UpdateState.IDLE
        self._inflight: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._last_reward: Optional[int] = None

        self.last_update_time: Optional[float] = None
        self.cycles_started = 0
        self.cycles_completed = 0
        self.cycles_failed = 0
        self.cycles_skipped = 0

    @property
    def state(self) -> UpdateState:
        return self._state

    @property
    def last_block_reward(self) -> Optional[int]:
        """Last reward published, kept even after its live cache entry expires."""
        return self._last_reward

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def is_fresh(self) -> bool:
        if self.last_update_time is None:
            return False
        return self._clock() - self.last_update_time < self.freshness_threshold

    def start(self) -> None:
        """Start the periodic timer; the first cycle is triggered immediately."""
        if self.running:
            return
        logger.info("update_manager_started", interval=self.interval)
        self._timer = asyncio.create_task(self._run_timer())

    def stop(self) -> None:
        """Stop the timer. A cycle already in flight is left to finish."""
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        logger.info("update_manager_stopped")

    async def _run_timer(self) -> None:
        while True:
            self.trigger()
            await asyncio.sleep(self.interval)

    def trigger(self) -> 'asyncio.Task[CycleResult]':
        """
        Start a cycle unless one is in flight.

        Returns:
            The task of the cycle now in flight, new or existing
        """
        if self._inflight is not None and not self._inflight.done():
            self.cycles_skipped += 1
            UPDATE_CYCLES.labels(outcome='skipped').inc()
            logger.debug("update_cycle_skipped", reason="cycle_in_flight")
            return self._inflight
        self._inflight = asyncio.ensure_future(self._guarded_cycle())
        return self._inflight

    async def force_refresh(self) -> CycleResult:
        """Run a cycle now, or join the one in flight, and wait for it to settle."""
        return await asyncio.shield(self.trigger())

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, if any."""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.shield(self._inflight)

    async def _guarded_cycle(self) -> CycleResult:
        async with self._lock:
            self._state = UpdateState.REFRESHING
            self.cycles_started += 1
            started_at = self._clock()
            try:
                return await self._cycle(started_at)
            except Exception as e:
                self._record_failure(e, stage="unexpected")
                return CycleResult(started_at=started_at, completed=False, error=str(e))
            finally:
                self._state = UpdateState.IDLE

    @track_cycle
    async def _cycle(self, started_at: float) -> CycleResult:
        logger.info("update_cycle_started", cycle=self.cycles_started)

        blocks_raw, tip_raw, mempool_raw, supply_raw = await asyncio.gather(
            self.client.fetch('/blocks'),
            self.client.fetch('/blocks/tip/height'),
            self.client.fetch('/mempool/recent'),
            self.client.fetch('/blockchain/getsupply'),
            return_exceptions=True,
        )

        try:
            blocks, tip_height = self._required(blocks_raw, tip_raw)
        except (UpstreamError, ValueError, TypeError) as e:
            self._record_failure(e, stage="fetch")
            return CycleResult(started_at=started_at, completed=False, error=str(e))

        mempool = self._mempool(mempool_raw)
        supply = self._supply(supply_raw)

        avg_block_time = average_block_time(blocks, self.default_block_time)
        if blocks:
            difficulty = Derived.fresh(blocks[0].difficulty)
            hashrate = Derived(
                estimate_hashrate(difficulty.value, avg_block_time.value),
                avg_block_time.provenance,
            )
        else:
            difficulty = Derived.default(0.0)
            hashrate = Derived.default(0.0)

        reward = await self._block_reward(blocks)

        snapshot = DashboardSnapshot(
            tip_height=tip_height,
            hashrate=hashrate.value,
            avg_block_time=avg_block_time.value,
            mempool_count=len(mempool.value),
            difficulty=difficulty.value,
            supply=supply.value,
            block_reward=reward.value,
            blocks=blocks[:self.dashboard_blocks],
            updated_at=self._clock(),
            provenance={
                'hashrate': hashrate.provenance,
                'avg_block_time': avg_block_time.provenance,
                'mempool_count': mempool.provenance,
                'difficulty': difficulty.provenance,
                'supply': supply.provenance,
                'block_reward': reward.provenance,
            },
        )
        self._publish(snapshot, blocks, mempool.value, reward)

        self.last_update_time = snapshot.updated_at
        self.cycles_completed += 1
        UPDATE_CYCLES.labels(outcome='completed').inc()
        logger.info("update_cycle_completed",
                    tip_height=tip_height,
                    blocks=len(blocks),
                    mempool=snapshot.mempool_count,
                    reward_provenance=reward.provenance.value)

        persisted = await self._persist(blocks)
        return CycleResult(
            started_at=started_at,
            completed=True,
            snapshot=snapshot,
            persisted=persisted,
        )

    @staticmethod
    def _required(blocks_raw: Any, tip_raw: Any) -> Tuple[Tuple[Block, ...], int]:
        for result in (blocks_raw, tip_raw):
            if isinstance(result, BaseException):
                raise result
        return parse_blocks(blocks_raw), int(tip_raw)

    @staticmethod
    def _mempool(raw: Any) -> Derived:
        if isinstance(raw, list):
            return Derived.fresh(tuple(raw))
        logger.warning("mempool_fetch_degraded",
                       error=str(raw) if isinstance(raw, BaseException) else "unexpected payload")
        return Derived.default(())

    @staticmethod
    def _supply(raw: Any) -> Derived:
        if isinstance(raw, dict):
            try:
                return Derived.fresh(float(raw.get('total_amount_float') or 0))
            except (TypeError, ValueError):
                pass
        logger.warning("supply_fetch_degraded",
                       error=str(raw) if isinstance(raw, BaseException) else "unexpected payload")
        return Derived.default(0.0)

    async def _block_reward(self, blocks: Sequence[Block]) -> Derived:
        """
        Reward of the newest block, fetched once and then carried over.

        Only the newest block's first transaction is inspected; when it is
        not a coinbase or the fetch fails, the last known reward is kept.
        """
        cached = self.live_cache.get(LiveKeys.BLOCK_REWARD)
        if cached:
            return Derived.carried_over(cached)

        if blocks:
            path = f'/block/{blocks[0].id}/txs/0'
            try:
                txs = await self.client.fetch(path)
            except UpstreamError as e:
                logger.warning("block_reward_fetch_failed", path=path, error=e.message)
            else:
                tx = txs[0] if isinstance(txs, list) and txs else None
                reward = coinbase_reward(tx) if isinstance(tx, dict) else None
                if reward:
                    if tx.get('txid'):
                        self.immutable_cache.set(cache_key('tx', tx['txid']), tx)
                    return Derived.fresh(reward)

        if self._last_reward is not None:
            return Derived.carried_over(self._last_reward)
        return Derived.default(0)

    def _publish(self, snapshot: DashboardSnapshot, blocks: Tuple[Block, ...],
                 mempool: tuple, reward: Derived) -> None:
        # No await between these writes: readers see all of them or none.
        self.live_cache.set(LiveKeys.DASHBOARD, snapshot)
        self.live_cache.set(LiveKeys.BLOCKS, blocks)
        self.live_cache.set(LiveKeys.TIP_HEIGHT, snapshot.tip_height)
        self.live_cache.set(LiveKeys.MEMPOOL, mempool)
        if reward.provenance is not Provenance.DEFAULT:
            self.live_cache.set(LiveKeys.BLOCK_REWARD, reward.value)
            self._last_reward = reward.value

    async def _persist(self, blocks: Tuple[Block, ...]) -> bool:
        """Save blocks to the statistics store. Failures are reported, never raised."""
        if self.store is None or not blocks:
            return False
        try:
            await asyncio.to_thread(self.store.save_blocks, blocks)
        except Exception as e:
            # The snapshot is already published; nothing here may fail the cycle
            STORAGE_ERRORS.labels(operation='save_blocks').inc()
            log_error(logger, e, {"stage": "persist", "blocks": len(blocks)})
            return False
        return True

    def _record_failure(self, error: BaseException, stage: str) -> None:
        self.cycles_failed += 1
        UPDATE_CYCLES.labels(outcome='failed').inc()
        log_error(logger, error, {"stage": stage, "cycle": self.cycles_started})
