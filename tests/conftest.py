import os
import sys
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import ExplorerSettings
from error_handling.errors import UpstreamError

# 2025-10-09 08:53:20 UTC
NOW = 1_760_000_000
DAY = 24 * 60 * 60


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = NOW):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    """In-memory stand-in for ElectrsClient."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.failures: Dict[str, List[Exception]] = {}
        self.gates: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    def fail_once(self, path: str, message: str = "connection refused") -> None:
        self.failures.setdefault(path, []).append(UpstreamError(path, message))

    async def fetch(self, path: str) -> Any:
        self.calls.append(path)
        gate = self.gates.get(path)
        if gate is not None:
            await gate.wait()
        if self.failures.get(path):
            raise self.failures[path].pop(0)
        value = self.responses.get(path)
        if value is None:
            raise UpstreamError(path, "HTTP 404: not found", status=404)
        if isinstance(value, Exception):
            raise value
        return value


def make_block(height: int, timestamp: int, tx_count: int = 1, size: int = 250,
               difficulty: float = 1000.0) -> Dict[str, Any]:
    return {
        "id": f"{height:064x}",
        "height": height,
        "timestamp": timestamp,
        "tx_count": tx_count,
        "size": size,
        "weight": size * 4,
        "difficulty": difficulty,
    }


def make_blocks(count: int = 3, tip: int = 102, newest_ts: int = NOW - 60,
                spacing: int = 120, difficulty: float = 1000.0) -> List[Dict[str, Any]]:
    """Upstream /blocks payload, newest first."""
    return [
        make_block(tip - i, newest_ts - i * spacing, tx_count=i + 1,
                   size=1000 * (i + 1), difficulty=difficulty)
        for i in range(count)
    ]


def coinbase_tx(txid: str = "c" * 64, outputs=(5_000_000_000,)) -> Dict[str, Any]:
    return {
        "txid": txid,
        "vin": [{"is_coinbase": True}],
        "vout": [{"value": value} for value in outputs],
    }


def upstream_responses(blocks=None, tip: Optional[int] = None, mempool=None,
                       supply: float = 21_000_000.0, reward_tx=None) -> Dict[str, Any]:
    blocks = blocks if blocks is not None else make_blocks()
    responses = {
        "/blocks": blocks,
        "/blocks/tip/height": tip if tip is not None else (blocks[0]["height"] if blocks else 0),
        "/mempool/recent": mempool if mempool is not None else [{"txid": "a" * 64}, {"txid": "b" * 64}],
        "/blockchain/getsupply": {"total_amount_float": supply},
    }
    if blocks:
        responses[f"/block/{blocks[0]['id']}/txs/0"] = [reward_tx or coinbase_tx()]
    return responses


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_clock():
    return FakeClock(start=0)


@pytest.fixture
def client():
    return FakeClient(upstream_responses())


@pytest.fixture
def settings(tmp_path):
    return ExplorerSettings(
        STATS_DB_URL=f"sqlite:///{tmp_path / 'stats.db'}",
        UPDATE_INTERVAL=10.0,
        FRESHNESS_MULTIPLIER=3.0,
        DEFAULT_BLOCK_TIME=120.0,
        DASHBOARD_BLOCKS=15,
        LIVE_CACHE_TTL=60.0,
        IMMUTABLE_CACHE_TTL=3600.0,
    )
