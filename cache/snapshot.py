"""
Live dashboard data model and the metrics derived from upstream payloads.

A DashboardSnapshot is built once per refresh cycle and never mutated
afterwards. Each derived field records where its value came from so callers
can tell a fresh value from a carried-over or default one.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

# Standard proof-of-work estimator: hashrate = difficulty * 2^32 / block time
HASHES_PER_DIFFICULTY = 2 ** 32
SATOSHIS_PER_COIN = 100_000_000


class Provenance(Enum):
    """Why a derived field has its value."""
    FRESH = "fresh"                 # derived in this cycle
    CARRIED_OVER = "carried_over"   # kept from an earlier cycle
    DEFAULT = "default"             # sub-fetch failed or data missing


@dataclass(frozen=True)
class Derived:
    value: Any
    provenance: Provenance

    @classmethod
    def fresh(cls, value: Any) -> 'Derived':
        return cls(value, Provenance.FRESH)

    @classmethod
    def carried_over(cls, value: Any) -> 'Derived':
        return cls(value, Provenance.CARRIED_OVER)

    @classmethod
    def default(cls, value: Any) -> 'Derived':
        return cls(value, Provenance.DEFAULT)


@dataclass(frozen=True)
class Block:
    """Summary of a block as listed by the indexing service."""
    id: str
    height: int
    timestamp: int
    tx_count: int = 0
    size: int = 0
    difficulty: float = 0.0

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> 'Block':
        """
        Build a Block from an upstream block object.

        Raises:
            ValueError: if id, height or timestamp is missing
        """
        try:
            return cls(
                id=str(data["id"]),
                height=int(data["height"]),
                timestamp=int(data["timestamp"]),
                tx_count=int(data.get("tx_count") or 0),
                size=int(data.get("size") or 0),
                difficulty=float(data.get("difficulty") or 0),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed block payload: {e!r}") from e

    @property
    def date(self) -> str:
        """UTC calendar day of the block timestamp (YYYY-MM-DD)."""
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).strftime("%Y-%m-%d")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DashboardSnapshot:
    tip_height: int
    hashrate: float
    avg_block_time: float
    mempool_count: int
    difficulty: float
    supply: float
    block_reward: int
    blocks: Tuple[Block, ...]
    updated_at: float
    provenance: Mapping[str, Provenance] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "provenance", MappingProxyType(dict(self.provenance)))

    def provenance_of(self, name: str) -> Provenance:
        return self.provenance.get(name, Provenance.FRESH)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise with the camelCase names used by the JSON API."""
        return {
            "tipHeight": self.tip_height,
            "hashrate": self.hashrate,
            "avgBlockTime": self.avg_block_time,
            "mempoolCount": self.mempool_count,
            "difficulty": self.difficulty,
            "supply": self.supply,
            "blockReward": self.block_reward,
            "blocks": [block.to_dict() for block in self.blocks],
            "updatedAt": self.updated_at,
            "provenance": {name: p.value for name, p in self.provenance.items()},
        }


def parse_blocks(payload: Any) -> Tuple[Block, ...]:
    """Parse the upstream /blocks list, newest first."""
    if not isinstance(payload, list):
        raise ValueError(f"Expected a list of blocks, got {type(payload).__name__}")
    return tuple(Block.from_api(item) for item in payload)


def average_block_time(blocks: Sequence[Block], default: float) -> Derived:
    """
    Average spacing of a newest-first block window.

    (newest.timestamp - oldest.timestamp) / (count - 1), or the default when
    fewer than two blocks are known.
    """
    if len(blocks) < 2:
        return Derived.default(float(default))
    span = blocks[0].timestamp - blocks[-1].timestamp
    return Derived.fresh(span / (len(blocks) - 1))


def estimate_hashrate(difficulty: float, avg_block_time: float) -> float:
    """hashrate = difficulty * 2^32 / avg_block_time"""
    if avg_block_time <= 0:
        return 0.0
    return difficulty * HASHES_PER_DIFFICULTY / avg_block_time


def coinbase_reward(tx: Mapping[str, Any]) -> Optional[int]:
    """
    Reward minted by a coinbase transaction, in the smallest unit.

    Returns None if the transaction's first input is not a coinbase.
    """
    vin = tx.get("vin") or []
    if not vin or not vin[0].get("is_coinbase"):
        return None
    return sum(int(out.get("value") or 0) for out in tx.get("vout") or [])


def format_coins(amount: int) -> str:
    return f"{amount / SATOSHIS_PER_COIN:.8f}"
