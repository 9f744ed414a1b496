"""Tests for the dashboard data model and derived metrics."""
import pytest

from cache.snapshot import (
    Block,
    DashboardSnapshot,
    Provenance,
    average_block_time,
    coinbase_reward,
    estimate_hashrate,
    format_coins,
    parse_blocks,
)
from conftest import make_blocks


def test_hashrate_formula():
    assert estimate_hashrate(1000, 120) == pytest.approx(1000 * 2 ** 32 / 120)


def test_hashrate_with_zero_block_time():
    assert estimate_hashrate(1000, 0) == 0.0


def test_average_block_time_uses_newest_and_oldest():
    blocks = parse_blocks(make_blocks(count=4, newest_ts=10_000, spacing=90))

    avg = average_block_time(blocks, default=120)

    assert avg.value == pytest.approx(90)
    assert avg.provenance is Provenance.FRESH


def test_average_block_time_uneven_spacing():
    blocks = (
        Block(id="c", height=3, timestamp=1300),
        Block(id="b", height=2, timestamp=1250),
        Block(id="a", height=1, timestamp=1000),
    )
    assert average_block_time(blocks, default=120).value == pytest.approx(150)


@pytest.mark.parametrize("count", [0, 1])
def test_average_block_time_falls_back_to_default(count):
    blocks = parse_blocks(make_blocks(count=count))

    avg = average_block_time(blocks, default=120)

    assert avg.value == 120.0
    assert avg.provenance is Provenance.DEFAULT


def test_coinbase_reward_sums_outputs():
    tx = {
        "txid": "f" * 64,
        "vin": [{"is_coinbase": True}],
        "vout": [{"value": 4_000_000_000}, {"value": 1_000_000_000}, {}],
    }
    assert coinbase_reward(tx) == 5_000_000_000


def test_non_coinbase_has_no_reward():
    tx = {"vin": [{"is_coinbase": False, "txid": "e" * 64}], "vout": [{"value": 10}]}
    assert coinbase_reward(tx) is None
    assert coinbase_reward({"vin": [], "vout": []}) is None


def test_block_from_api():
    block = Block.from_api({
        "id": "ab" * 32,
        "height": 100,
        "timestamp": 1_700_000_000,
        "tx_count": 5,
        "size": 1000,
        "difficulty": 1234.5,
        "weight": 4000,
    })

    assert block.height == 100
    assert block.tx_count == 5
    assert block.difficulty == 1234.5
    assert block.date == "2023-11-14"


def test_block_from_api_defaults_optional_fields():
    block = Block.from_api({"id": "x", "height": 1, "timestamp": 0})
    assert block.tx_count == 0
    assert block.size == 0
    assert block.difficulty == 0.0
    assert block.date == "1970-01-01"


def test_malformed_blocks_are_rejected():
    with pytest.raises(ValueError):
        Block.from_api({"height": 1, "timestamp": 0})
    with pytest.raises(ValueError):
        parse_blocks({"error": "not a list"})


def test_snapshot_is_immutable_and_serialises_camel_case():
    blocks = parse_blocks(make_blocks(count=2))
    snapshot = DashboardSnapshot(
        tip_height=102,
        hashrate=1.5,
        avg_block_time=120.0,
        mempool_count=2,
        difficulty=1000.0,
        supply=21.0,
        block_reward=5_000_000_000,
        blocks=blocks,
        updated_at=1.0,
        provenance={"supply": Provenance.DEFAULT},
    )

    with pytest.raises(AttributeError):
        snapshot.tip_height = 5

    data = snapshot.to_dict()
    assert data["tipHeight"] == 102
    assert data["blockReward"] == 5_000_000_000
    assert data["blocks"][0]["height"] == 102
    assert data["provenance"] == {"supply": "default"}
    assert snapshot.provenance_of("supply") is Provenance.DEFAULT
    assert snapshot.provenance_of("hashrate") is Provenance.FRESH


def test_format_coins():
    assert format_coins(5_000_000_000) == "50.00000000"
    assert format_coins(0) == "0.00000000"


def test_snapshot_provenance_is_read_only():
    provenance = {"supply": Provenance.DEFAULT}
    snapshot = DashboardSnapshot(
        tip_height=1, hashrate=0.0, avg_block_time=120.0, mempool_count=0,
        difficulty=0.0, supply=0.0, block_reward=0, blocks=(), updated_at=1.0,
        provenance=provenance,
    )

    with pytest.raises(TypeError):
        snapshot.provenance["supply"] = Provenance.FRESH

    provenance["supply"] = Provenance.FRESH
    assert snapshot.provenance_of("supply") is Provenance.DEFAULT
