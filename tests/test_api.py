from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from cache.service import ExplorerCache
from explorer.app import BLOCKS_PER_PAGE, create_app
from conftest import FakeClient, coinbase_tx, make_blocks, upstream_responses


@pytest.fixture
def service(settings, client, clock, cache_clock):
    return ExplorerCache(settings, client=client, clock=clock, cache_clock=cache_clock)


@pytest.fixture
def api(settings, service):
    app = create_app(settings, service, start_updates=False)
    with TestClient(app) as test_client:
        yield test_client


def test_dashboard_refreshes_cold_cache(api):
    response = api.get("/api/dashboard")

    assert response.status_code == 200
    data = response.json()
    assert data["tipHeight"] == 102
    assert data["blockReward"] == 5_000_000_000
    assert len(data["blocks"]) == 3
    assert data["isFresh"] is True
    assert data["provenance"]["hashrate"] == "fresh"


def test_dashboard_not_ready(settings, clock, cache_clock):
    service = ExplorerCache(settings, client=FakeClient({}), clock=clock,
                            cache_clock=cache_clock)
    app = create_app(settings, service, start_updates=False)

    with TestClient(app) as api:
        response = api.get("/api/dashboard")

    assert response.status_code == 503
    assert response.json() == {"error": "Data not ready, please wait..."}


def test_recent_blocks_first_page_from_cache(api, client):
    api.get("/api/dashboard")
    client.calls.clear()

    response = api.get("/api/blocks/recent")

    assert response.status_code == 200
    data = response.json()
    assert [block["height"] for block in data["blocks"]] == [102, 101, 100]
    assert data["tipHeight"] == 102
    assert data["currentPage"] == 1
    assert data["totalPages"] == 5
    assert client.calls == []


def test_recent_blocks_later_page_from_upstream(api, client):
    start = 102 - BLOCKS_PER_PAGE
    client.responses[f"/blocks/{start}"] = make_blocks(tip=start)

    response = api.get("/api/blocks/recent", params={"page": 2})

    assert response.status_code == 200
    data = response.json()
    assert data["currentPage"] == 2
    assert data["blocks"][0]["height"] == start
    assert f"/blocks/{start}" in client.calls


def test_recent_blocks_upstream_failure(api, client):
    client.fail_once("/blocks/tip/height")

    response = api.get("/api/blocks/recent", params={"page": 3})

    assert response.status_code == 502


def test_recent_blocks_rejects_invalid_page(api):
    assert api.get("/api/blocks/recent", params={"page": 0}).status_code == 422


@pytest.mark.parametrize("days,expected", [(0, 1), (7, 7), (1000, 90)])
def test_stats_days_are_clamped(api, service, days, expected):
    service.get_daily_stats = Mock(return_value=[])

    response = api.get("/api/stats/daily", params={"days": days})

    assert response.status_code == 200
    assert response.json() == []
    service.get_daily_stats.assert_called_once_with(expected)


def test_stats_views_after_refresh(api):
    api.get("/api/dashboard")

    daily = api.get("/api/stats/daily").json()
    daily_tx = api.get("/api/stats/daily-tx").json()
    block_size = api.get("/api/stats/block-size").json()

    assert len(daily) == 1
    assert daily[0]["block_count"] == 3
    assert daily[0]["tx_count"] == 6
    assert daily_tx == [{"date": daily[0]["date"], "count": 6}]
    assert block_size == [{"date": daily[0]["date"], "avgSize": 2000}]


def test_block_reward(api):
    api.get("/api/dashboard")

    response = api.get("/api/stats/block-reward")

    assert response.json() == {"reward": 5_000_000_000, "rewardCoins": "50.00000000"}


def test_cache_info(api):
    response = api.get("/api/stats/cache-info")

    assert response.status_code == 200
    data = response.json()
    assert data["statsStore"] == {"open": True}
    assert data["updateManager"]["running"] is False
    assert data["isFresh"] is False


def test_transaction_lookup(api, client):
    tx = coinbase_tx(txid="9" * 64)
    client.responses[f"/tx/{tx['txid']}"] = tx

    first = api.get(f"/api/tx/{tx['txid']}")
    second = api.get(f"/api/tx/{tx['txid']}")

    assert first.status_code == second.status_code == 200
    assert first.json() == tx
    assert client.calls.count(f"/tx/{tx['txid']}") == 1


def test_transaction_not_found(api):
    response = api.get("/api/tx/" + "0" * 64)

    assert response.status_code == 404
    assert response.json() == {"detail": "Not found"}


def test_block_lookup_upstream_failure(api, client):
    block_hash = "1" * 64
    client.fail_once(f"/block/{block_hash}", "timed out after 10.0s")

    response = api.get(f"/api/block/{block_hash}")

    assert response.status_code == 502


def test_metrics_endpoint(api):
    api.get("/api/stats/cache-info")

    response = api.get("/metrics")

    assert response.status_code == 200
    assert "chainview_http_requests_total" in response.text
    assert "chainview_cache_items" in response.text


def test_lifespan_closes_service(settings, service, client):
    app = create_app(settings, service, start_updates=False)

    with TestClient(app):
        assert service.is_open
        assert client.connected

    assert not service.is_open
    assert not client.connected


def test_dashboard_reports_default_block_time(settings, clock, cache_clock):
    client = FakeClient(upstream_responses(blocks=make_blocks(count=1)))
    service = ExplorerCache(settings, client=client, clock=clock, cache_clock=cache_clock)
    app = create_app(settings, service, start_updates=False)

    with TestClient(app) as api:
        data = api.get("/api/dashboard").json()

    assert data["avgBlockTime"] == 120.0
    assert data["provenance"]["avg_block_time"] == "default"


def test_recent_blocks_unexpected_tip_body(api, client):
    client.responses["/blocks/tip/height"] = "<html>maintenance</html>"

    response = api.get("/api/blocks/recent", params={"page": 2})

    assert response.status_code == 502
    assert response.json() == {"detail": "Data unavailable"}
