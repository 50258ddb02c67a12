import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select

from pricesync.api.main import app, get_adapters, get_engine
from pricesync.db.tables import daily_median_prices
from tests.helpers import FakeAdapter

AUTH = {"Authorization": "Bearer s3cret"}


@pytest.fixture()
def adapter():
    return FakeAdapter()


@pytest.fixture()
def client(engine, adapter, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    monkeypatch.setenv("SYNC_RETRY_DELAY", "0")

    async def fake_adapters():
        yield {"stockx": adapter}

    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_adapters] = fake_adapters
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health_needs_no_credentials(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Bearer wrong"},
        {"Authorization": "Basic s3cret"},
        {"X-Cron-Secret": "wrong"},
    ],
)
def test_sync_rejects_bad_credentials(client, adapter, add_entry, headers):
    add_entry("dunk")
    response = client.post("/sync/hot", headers=headers)
    assert response.status_code == 401
    assert adapter.calls == []


def test_unconfigured_secret_rejects_everything(client, monkeypatch):
    monkeypatch.delenv("CRON_SECRET")
    response = client.post("/sync/hot", headers=AUTH)
    assert response.status_code == 401


def test_sync_returns_counts_and_refreshes_views(client, engine, add_entry):
    add_entry("dunk")
    add_entry("unmapped", mappings={})

    response = client.post("/sync/hot", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["attempted"] == 1
    assert body["succeeded"] == 1
    assert body["failed"] == 0
    assert body["skippedNoMapping"] == 1
    assert body["deferred"] == 0
    assert isinstance(body["runId"], int)
    assert "durationMs" in body
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(daily_median_prices)).scalar_one() == 2


def test_sync_accepts_cron_secret_header_and_batch_size(client, add_entry):
    for index in range(3):
        add_entry(f"entry-{index}", tier="warm")

    response = client.post("/sync/warm", params={"max_batch_size": 2}, headers={"X-Cron-Secret": "s3cret"})

    assert response.status_code == 200
    assert response.json()["attempted"] == 2


def test_unknown_tier_is_rejected(client):
    response = client.post("/sync/lukewarm", headers=AUTH)
    assert response.status_code == 422


def test_store_outage_returns_503(client, tmp_path):
    broken = create_engine(f"sqlite:///{tmp_path / 'absent' / 'db.sqlite'}", future=True)
    app.dependency_overrides[get_engine] = lambda: broken
    response = client.post("/sync/hot", headers=AUTH)
    assert response.status_code == 503


def test_refresh_and_purge_endpoints(client, add_entry):
    add_entry("dunk")
    client.post("/sync/hot", headers=AUTH)

    refreshed = client.post("/views/refresh", headers=AUTH)
    purged = client.post("/retention/purge", params={"horizon_days": 30}, headers=AUTH)

    assert refreshed.status_code == 200
    assert refreshed.json()["dailyMedians"] == 2
    assert refreshed.json()["portfolioRows"] == 0
    assert purged.status_code == 200
    assert purged.json()["rowsDeleted"] == 0


def test_reclassify_endpoint(client, add_entry):
    add_entry("never-synced", tier="cold")

    response = client.post("/tiers/reclassify", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"changed": 1, "tiers": {"hot": 0, "warm": 1, "cold": 0}}


def test_recent_runs_endpoint(client, add_entry):
    add_entry("dunk")
    client.post("/sync/hot", headers=AUTH)
    client.post("/sync/cold", headers=AUTH)

    response = client.get("/sync/runs", params={"tier": "hot"}, headers=AUTH)

    assert response.status_code == 200
    runs = response.json()["runs"]
    assert len(runs) == 1
    assert runs[0]["tier"] == "hot"
    assert runs[0]["succeeded"] == 1
    assert response.json()["failures"] == []
