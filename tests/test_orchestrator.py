import asyncio
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
import respx
from sqlalchemy import create_engine, func, select

from pricesync.db.tables import price_snapshots, sync_failures, sync_runs
from pricesync.errors import (
    PermanentMappingError,
    ProviderSchemaError,
    StoreUnavailableError,
    TransientProviderError,
)
from pricesync.ingest.models import ProviderConfig, Tier
from pricesync.jobs.orchestrator import SyncOrchestrator, SyncSettings
from pricesync.providers.stockx import StockXAdapter
from pricesync.utils.rate_limit import ProviderBudget, RateLimiter
from tests.helpers import FakeAdapter, hours_ago, mapping_row


def settings(**overrides) -> SyncSettings:
    values = {"parallelism": 5, "retry_attempts": 3, "retry_delay": 0.0, "fetch_timeout": 5.0, "batch_deadline": 60.0}
    values.update(overrides)
    return SyncSettings(**values)


def transient(external_id: str) -> TransientProviderError:
    return TransientProviderError("stockx timed out", provider="stockx", external_id=external_id)


def snapshot_count(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(price_snapshots)).scalar_one()


@pytest.mark.asyncio
async def test_hot_batch_with_one_transient_timeout(engine, add_entry):
    stale = hours_ago(5)
    first = add_entry("one", last_synced_at=stale)
    second = add_entry("two", last_synced_at=stale)
    third = add_entry("three", last_synced_at=stale)
    adapter = FakeAdapter(errors={"sx-three": [transient("sx-three")] * 3})
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT, max_batch_size=3)

    assert (result.attempted, result.succeeded, result.failed, result.skipped_no_mapping) == (3, 2, 1, 0)
    assert adapter.calls.count("sx-three") == 3
    assert mapping_row(engine, first)["last_synced_at"] > stale
    assert mapping_row(engine, second)["last_synced_at"] > stale
    assert mapping_row(engine, third)["last_synced_at"] == stale
    assert snapshot_count(engine) == 4

    following = orchestrator.catalog.select_batch(Tier.HOT, 3, providers=["stockx"])
    assert following[0].id == third


@pytest.mark.asyncio
async def test_batch_selects_stalest_entries_first(engine, add_entry):
    oldest = add_entry("oldest", last_synced_at=hours_ago(30))
    add_entry("recent", last_synced_at=hours_ago(2))
    middle = add_entry("middle", last_synced_at=hours_ago(10))
    never = add_entry("never")
    adapter = FakeAdapter()
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    result = await orchestrator.run_sync_batch("hot", max_batch_size=3)

    assert [outcome.entry_id for outcome in result.outcomes] == [never, oldest, middle]
    assert "sx-recent" not in adapter.calls


@pytest.mark.asyncio
async def test_entries_synced_within_tier_interval_are_not_due(engine, add_entry):
    add_entry("fresh", last_synced_at=hours_ago(0.25))
    adapter = FakeAdapter()
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.attempted == 0
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_failures_are_isolated_per_entry(engine, add_entry):
    broken = add_entry("broken")
    healthy = add_entry("healthy")
    schema_error = ProviderSchemaError("stockx payload drifted", provider="stockx", external_id="sx-broken")
    adapter = FakeAdapter(errors={"sx-broken": [schema_error]})
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.succeeded == 1
    assert result.failed == 1
    assert adapter.calls.count("sx-broken") == 1
    broken_mapping = mapping_row(engine, broken)
    assert broken_mapping["last_synced_at"] is None
    assert "drifted" in broken_mapping["last_error"]
    assert mapping_row(engine, healthy)["last_synced_at"] is not None
    with engine.connect() as conn:
        failure = conn.execute(select(sync_failures)).mappings().one()
    assert failure["entry_id"] == broken
    assert failure["kind"] == "provider"
    assert failure["run_id"] == result.run_id


@pytest.mark.asyncio
async def test_permanent_error_invalidates_mapping(engine, add_entry):
    entry = add_entry("gone")
    missing = PermanentMappingError("stockx responded 404", provider="stockx", external_id="sx-gone", status_code=404)
    adapter = FakeAdapter(errors={"sx-gone": [missing]})
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    first = await orchestrator.run_sync_batch(Tier.HOT)
    second = await orchestrator.run_sync_batch(Tier.HOT)

    assert first.failed == 1
    assert adapter.calls == ["sx-gone"]
    mapping = mapping_row(engine, entry)
    assert mapping["is_valid"] is False
    assert "404" in mapping["invalid_reason"]
    assert second.skipped_no_mapping == 1
    assert second.attempted == 0


@pytest.mark.asyncio
async def test_transient_errors_are_retried(engine, add_entry):
    entry = add_entry("flaky")
    adapter = FakeAdapter(errors={"sx-flaky": [transient("sx-flaky"), transient("sx-flaky")]})
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.succeeded == 1
    assert adapter.calls == ["sx-flaky"] * 3
    assert mapping_row(engine, entry)["last_synced_at"] is not None


@pytest.mark.asyncio
async def test_slow_fetch_counts_as_transient_failure(engine, add_entry):
    entry = add_entry("slow")
    adapter = FakeAdapter(delay=0.5)
    orchestrator = SyncOrchestrator(
        engine, {"stockx": adapter}, settings=settings(fetch_timeout=0.05, retry_attempts=1)
    )

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.failed == 1
    assert result.outcomes[0].failures[0]["kind"] == "transient"
    assert mapping_row(engine, entry)["last_synced_at"] is None


@pytest.mark.asyncio
async def test_entries_without_mappings_are_skipped(engine, add_entry):
    add_entry("unmapped", mappings={})
    add_entry("mapped")
    orchestrator = SyncOrchestrator(engine, {"stockx": FakeAdapter()}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.skipped_no_mapping == 1
    assert result.attempted == 1
    assert result.succeeded == 1


@pytest.mark.asyncio
async def test_second_trigger_while_running_is_rejected(engine, add_entry):
    add_entry("busy")
    adapter = FakeAdapter()
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())
    assert orchestrator.ledger.acquire_lock(Tier.HOT, "other-worker", ttl=timedelta(minutes=15))

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.status == "already_running"
    assert adapter.calls == []
    warm = await orchestrator.run_sync_batch(Tier.WARM)
    assert warm.status == "completed"


@pytest.mark.asyncio
async def test_expired_lock_is_reclaimed(engine, add_entry):
    add_entry("after-crash")
    orchestrator = SyncOrchestrator(engine, {"stockx": FakeAdapter()}, settings=settings())
    orchestrator.ledger.acquire_lock(Tier.HOT, "crashed-worker", ttl=timedelta(minutes=15), now=hours_ago(1))

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.status == "completed"
    assert result.succeeded == 1
    assert orchestrator.ledger.acquire_lock(Tier.HOT, "next", ttl=timedelta(minutes=15))


@pytest.mark.asyncio
async def test_parallelism_is_bounded(engine, add_entry):
    for index in range(6):
        add_entry(f"entry-{index}")
    adapter = FakeAdapter(delay=0.05)
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings(parallelism=2))

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.succeeded == 6
    assert adapter.peak <= 2


@pytest.mark.asyncio
async def test_entries_past_deadline_are_deferred(engine, add_entry):
    add_entry("late-1")
    add_entry("late-2")
    adapter = FakeAdapter()
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings(batch_deadline=0))

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.deferred == 2
    assert result.attempted == 0
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_quotes_for_unknown_sizes_are_dropped(engine, add_entry):
    add_entry("partial", sizes=("9",))
    adapter = FakeAdapter(sizes=("9", "15"))
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT)

    assert result.succeeded == 1
    assert result.snapshots_written == 1
    assert snapshot_count(engine) == 1


@pytest.mark.asyncio
async def test_run_outcome_is_persisted(engine, add_entry):
    add_entry("tracked")
    orchestrator = SyncOrchestrator(engine, {"stockx": FakeAdapter()}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT)

    with engine.connect() as conn:
        run = conn.execute(select(sync_runs).where(sync_runs.c.id == result.run_id)).mappings().one()
    assert run["status"] == "completed"
    assert run["tier"] == "hot"
    assert run["succeeded"] == 1
    assert run["snapshots_written"] == 2
    assert run["finished_at"] is not None


@pytest.mark.asyncio
async def test_unreachable_store_aborts_batch(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'pricesync.db'}", future=True)
    orchestrator = SyncOrchestrator(engine, {"stockx": FakeAdapter()}, settings=settings())

    with pytest.raises(StoreUnavailableError):
        await orchestrator.run_sync_batch(Tier.HOT)


STOCKX_MARKET_DATA = "https://api.stockx.com/v2/catalog/products/{}/market-data"
STOCKX_BODY = (Path(__file__).parent / "fixtures" / "http" / "stockx" / "market_data_gbp.json").read_text()


def stockx_adapter(session, limiter=None) -> StockXAdapter:
    config = ProviderConfig(key="stockx", base_url="https://api.stockx.com", regions=["UK"], rate=None)
    return StockXAdapter(config, session=session, rate_limiter=limiter)


async def hold_permit(limiter: RateLimiter, seconds: float) -> None:
    async with limiter.acquire("stockx"):
        await asyncio.sleep(seconds)


@pytest.mark.asyncio
async def test_unexpected_adapter_error_is_isolated(engine, add_entry):
    good = add_entry("good")
    bad = add_entry("bad")
    adapter = FakeAdapter(errors={"sx-bad": [AttributeError("'list' object has no attribute 'get'")]})
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    result = await orchestrator.run_sync_batch(Tier.HOT, 2)

    assert (result.attempted, result.succeeded, result.failed) == (2, 1, 1)
    failed = next(outcome for outcome in result.outcomes if outcome.entry_id == bad)
    assert failed.failures[0]["kind"] == "unexpected"
    assert mapping_row(engine, good)["last_synced_at"] is not None
    assert "AttributeError" in mapping_row(engine, bad)["last_error"]
    with engine.connect() as conn:
        run = conn.execute(select(sync_runs).where(sync_runs.c.id == result.run_id)).mappings().one()
    assert run["status"] == "completed"


@pytest.mark.asyncio
async def test_drifted_payload_fails_only_its_entry(engine, add_entry):
    good = add_entry("good")
    bad = add_entry("bad")
    async with respx.mock(assert_all_called=True) as router:
        router.get(STOCKX_MARKET_DATA.format("sx-good")).mock(return_value=httpx.Response(200, text=STOCKX_BODY))
        router.get(STOCKX_MARKET_DATA.format("sx-bad")).mock(
            return_value=httpx.Response(200, json=[{"variantId": "v-1", "variantValue": {"uk": "9"}}])
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            orchestrator = SyncOrchestrator(engine, {"stockx": stockx_adapter(session)}, settings=settings())
            result = await orchestrator.run_sync_batch(Tier.HOT, 2)

    assert (result.attempted, result.succeeded, result.failed) == (2, 1, 1)
    failed = next(outcome for outcome in result.outcomes if outcome.entry_id == bad)
    assert failed.failures[0]["kind"] == "provider"
    assert "non-scalar size" in failed.failures[0]["reason"]
    assert mapping_row(engine, good)["last_synced_at"] is not None
    assert snapshot_count(engine) == 1


@pytest.mark.asyncio
async def test_waiting_for_a_permit_does_not_use_up_the_fetch_timeout(engine, add_entry):
    entry = add_entry("queued")
    limiter = RateLimiter({"stockx": ProviderBudget(rate=None, max_concurrent=1, max_wait=2.0)})
    holder = asyncio.create_task(hold_permit(limiter, 0.2))
    await asyncio.sleep(0)
    async with respx.mock(assert_all_called=True) as router:
        router.get(STOCKX_MARKET_DATA.format("sx-queued")).mock(return_value=httpx.Response(200, text=STOCKX_BODY))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            orchestrator = SyncOrchestrator(
                engine,
                {"stockx": stockx_adapter(session, limiter)},
                settings=settings(fetch_timeout=0.1, retry_attempts=1),
            )
            result = await orchestrator.run_sync_batch(Tier.HOT)
    await holder

    assert result.succeeded == 1
    assert mapping_row(engine, entry)["last_synced_at"] is not None


@pytest.mark.asyncio
async def test_exhausted_permit_wait_is_reported_as_rate_limited(engine, add_entry):
    entry = add_entry("starved")
    limiter = RateLimiter({"stockx": ProviderBudget(rate=None, max_concurrent=1, max_wait=0.05)})
    holder = asyncio.create_task(hold_permit(limiter, 1.0))
    await asyncio.sleep(0)
    async with respx.mock(assert_all_called=False) as router:
        route = router.get(STOCKX_MARKET_DATA.format("sx-starved")).mock(
            return_value=httpx.Response(200, text=STOCKX_BODY)
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            orchestrator = SyncOrchestrator(
                engine,
                {"stockx": stockx_adapter(session, limiter)},
                settings=settings(fetch_timeout=5.0, retry_attempts=1),
            )
            result = await orchestrator.run_sync_batch(Tier.HOT)
    holder.cancel()

    assert result.failed == 1
    assert result.outcomes[0].failures[0]["kind"] == "rate_limited"
    assert not route.called
    assert mapping_row(engine, entry)["last_synced_at"] is None


@pytest.mark.asyncio
async def test_batch_size_below_one_is_rejected(engine, add_entry):
    add_entry("dunk")
    adapter = FakeAdapter()
    orchestrator = SyncOrchestrator(engine, {"stockx": adapter}, settings=settings())

    with pytest.raises(ValueError):
        await orchestrator.run_sync_batch(Tier.HOT, 0)

    assert adapter.calls == []
    assert orchestrator.ledger.acquire_lock(Tier.HOT, "next", ttl=timedelta(minutes=15))
