"""
Tests for the quote cache, fingerprints and the background sweep.
"""
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from shipping_quotes.core.quote_cache import (
    InMemoryQuoteCache,
    RedisQuoteCache,
    make_fingerprint,
)
from shipping_quotes.jobs.cache_sweep import CacheSweepRunner


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


PACKAGE_A = {"id": "a", "width_cm": 20, "height_cm": 15, "length_cm": 30, "weight_kg": 1.0, "insurance_value": 0, "quantity": 1}
PACKAGE_B = {"id": "b", "width_cm": 11, "height_cm": 11, "length_cm": 16, "weight_kg": 0.3, "insurance_value": 10, "quantity": 2}

OPTIONS = [{"carrier_service_id": 1, "service_name": "PAC", "price": "25.90"}]
AUDIT = [{"rule_id": 7, "rule_type": "free_shipping", "matched": False, "applied": False}]


class TestFingerprint:
    """Content-derived cache identity."""

    def test_same_input_same_fingerprint(self):
        assert make_fingerprint("01310100", [PACKAGE_A], "production") == \
            make_fingerprint("01310100", [dict(PACKAGE_A)], "production")

    def test_package_order_does_not_matter(self):
        assert make_fingerprint("01310100", [PACKAGE_A, PACKAGE_B], "sandbox") == \
            make_fingerprint("01310100", [PACKAGE_B, PACKAGE_A], "sandbox")

    def test_package_id_is_not_part_of_identity(self):
        renamed = {**PACKAGE_A, "id": "other"}
        assert make_fingerprint("01310100", [PACKAGE_A], "sandbox") == \
            make_fingerprint("01310100", [renamed], "sandbox")

    def test_environment_and_destination_change_fingerprint(self):
        base = make_fingerprint("01310100", [PACKAGE_A], "sandbox")
        assert base != make_fingerprint("01310100", [PACKAGE_A], "production")
        assert base != make_fingerprint("20040002", [PACKAGE_A], "sandbox")

    def test_package_content_changes_fingerprint(self):
        heavier = {**PACKAGE_A, "weight_kg": 2.0}
        assert make_fingerprint("01310100", [PACKAGE_A], "sandbox") != \
            make_fingerprint("01310100", [heavier], "sandbox")


class TestInMemoryQuoteCache:
    """LRU + TTL behaviour."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return InMemoryQuoteCache(ttl_seconds=300, max_size=3, clock=clock)

    @pytest.mark.asyncio
    async def test_put_then_get_returns_stored_value(self, cache):
        await cache.put("fp1", OPTIONS, AUDIT)

        cached = await cache.get("fp1")

        assert cached is not None
        assert cached.options == OPTIONS
        assert cached.applied_rules == AUDIT
        assert cached.metadata == {}

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, cache, clock):
        await cache.put("fp1", OPTIONS, AUDIT)

        clock.advance(299)
        assert await cache.get("fp1") is not None

        clock.advance(1)
        assert await cache.get("fp1") is None

        stats = await cache.stats()
        assert stats["expired"] == 1
        assert stats["size"] == 0

    @pytest.mark.asyncio
    async def test_last_writer_wins(self, cache):
        await cache.put("fp1", OPTIONS, AUDIT)
        newer = [{"carrier_service_id": 2, "service_name": "SEDEX", "price": "40.00"}]
        await cache.put("fp1", newer, [])

        cached = await cache.get("fp1")
        assert cached.options == newer

    @pytest.mark.asyncio
    async def test_lru_eviction(self, cache):
        for fp in ("fp1", "fp2", "fp3"):
            await cache.put(fp, OPTIONS, AUDIT)

        # Touch fp1 so fp2 becomes the oldest
        await cache.get("fp1")
        await cache.put("fp4", OPTIONS, AUDIT)

        assert await cache.get("fp2") is None
        assert await cache.get("fp1") is not None
        assert (await cache.stats())["evictions"] == 1

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, cache, clock):
        await cache.put("old", OPTIONS, AUDIT)
        clock.advance(200)
        await cache.put("new", OPTIONS, AUDIT)
        clock.advance(150)

        removed = await cache.sweep()

        assert removed == 1
        assert await cache.get("new") is not None
        assert await cache.get("old") is None

    @pytest.mark.asyncio
    async def test_invalidate_and_clear(self, cache):
        await cache.put("fp1", OPTIONS, AUDIT)
        await cache.put("fp2", OPTIONS, AUDIT)

        assert await cache.invalidate("fp1") is True
        assert await cache.invalidate("fp1") is False

        await cache.clear()
        assert (await cache.stats())["size"] == 0

    @pytest.mark.asyncio
    async def test_hit_rate(self, cache):
        await cache.put("fp1", OPTIONS, AUDIT)
        await cache.get("fp1")
        await cache.get("missing")

        stats = await cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5


class TestRedisQuoteCache:
    """Redis backend stores JSON with SETEX."""

    @pytest.mark.asyncio
    async def test_put_uses_setex_with_ttl(self):
        client = MagicMock()
        client.setex = AsyncMock()
        cache = RedisQuoteCache(client, ttl_seconds=300)

        await cache.put("fp1", OPTIONS, AUDIT)

        key, ttl, payload = client.setex.call_args.args
        assert key == "shipping:quote:fp1"
        assert ttl == 300
        assert json.loads(payload)["options"] == OPTIONS

    @pytest.mark.asyncio
    async def test_metadata_survives_json_payload(self):
        client = MagicMock()
        client.setex = AsyncMock()
        cache = RedisQuoteCache(client)

        await cache.put("fp1", OPTIONS, AUDIT, metadata={"destination_state": "SP", "default_days": 2})

        client.get = AsyncMock(return_value=client.setex.call_args.args[2])
        cached = await cache.get("fp1")
        assert cached.metadata == {"destination_state": "SP", "default_days": 2}

    @pytest.mark.asyncio
    async def test_get_miss_and_hit(self):
        client = MagicMock()
        client.get = AsyncMock(side_effect=[None, json.dumps({"options": OPTIONS, "applied_rules": AUDIT})])
        cache = RedisQuoteCache(client)

        assert await cache.get("fp1") is None
        cached = await cache.get("fp1")
        assert cached.options == OPTIONS
        assert cached.applied_rules == AUDIT

    @pytest.mark.asyncio
    async def test_sweep_is_noop(self):
        cache = RedisQuoteCache(MagicMock())
        assert await cache.sweep() == 0


class TestCacheSweepRunner:
    """Background sweep job."""

    @pytest.mark.asyncio
    async def test_run_once_records_heartbeat(self):
        clock = FakeClock()
        cache = InMemoryQuoteCache(ttl_seconds=10, clock=clock)
        await cache.put("fp1", OPTIONS, AUDIT)
        clock.advance(11)

        runner = CacheSweepRunner(cache, interval_seconds=60)
        removed = await runner.run_once()

        assert removed == 1
        heartbeat = runner.heartbeat()
        assert heartbeat["last_removed"] == 1
        assert heartbeat["last_run"] is not None
        assert heartbeat["running"] is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        runner = CacheSweepRunner(InMemoryQuoteCache(), interval_seconds=3600)

        await runner.start()
        assert runner.running is True

        await runner.stop()
        assert runner.running is False
        assert runner._task is None
