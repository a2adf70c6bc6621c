"""
Tests for HttpProbe using httpx.MockTransport.

No network access: every request is answered by an in-process handler.
"""
from __future__ import annotations

import random

import httpx
import pytest

from loadstage.exceptions import ProbeFailure
from loadstage.metrics import MetricsRegistry
from loadstage.probe import HttpProbe, IterationContext, LifecycleContext, Probe
from tests.probes.fake_probes import ok_probe


def _context(env=None, registry=None) -> IterationContext:
    return IterationContext(
        scenario="s",
        vu_id=1,
        iteration=0,
        behavior="home",
        env=env if env is not None else {"TARGET_URL": "http://target.test/"},
        rng=random.Random(0),
        recorder=(registry or MetricsRegistry()).scoped({"scenario": "s"}),
    )


class TestHttpProbe:

    @pytest.mark.asyncio
    async def test_expected_status(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": 1})

        probe = HttpProbe(
            "post",
            "/api/orders",
            expected_status=(200, 201),
            name="create_order",
            headers={"X-Token": "abc"},
            json={"sku": "A-1"},
            transport=httpx.MockTransport(handler),
        )

        result = await probe(_context())
        await probe.aclose()

        assert result.ok
        assert result.status == 201
        assert result.duration_ms >= 0
        assert result.tags == {"name": "create_order", "method": "POST", "status": "201"}
        assert result.checks == {"status is expected": True}
        assert str(seen[0].url) == "http://target.test/api/orders"
        assert seen[0].headers["X-Token"] == "abc"

    @pytest.mark.asyncio
    async def test_unexpected_status_is_failed_result(self):
        probe = HttpProbe(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )

        result = await probe(_context())
        await probe.aclose()

        assert not result.ok
        assert result.error == "unexpected status 503"
        assert result.checks == {"status is expected": False}
        assert result.tags["name"] == "GET /"

    @pytest.mark.asyncio
    async def test_transport_error_raises_probe_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        probe = HttpProbe(transport=httpx.MockTransport(handler))

        with pytest.raises(ProbeFailure, match="ConnectError") as excinfo:
            await probe(_context())
        await probe.aclose()

        assert excinfo.value.duration_ms is not None

    @pytest.mark.asyncio
    async def test_missing_base_url(self):
        probe = HttpProbe(base_url_var="SHOP_URL")

        with pytest.raises(ProbeFailure, match="SHOP_URL is not set"):
            await probe(_context(env={}))

    def test_url_for_joins_slashes(self):
        probe = HttpProbe(path="health")

        assert probe.url_for({"TARGET_URL": "http://svc:8080/"}) == "http://svc:8080/health"

    def test_probe_protocol(self):
        assert isinstance(HttpProbe(), Probe)
        assert isinstance(ok_probe, Probe)

    @pytest.mark.asyncio
    async def test_result_carries_group_tag(self):
        probe = HttpProbe(
            transport=httpx.MockTransport(lambda request: httpx.Response(200))
        )
        ctx = _context()

        with ctx.group("home"):
            result = await probe(ctx)
        await probe.aclose()

        assert result.tags["group"] == "::home"


# =============================================================================
# Groups
# =============================================================================

class TestGroups:
    """ctx.group() nests a group tag and times the block."""

    def test_nested_groups(self):
        registry = MetricsRegistry(track_tags=("group",))
        ctx = _context(registry=registry)

        with ctx.group("checkout"):
            with ctx.group("payment"):
                inner = ctx.record("cart_value", "trend", 42.0)
                assert ctx.group_path == "::checkout::payment"
            middle = ctx.record("cart_value", "trend", 10.0, {"group": "override"})
        outside = ctx.record("cart_value", "trend", 1.0)

        assert ("group", "::checkout::payment") in inner.tags
        assert ("scenario", "s") in inner.tags
        assert ("group", "override") in middle.tags
        assert "group" not in dict(outside.tags)
        assert ctx.group_path == ""
        assert registry.stat("group_duration", {"group": "::checkout::payment"}, "count") == 1
        assert registry.stat("group_duration", {"group": "::checkout"}, "count") == 1
        assert registry.stat("cart_value", {"group": "::checkout::payment"}, "avg") == 42.0

    def test_group_closed_when_block_raises(self):
        registry = MetricsRegistry(track_tags=("group",))
        ctx = _context(registry=registry)

        with pytest.raises(RuntimeError):
            with ctx.group("login"):
                raise RuntimeError("boom")

        assert ctx.group_path == ""
        assert registry.stat("group_duration", {"group": "::login"}, "count") == 1

    @pytest.mark.parametrize("name", ["", "a::b"])
    def test_invalid_group_name(self, name):
        ctx = _context()

        with pytest.raises(ValueError, match="invalid group name"):
            with ctx.group(name):
                pass

    def test_lifecycle_context_tags_its_stage(self):
        registry = MetricsRegistry(track_tags=("group",))
        ctx = LifecycleContext("setup", {}, registry.scoped())

        sample = ctx.record("accounts_created", "counter", 3)

        assert ("group", "::setup") in sample.tags
        assert registry.stat("accounts_created", {"group": "::setup"}, "count") == 3
