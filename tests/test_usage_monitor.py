"""
Tests for quota monitoring in core.usage_monitor.
"""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from omnichat.core.provider_manager.types import BackendFamily
from omnichat.core.usage_monitor import (
    ANTHROPIC_USAGE_URL,
    MINIMAX_USAGE_URL,
    ZAI_USAGE_URL,
    UsageMonitor,
    UsageTarget,
    extract_generic_usage,
    extract_percent,
    extract_plan,
    extract_reset_time,
    parse_iso_millis,
)

ZAI_OK = {
    "success": True,
    "code": 200,
    "data": {
        "planName": "Pro",
        "limits": [
            {"type": "TOKENS_LIMIT", "unit": 3, "number": 5, "percentage": 42, "nextResetTime": 1760000000000},
            {"type": "TIME_LIMIT", "percentage": 10},
        ],
    },
}


def _millis(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


class TestZAIUsage:
    """Tests for the Z.AI quota endpoint."""

    @pytest.mark.asyncio
    async def test_token_and_time_windows(self, make_client):
        """Test both limit types map to windows with the plan name."""
        # Arrange
        client, recorder = make_client(lambda request: httpx.Response(200, json=ZAI_OK))
        monitor = UsageMonitor(client=client)

        # Act
        snapshot = await monitor.fetch(BackendFamily.ZHIPU_CODING, "zai-key")

        # Assert
        assert snapshot.error is None
        assert snapshot.plan == "Pro"
        assert [(w.label, w.used_percent, w.reset_at) for w in snapshot.windows] == [
            ("5h", 42.0, 1760000000000),
            ("Time", 10.0, None),
        ]
        assert str(recorder.last_request.url) == ZAI_USAGE_URL
        assert recorder.last_request.headers["Authorization"] == "Bearer zai-key"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_api_failure_message(self, make_client):
        """Test success false reports the API message."""
        body = {"success": False, "code": 1001, "msg": "Invalid token"}
        client, _ = make_client(lambda request: httpx.Response(200, json=body))

        snapshot = await UsageMonitor(client=client).fetch_zai_usage("k")

        assert snapshot.error == "Invalid token"
        assert not snapshot.has_data
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error(self, make_client):
        """Test non-200 statuses become errors."""
        client, _ = make_client(lambda request: httpx.Response(401))
        snapshot = await UsageMonitor(client=client).fetch_zai_usage("k")
        assert snapshot.error == "HTTP 401"
        await client.aclose()


class TestAnthropicUsage:
    """Tests for the Anthropic OAuth usage endpoint."""

    @pytest.mark.asyncio
    async def test_five_hour_and_weekly_windows(self, make_client):
        """Test utilization values and ISO reset times."""
        # Arrange
        body = {
            "five_hour": {"utilization": 37.5, "resets_at": "2026-03-01T12:00:00Z"},
            "seven_day": {"utilization": 120},
        }
        client, recorder = make_client(lambda request: httpx.Response(200, json=body))

        # Act
        snapshot = await UsageMonitor(client=client).fetch(BackendFamily.ANTHROPIC, "oauth-token")

        # Assert
        assert [w.label for w in snapshot.windows] == ["5h", "Week"]
        assert snapshot.windows[0].reset_at == _millis(2026, 3, 1, 12)
        assert snapshot.windows[1].used_percent == 100.0
        assert str(recorder.last_request.url) == ANTHROPIC_USAGE_URL
        assert recorder.last_request.headers["anthropic-beta"] == "oauth-2025-04-20"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_message_from_body(self, make_client):
        """Test the API error message is preferred over the status code."""
        body = {"error": {"type": "authentication_error", "message": "OAuth token has expired"}}
        client, _ = make_client(lambda request: httpx.Response(403, json=body))

        snapshot = await UsageMonitor(client=client).fetch_anthropic_usage("t")

        assert snapshot.error == "OAuth token has expired"
        await client.aclose()


class TestMiniMaxUsage:
    """Tests for the MiniMax coding plan endpoint."""

    @pytest.mark.asyncio
    async def test_used_total_pair(self, make_client):
        """Test generic extraction from the data object."""
        # Arrange
        body = {
            "base_resp": {"status_code": 0},
            "data": {"used": 25, "total": 100, "plan": "Starter", "reset_at": 1760000000},
        }
        client, recorder = make_client(lambda request: httpx.Response(200, json=body))

        # Act
        snapshot = await UsageMonitor(client=client).fetch("minimax", "mm-key")

        # Assert
        window = snapshot.primary_window
        assert window.used_percent == 25.0
        assert window.reset_at == 1760000000000
        assert snapshot.plan == "Starter"
        assert str(recorder.last_request.url) == MINIMAX_USAGE_URL
        await client.aclose()

    @pytest.mark.asyncio
    async def test_status_code_error(self, make_client):
        """Test a non-zero base_resp status is an error."""
        body = {"base_resp": {"status_code": 1004, "status_msg": "invalid api key"}}
        client, _ = make_client(lambda request: httpx.Response(200, json=body))
        snapshot = await UsageMonitor(client=client).fetch_minimax_usage("k")
        assert snapshot.error == "invalid api key"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unknown_shape(self, make_client):
        """Test payloads without usage fields are reported as unsupported."""
        client, _ = make_client(lambda request: httpx.Response(200, json={"foo": 1}))
        snapshot = await UsageMonitor(client=client).fetch_minimax_usage("k")
        assert snapshot.error == "Unsupported response format"
        await client.aclose()


class TestFetchFailures:
    """Tests for unsupported families and transport failures."""

    @pytest.mark.asyncio
    async def test_unsupported_family(self):
        """Test families without a quota API."""
        snapshot = await UsageMonitor().fetch(BackendFamily.GROQ, "k")
        assert snapshot.error == "Usage monitoring not supported"
        assert snapshot.provider == "groq"

    @pytest.mark.asyncio
    async def test_transport_error_never_raises(self, make_client, loguru_caplog):
        """Test connection failures are returned in the snapshot."""
        # Arrange
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(refuse)

        # Act
        snapshot = await UsageMonitor(client=client).fetch(BackendFamily.ZHIPU, "k")

        # Assert
        assert snapshot.error == "connection refused"
        assert "Failed to fetch Z.AI usage" in loguru_caplog.text
        await client.aclose()


class TestGenericExtractors:
    """Tests for the best-effort field readers."""

    def test_ratio_and_percent(self):
        """Test ratios at or below 1 are scaled to percent."""
        assert extract_percent({"used_rate": 0.25}) == 25.0
        assert extract_percent({"usagePercent": 40}) == 40.0

    def test_used_total(self):
        """Test the used/total fallback and a zero total."""
        assert extract_percent({"usedTokens": 30, "limit": 120}) == 25.0
        assert extract_percent({"used": 1, "total": 0}) is None
        assert extract_percent({"used": True, "total": 2}) is None

    def test_reset_time_units(self):
        """Test seconds, milliseconds and ISO strings."""
        assert extract_reset_time({"resetAt": 1700000000}) == 1700000000000
        assert extract_reset_time({"reset_at": 1700000000000}) == 1700000000000
        assert extract_reset_time({"expires_at": "2026-03-01T12:00:00Z"}) == _millis(2026, 3, 1, 12)
        assert extract_reset_time({}) is None

    def test_plan_and_window(self):
        """Test plan lookup and window construction."""
        assert extract_plan({"tier": "max"}) == "max"
        assert extract_plan({"plan": ""}) is None
        window = extract_generic_usage({"usage_ratio": 0.5}, label="Day")
        assert (window.label, window.used_percent, window.reset_at) == ("Day", 50.0, None)
        assert extract_generic_usage({}) is None

    def test_parse_iso_millis(self):
        """Test fractional seconds, naive times and invalid input."""
        assert parse_iso_millis("2026-03-01T12:00:00.500Z") == _millis(2026, 3, 1, 12) + 500
        assert parse_iso_millis("2026-03-01T12:00:00") == _millis(2026, 3, 1, 12)
        assert parse_iso_millis("not a date") is None


class TestCachingAndScheduling:
    """Tests for cached snapshots, the in-flight guard and the periodic loop."""

    @pytest.mark.asyncio
    async def test_needs_refresh_after_interval(self, make_client):
        """Test staleness is measured from the snapshot fetch time."""
        # Arrange
        client, _ = make_client(lambda request: httpx.Response(200, json=ZAI_OK))
        monitor = UsageMonitor(client=client, refresh_interval=300)
        assert monitor.needs_refresh("p1")

        # Act
        snapshot = await monitor.refresh("p1", BackendFamily.ZHIPU, "k")

        # Assert
        assert monitor.latest("p1") is snapshot
        assert not monitor.needs_refresh("p1", now=snapshot.fetched_at + 299)
        assert monitor.needs_refresh("p1", now=snapshot.fetched_at + 300)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_not_duplicated(self, make_client):
        """Test a second refresh while one is running returns the cached value."""
        # Arrange
        gate = asyncio.Event()

        async def slow(request):
            await gate.wait()
            return httpx.Response(200, json=ZAI_OK)

        client, recorder = make_client(slow)
        monitor = UsageMonitor(client=client)

        # Act
        first = asyncio.create_task(monitor.refresh("p1", BackendFamily.ZHIPU, "k"))
        await asyncio.sleep(0)
        assert monitor.is_refreshing("p1")
        second = await monitor.refresh("p1", BackendFamily.ZHIPU, "k")
        gate.set()
        result = await first

        # Assert
        assert second is None
        assert result.has_data
        assert len(recorder.requests) == 1
        assert not monitor.is_refreshing("p1")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_refresh_now_many_targets(self, make_client):
        """Test a foreground refresh returns one snapshot per provider."""
        client, _ = make_client(lambda request: httpx.Response(200, json=ZAI_OK))
        monitor = UsageMonitor(client=client)

        results = await monitor.refresh_now(
            [UsageTarget("p1", BackendFamily.ZHIPU, "k1"), UsageTarget("p2", "groq", "k2")]
        )

        assert results["p1"].has_data
        assert results["p2"].error == "Usage monitoring not supported"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_client):
        """Test the periodic loop refreshes and stops cleanly."""
        # Arrange
        client, _ = make_client(lambda request: httpx.Response(500))
        monitor = UsageMonitor(client=client, refresh_interval=3600)

        # Act
        monitor.start(lambda: [UsageTarget("p1", "groq", "k")])
        for _ in range(100):
            if monitor.latest("p1") is not None:
                break
            await asyncio.sleep(0)
        running = monitor.is_running
        await monitor.aclose()

        # Assert
        assert running
        assert monitor.latest("p1").error == "Usage monitoring not supported"
        assert not monitor.is_running
        assert not client.is_closed
        await client.aclose()
