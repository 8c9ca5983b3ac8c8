"""
Quota monitoring for subscription-style providers.

This module contains:
- UsageMonitor, which fetches quota windows from Z.AI, Anthropic (OAuth)
  and MiniMax and keeps the latest snapshot per provider
- extract_generic_usage, a best-effort reader for unknown JSON shapes

Fetching never raises; every failure is reported through
``UsageSnapshot.error``.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Union

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict

from .provider_manager.types import BackendFamily, UsageSnapshot, UsageWindow

ZAI_USAGE_URL = "https://api.z.ai/api/monitor/usage/quota/limit"
ANTHROPIC_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
MINIMAX_USAGE_URL = "https://api.minimaxi.com/v1/api/openplatform/coding_plan/remains"
MINIMAX = "minimax"

DEFAULT_REFRESH_INTERVAL = 300.0
DEFAULT_TIMEOUT = 10.0

_PERCENT_KEYS = (
    "used_percent",
    "usedPercent",
    "usage_percent",
    "usagePercent",
    "used_rate",
    "usage_rate",
    "used_ratio",
    "usage_ratio",
)
_USED_KEYS = ("used", "usage", "used_tokens", "usedTokens")
_TOTAL_KEYS = ("total", "total_tokens", "totalTokens", "limit", "quota")
_RESET_KEYS = (
    "reset_at",
    "resetAt",
    "reset_time",
    "resetTime",
    "next_reset_at",
    "nextResetAt",
    "expires_at",
    "expiresAt",
)
_PLAN_KEYS = ("plan", "plan_name", "planName", "product", "tier")
_ZAI_UNITS = {1: "d", 3: "h", 5: "m"}


class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ZAILimit(_Response):
    type: Optional[str] = None
    unit: Optional[int] = None
    number: Optional[int] = None
    percentage: Optional[float] = None
    nextResetTime: Optional[int] = None


class ZAIUsageData(_Response):
    planName: Optional[str] = None
    plan: Optional[str] = None
    level: Optional[str] = None
    limits: List[ZAILimit] = []


class ZAIUsageResponse(_Response):
    success: Optional[bool] = None
    code: Optional[int] = None
    msg: Optional[str] = None
    data: Optional[ZAIUsageData] = None


class ClaudeUsageWindow(_Response):
    utilization: Optional[float] = None
    resets_at: Optional[str] = None


class ClaudeUsageResponse(_Response):
    five_hour: Optional[ClaudeUsageWindow] = None
    seven_day: Optional[ClaudeUsageWindow] = None


class UsageTarget(NamedTuple):
    """A provider to poll: its id, quota API family and secret."""

    provider_id: str
    family: Union[BackendFamily, str]
    api_key: str


def parse_iso_millis(value: str) -> Optional[int]:
    """ISO-8601 timestamp (with or without fractional seconds) to epoch milliseconds."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def extract_percent(payload: Dict[str, Any]) -> Optional[float]:
    """
    Used percentage from a loosely-shaped payload.

    Percent fields with values at or below 1 are read as ratios. Without a
    percent field, a used/total pair is tried. This is a heuristic: an
    unrelated numeric field with a matching name will be misread.
    """
    for key in _PERCENT_KEYS:
        value = payload.get(key)
        if _is_number(value):
            return value * 100 if value <= 1 else float(value)

    used = next((payload[k] for k in _USED_KEYS if _is_number(payload.get(k))), None)
    total = next((payload[k] for k in _TOTAL_KEYS if _is_number(payload.get(k))), None)
    if used is not None and total is not None and total > 0:
        return used / total * 100
    return None


def extract_reset_time(payload: Dict[str, Any]) -> Optional[int]:
    """Reset time in epoch ms; numbers below 1e12 are taken as seconds."""
    for key in _RESET_KEYS:
        value = payload.get(key)
        if isinstance(value, str):
            return parse_iso_millis(value)
        if _is_number(value):
            return int(value * 1000) if value < 1e12 else int(value)
    return None


def extract_plan(payload: Dict[str, Any]) -> Optional[str]:
    for key in _PLAN_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_generic_usage(payload: Dict[str, Any], label: str = "5h") -> Optional[UsageWindow]:
    percent = extract_percent(payload)
    if percent is None:
        return None
    return UsageWindow(label=label, used_percent=percent, reset_at=extract_reset_time(payload))


def _family_key(family: Union[BackendFamily, str]) -> str:
    return family.value if isinstance(family, BackendFamily) else str(family).lower()


class UsageMonitor:
    """
    Fetches and caches quota snapshots.

    At most one request per provider is in flight; a concurrent refresh for
    the same provider returns the cached snapshot instead.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Initialize the monitor.

        Args:
            client: Optional shared client; otherwise one is created lazily
                and closed by ``aclose``.
            refresh_interval: Seconds between periodic refreshes.
            timeout: Per-request timeout in seconds.
        """
        self._client = client
        self._owns_client = client is None
        self.refresh_interval = refresh_interval
        self._timeout = timeout
        self._snapshots: Dict[str, UsageSnapshot] = {}
        self._in_flight: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    # -- provider fetchers --------------------------------------------

    async def fetch(self, family: Union[BackendFamily, str], api_key: str) -> UsageSnapshot:
        """Fetch a fresh snapshot for a provider family. Never raises."""
        key = _family_key(family)
        if key in (BackendFamily.ZHIPU.value, BackendFamily.ZHIPU_CODING.value, BackendFamily.ZHIPU_ANTHROPIC.value):
            return await self.fetch_zai_usage(api_key)
        if key == BackendFamily.ANTHROPIC.value:
            return await self.fetch_anthropic_usage(api_key)
        if key == MINIMAX:
            return await self.fetch_minimax_usage(api_key)

        try:
            display_name = BackendFamily(key).display_name
        except ValueError:
            display_name = key
        return UsageSnapshot(provider=key, display_name=display_name, error="Usage monitoring not supported")

    async def fetch_zai_usage(self, api_key: str) -> UsageSnapshot:
        provider, display_name = "zai", "Z.AI"
        headers = {"Authorization": f"Bearer {api_key}", "Accept": "application/json"}
        try:
            response = await self.client.get(ZAI_USAGE_URL, headers=headers, timeout=self._timeout)
            if response.status_code != 200:
                return UsageSnapshot(provider, display_name, error=f"HTTP {response.status_code}")

            body = ZAIUsageResponse.model_validate_json(response.content)
            if body.success is not True or body.code != 200:
                return UsageSnapshot(provider, display_name, error=body.msg or "API error")

            data = body.data or ZAIUsageData()
            tokens_window: Optional[UsageWindow] = None
            time_window: Optional[UsageWindow] = None
            for limit in data.limits:
                percent = limit.percentage or 0.0
                if limit.type == "TOKENS_LIMIT":
                    suffix = _ZAI_UNITS.get(limit.unit)
                    label = f"{limit.number or 0}{suffix}" if suffix else "Limit"
                    tokens_window = UsageWindow(label, percent, limit.nextResetTime)
                elif limit.type == "TIME_LIMIT":
                    time_window = UsageWindow("Time", percent, limit.nextResetTime)

            windows = tuple(w for w in (tokens_window, time_window) if w is not None)
            return UsageSnapshot(provider, display_name, windows, plan=data.planName or data.plan or data.level)
        except Exception as e:
            logger.error(f"Failed to fetch Z.AI usage: {e}")
            return UsageSnapshot(provider, display_name, error=str(e) or type(e).__name__)

    async def fetch_anthropic_usage(self, api_key: str) -> UsageSnapshot:
        provider, display_name = "anthropic", "Anthropic Claude"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
            "User-Agent": "OmniChat",
            "anthropic-version": "2023-06-01",
            "anthropic-beta": "oauth-2025-04-20",
        }
        try:
            response = await self.client.get(ANTHROPIC_USAGE_URL, headers=headers, timeout=self._timeout)
            if response.status_code != 200:
                message = f"HTTP {response.status_code}"
                try:
                    error = response.json().get("error")
                    if isinstance(error, dict) and isinstance(error.get("message"), str):
                        message = error["message"]
                except (ValueError, AttributeError):
                    pass
                return UsageSnapshot(provider, display_name, error=message)

            body = ClaudeUsageResponse.model_validate_json(response.content)
            windows = []
            for label, window in (("5h", body.five_hour), ("Week", body.seven_day)):
                if window is None:
                    continue
                reset_at = parse_iso_millis(window.resets_at) if window.resets_at else None
                windows.append(UsageWindow(label, window.utilization or 0.0, reset_at))
            return UsageSnapshot(provider, display_name, tuple(windows))
        except Exception as e:
            logger.error(f"Failed to fetch Anthropic usage: {e}")
            return UsageSnapshot(provider, display_name, error=str(e) or type(e).__name__)

    async def fetch_minimax_usage(self, api_key: str) -> UsageSnapshot:
        provider, display_name = MINIMAX, "MiniMax"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "MM-API-Source": "OmniChat",
        }
        try:
            response = await self.client.get(MINIMAX_USAGE_URL, headers=headers, timeout=self._timeout)
            if response.status_code != 200:
                return UsageSnapshot(provider, display_name, error=f"HTTP {response.status_code}")

            body = response.json()
            if not isinstance(body, dict):
                return UsageSnapshot(provider, display_name, error="Unsupported response format")
            base_resp = body.get("base_resp")
            if isinstance(base_resp, dict) and base_resp.get("status_code", 0) != 0:
                return UsageSnapshot(provider, display_name, error=base_resp.get("status_msg") or "API error")

            usage = body.get("data") if isinstance(body.get("data"), dict) else body
            window = extract_generic_usage(usage, label="5h")
            if window is None:
                return UsageSnapshot(provider, display_name, error="Unsupported response format")
            return UsageSnapshot(provider, display_name, (window,), plan=extract_plan(usage))
        except Exception as e:
            logger.error(f"Failed to fetch MiniMax usage: {e}")
            return UsageSnapshot(provider, display_name, error=str(e) or type(e).__name__)

    # -- cached snapshots ---------------------------------------------

    def latest(self, provider_id: str) -> Optional[UsageSnapshot]:
        return self._snapshots.get(provider_id)

    def needs_refresh(self, provider_id: str, now: Optional[float] = None) -> bool:
        snapshot = self._snapshots.get(provider_id)
        if snapshot is None:
            return True
        now = time.time() if now is None else now
        return now - snapshot.fetched_at >= self.refresh_interval

    def is_refreshing(self, provider_id: str) -> bool:
        return provider_id in self._in_flight

    async def refresh(self, provider_id: str, family: Union[BackendFamily, str], api_key: str) -> Optional[UsageSnapshot]:
        """
        Fetch and cache a snapshot for one provider.

        Returns:
            The new snapshot, or the cached one (possibly None) when a
            refresh for this provider is already running.
        """
        if provider_id in self._in_flight:
            logger.debug(f"Usage refresh for {provider_id} already in flight")
            return self._snapshots.get(provider_id)

        self._in_flight.add(provider_id)
        try:
            snapshot = await self.fetch(family, api_key)
            self._snapshots[provider_id] = snapshot
            if snapshot.error:
                logger.warning(f"Usage refresh for {provider_id} failed: {snapshot.error}")
            else:
                logger.debug(f"Usage refreshed for {provider_id}: {len(snapshot.windows)} windows")
            return snapshot
        finally:
            self._in_flight.discard(provider_id)

    async def refresh_now(self, targets: Iterable[UsageTarget]) -> Dict[str, Optional[UsageSnapshot]]:
        """Foreground refresh of several providers at once, ignoring the interval."""
        targets = list(targets)
        results = await asyncio.gather(*(self.refresh(t.provider_id, t.family, t.api_key) for t in targets))
        return {target.provider_id: result for target, result in zip(targets, results)}

    async def refresh_stale(self, targets: Iterable[UsageTarget]) -> None:
        stale = [t for t in targets if self.needs_refresh(t.provider_id)]
        if stale:
            await self.refresh_now(stale)

    # -- periodic loop ------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, targets: Callable[[], Iterable[UsageTarget]]) -> None:
        """
        Start periodic refreshing on the running event loop.

        Args:
            targets: Called before every round so that new providers and
                rotated keys are picked up.
        """
        if self.is_running:
            return
        self._task = asyncio.ensure_future(self._loop(targets))
        logger.info(f"Usage monitor started (interval {self.refresh_interval}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Usage monitor stopped")

    async def _loop(self, targets: Callable[[], Iterable[UsageTarget]]) -> None:
        while True:
            try:
                await self.refresh_stale(targets())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Usage refresh round failed: {e}")
            await asyncio.sleep(self.refresh_interval)

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "ZAI_USAGE_URL",
    "ANTHROPIC_USAGE_URL",
    "MINIMAX_USAGE_URL",
    "UsageTarget",
    "UsageMonitor",
    "parse_iso_millis",
    "extract_percent",
    "extract_reset_time",
    "extract_plan",
    "extract_generic_usage",
]
