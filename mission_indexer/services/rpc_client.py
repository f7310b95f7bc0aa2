"""
RPC access layer with endpoint failover and error classification.

This service provides:
- Round-robin pool of JSON-RPC endpoints (AsyncWeb3 over HTTP)
- One classified retry per call (rate-limit cooldown, benign delay, endpoint switch)
- Per-label / per-call-site attempt counters flushed as an hourly summary
"""

import sys
import time
import asyncio
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import structlog
from web3 import AsyncWeb3, AsyncHTTPProvider

from mission_indexer.core.config import settings
from mission_indexer.core.exceptions import ConfigurationError
from .rpc_errors import ErrorKind, classify_error


logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 2


def build_web3(url: str, timeout: float) -> AsyncWeb3:
    """AsyncWeb3 client bound to a single HTTP endpoint."""
    return AsyncWeb3(AsyncHTTPProvider(
        url,
        request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)}
    ))


class RpcAccessLayer:
    """
    Resilient entry point for every chain call the indexer makes.

    ``call(fn, label)`` runs ``fn(w3)`` against the current endpoint and
    returns its result or raises. Failures are classified once and routed:

    - rate limited: cool down, retry once on the same endpoint
    - benign provider hiccup (502/503/504/408/410): short delay, retry once on
      the same endpoint, counted into the daily benign rollup
    - other transient: switch to the next endpoint, retry once
    - permanent: re-raised unchanged
    """

    def __init__(
        self,
        urls: List[str],
        timeout: float = 20,
        rate_limit_cooldown: float = 30.0,
        benign_delay: float = 0.8,
        stats_flush_seconds: float = 3600,
        benign_sink: Optional[Callable[[str], None]] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if not urls:
            raise ConfigurationError("At least one RPC endpoint is required")

        self.logger = logger.bind(service="rpc_access_layer")
        self.urls = list(urls)
        self.rate_limit_cooldown = rate_limit_cooldown
        self.benign_delay = benign_delay
        self.stats_flush_seconds = stats_flush_seconds
        self._benign_sink = benign_sink
        self._clock = clock

        factory = client_factory or (lambda url: build_web3(url, timeout))
        self._clients = [factory(url) for url in self.urls]

        self._current_index = 0
        self._switch_lock = asyncio.Lock()
        self.switch_count = 0

        # Diagnostics
        self.calls_by_label: Counter = Counter()
        self.calls_by_site: Counter = Counter()
        self.errors_by_kind: Counter = Counter()
        self._last_flush = clock()

        self.logger.info(
            "RPC endpoints configured",
            total_endpoints=len(self.urls),
            primary_url=self.urls[0]
        )

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def current_url(self) -> str:
        return self.urls[self._current_index]

    def set_benign_sink(self, sink: Optional[Callable[[str], None]]) -> None:
        self._benign_sink = sink

    async def call(
        self,
        fn: Callable[[Any], Awaitable[Any]],
        label: str,
        site: Optional[str] = None
    ) -> Any:
        """
        Run ``fn(w3)`` with classified retry.

        Args:
            fn: Coroutine function receiving the endpoint's AsyncWeb3 client
            label: Operation kind, e.g. ``getMissionData``
            site: Calling site for diagnostics (defaults to the caller's name)

        Returns:
            Whatever ``fn`` returns

        Raises:
            The last error, unchanged, once retries are exhausted or the
            error is permanent
        """
        if site is None:
            site = sys._getframe(1).f_code.co_name

        for attempt in range(1, MAX_ATTEMPTS + 1):
            index = self._current_index
            client = self._clients[index]

            self._count_attempt(label, site)

            try:
                return await fn(client)
            except Exception as e:
                classification = classify_error(e)
                self.errors_by_kind[classification.kind.value] += 1

                if classification.kind is ErrorKind.BENIGN_TRANSIENT:
                    self._record_benign(label, classification.code)

                if classification.kind is ErrorKind.PERMANENT or attempt == MAX_ATTEMPTS:
                    raise

                if classification.kind is ErrorKind.RATE_LIMITED:
                    self.logger.warning(
                        "Rate limit hit, cooling down",
                        label=label,
                        endpoint=self.urls[index],
                        cooldown=self.rate_limit_cooldown
                    )
                    await asyncio.sleep(self.rate_limit_cooldown)

                elif classification.kind is ErrorKind.BENIGN_TRANSIENT:
                    self.logger.debug(
                        "Benign provider error, retrying on same endpoint",
                        label=label,
                        code=classification.code
                    )
                    await asyncio.sleep(self.benign_delay)

                else:
                    self.logger.warning(
                        "Transient RPC error, switching endpoint",
                        label=label,
                        endpoint=self.urls[index],
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    await self._switch_endpoint(index)

    async def _switch_endpoint(self, failed_index: int) -> None:
        """Advance the round-robin index unless a concurrent caller already did."""
        if len(self._clients) == 1:
            return

        async with self._switch_lock:
            if self._current_index != failed_index:
                return
            self._current_index = (failed_index + 1) % len(self._clients)
            self.switch_count += 1

            self.logger.info(
                "🔀 Switched RPC endpoint",
                from_url=self.urls[failed_index],
                to_url=self.urls[self._current_index],
                switch_count=self.switch_count
            )

    def _record_benign(self, label: str, code: Optional[int]) -> None:
        if self._benign_sink is None:
            return
        self._benign_sink(f"{label}.{code}")

    def _count_attempt(self, label: str, site: str) -> None:
        self.calls_by_label[label] += 1
        self.calls_by_site[site] += 1

        if self._clock() - self._last_flush >= self.stats_flush_seconds:
            self.flush_stats()

    def flush_stats(self) -> None:
        """Emit one summary line of call counters and reset them."""
        self.logger.info(
            "📊 RPC call summary",
            total_calls=sum(self.calls_by_label.values()),
            by_label=dict(self.calls_by_label.most_common()),
            by_site=dict(self.calls_by_site.most_common()),
            errors=dict(self.errors_by_kind),
            switch_count=self.switch_count,
            current_endpoint=self.current_url
        )
        self.calls_by_label.clear()
        self.calls_by_site.clear()
        self.errors_by_kind.clear()
        self._last_flush = self._clock()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "current_endpoint": self.current_url,
            "switch_count": self.switch_count,
            "calls_by_label": dict(self.calls_by_label),
            "calls_by_site": dict(self.calls_by_site),
            "errors_by_kind": dict(self.errors_by_kind),
        }

    async def close(self) -> None:
        """Close provider sessions."""
        for client in self._clients:
            provider = getattr(client, "provider", None)
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                await disconnect()
            except Exception as e:
                self.logger.warning("Error closing RPC provider", error=str(e))

        self.logger.info("All RPC providers closed")


# Global instance
_rpc_access_layer: Optional[RpcAccessLayer] = None


def get_rpc_access_layer() -> RpcAccessLayer:
    """Get or create the global RpcAccessLayer instance."""
    global _rpc_access_layer
    if _rpc_access_layer is None:
        _rpc_access_layer = RpcAccessLayer(
            settings.rpc_endpoints,
            timeout=settings.rpc_timeout,
            rate_limit_cooldown=settings.rpc_rate_limit_cooldown,
            benign_delay=settings.rpc_benign_delay,
            stats_flush_seconds=settings.rpc_stats_flush_seconds
        )
    return _rpc_access_layer


async def close_rpc_access_layer() -> None:
    """Close the global RpcAccessLayer instance."""
    global _rpc_access_layer
    if _rpc_access_layer:
        await _rpc_access_layer.close()
        _rpc_access_layer = None
