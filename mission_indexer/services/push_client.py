"""
Push client - best-effort HTTP callbacks to the external push API.

Three endpoints, authenticated with a shared secret header. Failures are
logged and reported as False; nothing is retried.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from mission_indexer.core.config import settings


logger = structlog.get_logger(__name__)

PUSH_KEY_HEADER = "X-Push-Key"


class PushClient:
    """POSTs mission / status / round notifications."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.logger = logger.bind(service="push_client")
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={PUSH_KEY_HEADER: self.api_key},
                transport=self._transport
            )
        return self._client

    async def notify_mission(self, mission: str, reason: str, tx_hash: Optional[str] = None) -> bool:
        """mission-updated callback."""
        payload: Dict[str, Any] = {"mission": mission, "reason": reason}
        if tx_hash:
            payload["txHash"] = tx_hash
        return await self._post("/push/mission", payload)

    async def notify_status(self, mission: str, new_status: int) -> bool:
        """status-changed callback."""
        return await self._post("/push/status", {"mission": mission, "newStatus": int(new_status)})

    async def notify_round(self, mission: str, round_number: int, winner: str, amount_wei: int) -> bool:
        """round-completed callback; the amount travels as decimal text."""
        return await self._post("/push/round", {
            "mission": mission,
            "round": round_number,
            "winner": winner,
            "amountWei": str(amount_wei),
        })

    async def _post(self, path: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            self.logger.debug("Push disabled, dropping notification", path=path, payload=payload)
            return False

        try:
            response = await self._get_client().post(path, json=payload)
            response.raise_for_status()
            self.logger.debug("Push sent", path=path, mission=payload.get("mission"))
            return True
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self.logger.warning(
                "Push failed",
                path=path,
                mission=payload.get("mission"),
                error=str(e)
            )
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Global instance
_push_client: Optional[PushClient] = None


def get_push_client() -> PushClient:
    """Get or create the global PushClient instance."""
    global _push_client
    if _push_client is None:
        _push_client = PushClient(
            base_url=settings.push_base_url,
            api_key=settings.push_api_key,
            timeout=settings.push_timeout
        )
    return _push_client


async def close_push_client() -> None:
    global _push_client
    if _push_client:
        await _push_client.close()
        _push_client = None
