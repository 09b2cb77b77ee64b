from __future__ import annotations
import asyncio
from typing import List, Optional, Tuple

import httpx

from polymarket_scalper.models import DualSnapshot, SideQuote
from polymarket_scalper.utils.telemetry import EventLog


Level = Tuple[float, float]

# /price quotes the side the caller would take: buying lifts the ask, selling hits the bid.
# Only consulted when the book has no level on that side.
ASK_SIDE = "BUY"
BID_SIDE = "SELL"


def _levels(raw) -> List[Level]:
    out: List[Level] = []
    for lvl in raw or []:
        if not isinstance(lvl, dict):
            continue
        try:
            px = float(lvl.get("price", 0.0))
            sz = float(lvl.get("size", 0.0))
        except (TypeError, ValueError):
            continue
        if px > 0:
            out.append((px, sz))
    return out


def _field(data, key: str) -> Optional[float]:
    if not isinstance(data, dict):
        raise ValueError(f"unexpected payload for {key!r}: {type(data).__name__}")
    v = data.get(key)
    return float(v) if v not in (None, "") else None


class ClobAdapter:
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        events: Optional[EventLog] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.events = events or EventLog.silent()
        self.call_count = 0

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: dict):
        self.call_count += 1
        r = await self._http().get(f"{self.base_url}{path}", params=params)
        r.raise_for_status()
        return r.json()

    async def midpoint(self, token_id: str) -> Optional[float]:
        return _field(await self._get_json("/midpoint", {"token_id": token_id}), "mid")

    async def price(self, token_id: str, side: str) -> Optional[float]:
        return _field(await self._get_json("/price", {"token_id": token_id, "side": side.upper()}), "price")

    async def order_book(self, token_id: str) -> dict:
        data = await self._get_json("/book", {"token_id": token_id})
        if not isinstance(data, dict):
            raise ValueError(f"unexpected book payload: {type(data).__name__}")
        bids = sorted(_levels(data.get("bids")), key=lambda x: x[0], reverse=True)
        asks = sorted(_levels(data.get("asks")), key=lambda x: x[0])
        return {"bids": bids, "asks": asks}

    @staticmethod
    def _depth(levels: List[Level], depth_n: int = 5) -> float:
        return sum(sz for _, sz in levels[:depth_n])

    async def _safe(self, what: str, token_id: str, coro):
        try:
            return await coro
        except (httpx.HTTPError, ValueError) as e:
            self.events.warn("api_error", f"warn: {what} request failed for {token_id[:10]}: {e}", call=what, token_id=token_id, error=str(e))
            return None

    async def fetch_quote(self, token_id: str) -> SideQuote:
        mid, book = await asyncio.gather(
            self._safe("midpoint", token_id, self.midpoint(token_id)),
            self._safe("order_book", token_id, self.order_book(token_id)),
        )
        bids = (book or {}).get("bids") or []
        asks = (book or {}).get("asks") or []
        bid = bids[0][0] if bids else None
        ask = asks[0][0] if asks else None

        # top of book is authoritative; /price fills an empty side
        if bid is None:
            bid = await self._safe("price_bid", token_id, self.price(token_id, BID_SIDE))
        if ask is None:
            ask = await self._safe("price_ask", token_id, self.price(token_id, ASK_SIDE))
        return SideQuote(
            midpoint=mid,
            best_bid=bid,
            best_ask=ask,
            top5_bid_depth=self._depth(bids),
            top5_ask_depth=self._depth(asks),
        )

    async def fetch_dual_snapshot(self, yes_token: str, no_token: str, ts: float) -> DualSnapshot:
        yes, no = await asyncio.gather(self.fetch_quote(yes_token), self.fetch_quote(no_token))
        return DualSnapshot(yes=yes, no=no, ts=ts)
