from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from polymarket_scalper.models import MarketRef


def _parse_dt(s) -> Optional[datetime]:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(str(s).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _json_list(v) -> Optional[List[str]]:
    if v is None:
        return None
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except ValueError:
            return None
    if not isinstance(v, list):
        return None
    return [str(x) for x in v]


def _opt_bool(v) -> Optional[bool]:
    if v is None:
        return None
    if isinstance(v, str):
        return v.strip().lower() == "true"
    return bool(v)


class GammaAdapter:
    def __init__(self, base_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.call_count = 0

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _counted_get(self, url: str, **kwargs) -> httpx.Response:
        self.call_count += 1
        return await self._http().get(url, **kwargs)

    @staticmethod
    def _to_ref(m: dict) -> Optional[MarketRef]:
        if not isinstance(m, dict) or m.get("id") is None:
            return None
        return MarketRef(
            market_id=str(m.get("id")),
            slug=m.get("slug") or None,
            question=m.get("question") or None,
            active=_opt_bool(m.get("active")),
            closed=_opt_bool(m.get("closed")),
            start_date=_parse_dt(m.get("startDate")),
            end_date=_parse_dt(m.get("endDate")),
            outcomes=_json_list(m.get("outcomes")),
            token_ids=_json_list(m.get("clobTokenIds")),
        )

    def _to_refs(self, arr) -> List[MarketRef]:
        refs: List[MarketRef] = []
        for m in arr or []:
            ref = self._to_ref(m)
            if ref:
                refs.append(ref)
        return refs

    async def find_market_by_slug(self, slug: str) -> Optional[MarketRef]:
        r = await self._counted_get(f"{self.base_url}/markets", params={"slug": slug})
        if r.status_code == 404:
            return None
        r.raise_for_status()
        refs = self._to_refs(r.json())
        return refs[0] if refs else None

    async def search_markets(self, query: str, limit_per_type: int = 50) -> List[MarketRef]:
        r = await self._counted_get(
            f"{self.base_url}/public-search",
            params={"q": query, "limit_per_type": str(limit_per_type)},
        )
        r.raise_for_status()
        payload = r.json() or {}
        out: List[MarketRef] = []
        for ev in payload.get("events") or []:
            out.extend(self._to_refs((ev or {}).get("markets")))
        return out

    async def list_open_markets(self, limit: int = 200) -> List[MarketRef]:
        r = await self._counted_get(f"{self.base_url}/markets", params={"closed": "false", "limit": str(limit)})
        r.raise_for_status()
        return self._to_refs(r.json())
