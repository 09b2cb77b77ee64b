from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

import httpx

from polymarket_scalper.adapters.gamma import GammaAdapter
from polymarket_scalper.models import MarketRef, WatchedMarket
from polymarket_scalper.utils.telemetry import EventLog


BTC_UPDOWN_SLUG_PREFIX = "btc-updown-5m-"
FIVE_MINUTES_SECONDS = 300
PROBE_WINDOWS = 3

_YES_LABELS = ("yes", "up", "higher")
_NO_LABELS = ("no", "down", "lower")


class MarketDataError(ValueError):
    pass


def candidate_slug_timestamps(now_ts: int, contract_seconds: int = FIVE_MINUTES_SECONDS, windows: int = PROBE_WINDOWS) -> List[int]:
    base = (int(now_ts) // contract_seconds) * contract_seconds
    return [base + contract_seconds * k for k in range(-windows, windows + 1)]


def is_btc_up_down_5m(question: str) -> bool:
    q = question.lower()
    return (
        ("btc" in q or "bitcoin" in q)
        and "up" in q
        and "down" in q
        and any(k in q for k in ("5m", "5 min", "5-minute", "five minute"))
    )


def is_btc_updown_slug_or_question(m: MarketRef, prefix: str = BTC_UPDOWN_SLUG_PREFIX) -> bool:
    if m.slug and m.slug.startswith(prefix):
        return True
    return bool(m.question) and is_btc_up_down_5m(m.question)


def is_active_now(m: MarketRef, now: datetime) -> bool:
    if m.closed is True or m.active is False:
        return False
    starts_ok = m.start_date is None or m.start_date <= now
    ends_ok = m.end_date is not None and m.end_date > now
    return starts_ok and ends_ok


def label_from_question(question: str) -> str:
    if " - " in question:
        return f"BTC 5m {question.split(' - ', 1)[1]}"
    return question


def market_label(m: MarketRef, prefix: str = BTC_UPDOWN_SLUG_PREFIX) -> str:
    if m.slug and m.slug.startswith(prefix) and m.question:
        return label_from_question(m.question)
    if m.start_date and m.end_date:
        return f"BTC 5m {m.start_date:%H:%M}-{m.end_date:%H:%M}"
    return m.question or f"Market {m.market_id}"


def _find_index(outcomes: List[str], labels: Iterable[str]) -> Optional[int]:
    for i, o in enumerate(outcomes):
        if o.strip().lower() in labels:
            return i
    return None


def select_tokens(m: MarketRef) -> Tuple[str, str]:
    if not m.outcomes:
        raise MarketDataError("market outcomes missing")
    if not m.token_ids:
        raise MarketDataError("market CLOB token IDs missing")
    if len(m.outcomes) != len(m.token_ids):
        raise MarketDataError(
            f"outcomes/token id length mismatch ({len(m.outcomes)} outcomes vs {len(m.token_ids)} token IDs)"
        )

    yes_idx = _find_index(m.outcomes, _YES_LABELS)
    no_idx = _find_index(m.outcomes, _NO_LABELS)
    if len(m.outcomes) == 2:
        # binary market with unexpected labels: first outcome is the YES leg
        if yes_idx is None and no_idx is None:
            yes_idx, no_idx = 0, 1
        elif yes_idx is None:
            yes_idx = 1 - no_idx
        elif no_idx is None:
            no_idx = 1 - yes_idx
    if yes_idx is None:
        raise MarketDataError(f"YES outcome not found in market outcomes: {m.outcomes}")
    if no_idx is None or no_idx == yes_idx:
        raise MarketDataError(f"NO outcome not found in market outcomes: {m.outcomes}")
    return m.token_ids[yes_idx], m.token_ids[no_idx]


def market_to_watched(m: MarketRef, prefix: str = BTC_UPDOWN_SLUG_PREFIX) -> WatchedMarket:
    yes_token, no_token = select_tokens(m)
    if m.end_date is None:
        raise MarketDataError("market end date is missing; cannot compute time remaining")
    return WatchedMarket(
        label=market_label(m, prefix),
        slug=m.slug or f"market-{m.market_id}",
        yes_token_id=yes_token,
        no_token_id=no_token,
        end_time=m.end_date,
    )


class MarketDiscovery:
    def __init__(self, gamma: GammaAdapter, cfg: dict, events: Optional[EventLog] = None, clock=None):
        data = cfg.get("data", {})
        self.gamma = gamma
        self.prefix = str(data.get("slug_prefix", BTC_UPDOWN_SLUG_PREFIX))
        self.search_query = str(data.get("search_query", "btc-updown-5m"))
        self.contract_seconds = int(data.get("contract_seconds", FIVE_MINUTES_SECONDS))
        self.retry_seconds = float(cfg.get("app", {}).get("discovery_retry_seconds", 2.0))
        self.events = events or EventLog.silent()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def _probe_time_slugs(self, now: datetime) -> List[MarketRef]:
        active: List[MarketRef] = []
        for ts in candidate_slug_timestamps(int(now.timestamp()), self.contract_seconds):
            slug = f"{self.prefix}{ts}"
            try:
                m = await self.gamma.find_market_by_slug(slug)
            except (httpx.HTTPError, ValueError) as e:
                self.events.warn("slug_probe_failed", f"warn: slug probe failed: {e}", slug=slug, error=str(e))
                continue
            if m is not None and is_active_now(m, now):
                active.append(m)
        return active

    def _pick(self, candidates: List[MarketRef], now: datetime) -> List[MarketRef]:
        matches = [m for m in candidates if is_btc_updown_slug_or_question(m, self.prefix) and is_active_now(m, now)]
        return sorted(matches, key=lambda m: m.end_date)

    async def discover_once(self) -> WatchedMarket:
        now = self.clock()
        ranked = sorted(await self._probe_time_slugs(now), key=lambda m: m.end_date)
        if not ranked:
            candidates = await self.gamma.search_markets(self.search_query)
            if not candidates:
                candidates = await self.gamma.list_open_markets()
            ranked = self._pick(candidates, now)
        if not ranked:
            raise MarketDataError("no matching active BTC 5m market found by slug probes or fallback search")

        last_err: Optional[MarketDataError] = None
        for m in ranked:
            try:
                return market_to_watched(m, self.prefix)
            except MarketDataError as e:
                last_err = e
                self.events.warn("market_malformed", f"warn: skipping {m.slug or m.market_id}: {e}", slug=m.slug, error=str(e))
        raise last_err

    async def discover_loop(self) -> WatchedMarket:
        while True:
            try:
                watched = await self.discover_once()
            except (MarketDataError, httpx.HTTPError, ValueError) as e:
                self.events.warn("discovery_retry", f"warn: could not find active BTC 5m market yet: {e}", error=str(e))
                await asyncio.sleep(self.retry_seconds)
                continue
            self.events.info(
                "market_watch",
                f"Watching market: {watched.label} [{watched.slug}] (YES {watched.yes_token_id[:12]} / NO {watched.no_token_id[:12]})",
                slug=watched.slug,
                label=watched.label,
                end_time=watched.end_time.isoformat(),
            )
            return watched
