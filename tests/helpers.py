from datetime import datetime, timezone

from polymarket_scalper.models import DualSnapshot, SideQuote, WatchedMarket


T0 = 1_700_000_040  # multiple of 60


def make_snapshot(
    yes_bid=0.49,
    yes_ask=0.50,
    no_bid=0.49,
    no_ask=0.51,
    ts=float(T0),
    yes_mid=None,
    depth=(10.0, 10.0),
) -> DualSnapshot:
    if yes_mid is None and yes_bid is not None and yes_ask is not None:
        yes_mid = (yes_bid + yes_ask) / 2.0
    return DualSnapshot(
        yes=SideQuote(midpoint=yes_mid, best_bid=yes_bid, best_ask=yes_ask, top5_bid_depth=depth[0], top5_ask_depth=depth[1]),
        no=SideQuote(best_bid=no_bid, best_ask=no_ask),
        ts=ts,
    )


def make_watched(end_ts: float, slug="btc-updown-5m-1700000100") -> WatchedMarket:
    return WatchedMarket(
        label="BTC 5m test",
        slug=slug,
        yes_token_id="yes-token-0001",
        no_token_id="no-token-0001",
        end_time=utc(end_ts),
    )


def utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
