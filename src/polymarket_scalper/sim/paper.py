from __future__ import annotations

from typing import Optional, Tuple

from polymarket_scalper.models import Decision, ShadowPosition, Side, TradeRecord


def init_position(cfg: dict) -> ShadowPosition:
    return ShadowPosition(bankroll_usd=float(cfg["paper"]["starting_bankroll_usd"]))


def can_enter(pos: ShadowPosition, side: Side, now: float, seconds_remaining: float, cfg: dict) -> Decision:
    paper = cfg.get("paper", {})
    if pos.is_active:
        return Decision(approved=False, reason="position_active")
    if pos.is_locked(side):
        return Decision(approved=False, reason="direction_locked")
    if pos.bankroll_usd < float(paper.get("min_bankroll_usd", 0.5)):
        return Decision(approved=False, reason="bankroll_below_min")
    cooldown = float(paper.get("cooldown_seconds", 15.0))
    if pos.last_exit_timestamp is not None and (now - pos.last_exit_timestamp) < cooldown:
        return Decision(approved=False, reason="cooldown")
    lo = float(paper.get("min_seconds_remaining", 30.0))
    hi = float(paper.get("max_seconds_remaining", 280.0))
    if not (lo <= seconds_remaining <= hi):
        return Decision(approved=False, reason="outside_time_window")
    return Decision(approved=True, reason="ok")


def open_position(pos: ShadowPosition, side: Side, entry_price: float, now: float, stake_usd: float) -> float:
    stake = min(float(stake_usd), float(pos.bankroll_usd))
    if pos.is_active or stake <= 0 or entry_price <= 0:
        raise ValueError("invalid_open")
    pos.side = side
    pos.entry_price = float(entry_price)
    pos.size = stake / float(entry_price)
    pos.stake_usd = stake
    pos.position_size_usd = stake
    pos.position_pnl_usd = 0.0
    pos.position_realized_pnl = 0.0
    pos.scale_stage = 0
    pos.entry_timestamp = float(now)
    pos.bankroll_usd -= stake
    return stake


def close_fraction(pos: ShadowPosition, exit_price: float, fraction: float) -> float:
    if not pos.is_active or exit_price < 0:
        raise ValueError("invalid_close")
    f = max(0.0, min(1.0, float(fraction)))
    if f <= 0:
        return 0.0
    close_qty = pos.size * f
    close_cost = pos.position_size_usd * f
    proceeds = close_qty * float(exit_price)
    pnl = proceeds - close_cost
    pos.bankroll_usd += proceeds
    pos.size = max(0.0, pos.size - close_qty)
    pos.position_size_usd = max(0.0, pos.position_size_usd - close_cost)
    pos.position_pnl_usd += pnl
    pos.position_realized_pnl = pos.position_pnl_usd / pos.stake_usd if pos.stake_usd > 0 else 0.0
    return pnl


def scale_out(pos: ShadowPosition, exit_price: float, fraction: float, stage: int) -> float:
    pnl = close_fraction(pos, exit_price, fraction)
    pos.scale_stage = max(pos.scale_stage, int(stage))
    return pnl


def close_position(pos: ShadowPosition, exit_price: float, now: float) -> TradeRecord:
    close_fraction(pos, exit_price, 1.0)
    pnl_pct = pos.position_realized_pnl
    side = pos.side
    record = TradeRecord(
        market_slug=pos.market_slug,
        token_side=side.token,
        entry_price=pos.entry_price,
        exit_price=float(exit_price),
        pnl_percent=pnl_pct,
        pnl_usd=pos.position_pnl_usd,
        bankroll_after=pos.bankroll_usd,
        duration_seconds=int(max(0.0, now - (pos.entry_timestamp or now))),
    )
    pos.realized_pnl += pnl_pct
    if pos.position_pnl_usd < 0:
        if side is Side.LONG:
            pos.long_locked = True
        else:
            pos.short_locked = True
    _clear(pos)
    pos.last_exit_timestamp = float(now)
    return record


def settlement_price(last_bid: Optional[float]) -> float:
    return 1.0 if last_bid is not None and last_bid > 0.5 else 0.0


def settle_position(pos: ShadowPosition, last_bid: Optional[float], now: float) -> Optional[TradeRecord]:
    if not pos.is_active:
        return None
    return close_position(pos, settlement_price(last_bid), now)


def unrealized_pnl(pos: ShadowPosition, bid: Optional[float]) -> Tuple[float, float]:
    if not pos.is_active or bid is None:
        return 0.0, 0.0
    open_usd = pos.size * float(bid) - pos.position_size_usd
    total = pos.position_pnl_usd + open_usd
    return open_usd, (total / pos.stake_usd if pos.stake_usd > 0 else 0.0)


def reset_for_market(pos: ShadowPosition, market_slug: str) -> None:
    # bankroll and session realized PnL carry over between contracts
    _clear(pos)
    pos.long_locked = False
    pos.short_locked = False
    pos.last_exit_timestamp = None
    pos.market_slug = market_slug


def _clear(pos: ShadowPosition) -> None:
    pos.side = None
    pos.entry_price = 0.0
    pos.size = 0.0
    pos.position_size_usd = 0.0
    pos.stake_usd = 0.0
    pos.position_pnl_usd = 0.0
    pos.position_realized_pnl = 0.0
    pos.scale_stage = 0
    pos.entry_timestamp = None
