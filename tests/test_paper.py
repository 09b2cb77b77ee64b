import pytest

from polymarket_scalper.models import ShadowPosition, Side
from polymarket_scalper.sim.paper import (
    can_enter,
    close_position,
    init_position,
    open_position,
    reset_for_market,
    scale_out,
    settle_position,
    settlement_price,
    unrealized_pnl,
)


NOW = 1_700_000_100.0


def test_open_at_ask_and_close_at_bid(cfg):
    pos = init_position(cfg)
    pos.market_slug = "btc-updown-5m-1"
    stake = open_position(pos, Side.LONG, 0.50, NOW, 1.0)
    assert stake == 1.0
    assert pos.size == pytest.approx(2.0)
    assert pos.bankroll_usd == pytest.approx(3.0)

    rec = close_position(pos, 0.60, NOW + 42)
    assert rec.token_side == "YES"
    assert rec.entry_price == 0.50
    assert rec.exit_price == 0.60
    assert rec.pnl_usd == pytest.approx(0.2)
    assert rec.pnl_percent == pytest.approx(0.2)
    assert rec.bankroll_after == pytest.approx(4.2)
    assert rec.duration_seconds == 42
    assert rec.market_slug == "btc-updown-5m-1"
    assert not pos.is_active
    assert not pos.long_locked
    assert pos.realized_pnl == pytest.approx(0.2)
    assert pos.last_exit_timestamp == NOW + 42


def test_losing_exit_locks_that_direction_only(cfg):
    pos = init_position(cfg)
    open_position(pos, Side.LONG, 0.50, NOW, 1.0)
    rec = close_position(pos, 0.40, NOW + 10)
    assert rec.pnl_usd == pytest.approx(-0.2)
    assert pos.long_locked
    assert not pos.short_locked

    later = NOW + 60
    assert can_enter(pos, Side.LONG, later, 120.0, cfg).reason == "direction_locked"
    assert can_enter(pos, Side.SHORT, later, 120.0, cfg).approved


def test_scale_out_then_close(cfg):
    pos = init_position(cfg)
    open_position(pos, Side.LONG, 0.50, NOW, 1.0)

    pnl = scale_out(pos, 0.60, 0.25, 1)
    assert pnl == pytest.approx(0.05)
    assert pos.size == pytest.approx(1.5)
    assert pos.position_size_usd == pytest.approx(0.75)
    assert pos.scale_stage == 1
    assert pos.bankroll_usd == pytest.approx(3.3)

    rec = close_position(pos, 0.70, NOW + 30)
    assert rec.pnl_usd == pytest.approx(0.35)
    assert rec.pnl_percent == pytest.approx(0.35)
    assert pos.bankroll_usd == pytest.approx(4.35)


def test_settlement_price_threshold():
    assert settlement_price(0.51) == 1.0
    assert settlement_price(0.5) == 0.0
    assert settlement_price(0.2) == 0.0
    assert settlement_price(None) == 0.0


def test_settle_winning_and_losing_positions(cfg):
    pos = init_position(cfg)
    open_position(pos, Side.LONG, 0.50, NOW, 1.0)
    rec = settle_position(pos, 0.80, NOW + 100)
    assert rec.exit_price == 1.0
    assert pos.bankroll_usd == pytest.approx(5.0)

    open_position(pos, Side.SHORT, 0.50, NOW + 200, 1.0)
    rec = settle_position(pos, 0.10, NOW + 250)
    assert rec.exit_price == 0.0
    assert rec.pnl_percent == pytest.approx(-1.0)
    assert pos.bankroll_usd == pytest.approx(4.0)
    assert pos.short_locked

    assert settle_position(pos, 0.9, NOW + 300) is None


def test_entry_guards(cfg):
    pos = init_position(cfg)
    assert can_enter(pos, Side.LONG, NOW, 20.0, cfg).reason == "outside_time_window"
    assert can_enter(pos, Side.LONG, NOW, 290.0, cfg).reason == "outside_time_window"
    assert can_enter(pos, Side.LONG, NOW, 30.0, cfg).approved
    assert can_enter(pos, Side.LONG, NOW, 280.0, cfg).approved

    open_position(pos, Side.LONG, 0.50, NOW, 1.0)
    assert can_enter(pos, Side.SHORT, NOW, 120.0, cfg).reason == "position_active"

    close_position(pos, 0.55, NOW + 5)
    assert can_enter(pos, Side.LONG, NOW + 10, 120.0, cfg).reason == "cooldown"
    assert can_enter(pos, Side.LONG, NOW + 20, 120.0, cfg).approved

    poor = ShadowPosition(bankroll_usd=0.4)
    assert can_enter(poor, Side.LONG, NOW, 120.0, cfg).reason == "bankroll_below_min"


def test_stake_is_capped_by_bankroll():
    pos = ShadowPosition(bankroll_usd=0.6)
    assert open_position(pos, Side.SHORT, 0.30, NOW, 1.0) == pytest.approx(0.6)
    assert pos.size == pytest.approx(2.0)
    assert pos.bankroll_usd == pytest.approx(0.0)


def test_invalid_open_raises(cfg):
    pos = init_position(cfg)
    with pytest.raises(ValueError):
        open_position(pos, Side.LONG, 0.0, NOW, 1.0)
    open_position(pos, Side.LONG, 0.5, NOW, 1.0)
    with pytest.raises(ValueError):
        open_position(pos, Side.SHORT, 0.5, NOW, 1.0)


def test_unrealized_pnl(cfg):
    pos = init_position(cfg)
    assert unrealized_pnl(pos, 0.5) == (0.0, 0.0)
    open_position(pos, Side.LONG, 0.50, NOW, 1.0)
    open_usd, pct = unrealized_pnl(pos, 0.55)
    assert open_usd == pytest.approx(0.1)
    assert pct == pytest.approx(0.1)
    assert unrealized_pnl(pos, None) == (0.0, 0.0)


def test_reset_for_market_keeps_bankroll(cfg):
    pos = init_position(cfg)
    open_position(pos, Side.LONG, 0.50, NOW, 1.0)
    close_position(pos, 0.40, NOW + 5)
    bankroll = pos.bankroll_usd
    realized = pos.realized_pnl

    reset_for_market(pos, "btc-updown-5m-2")
    assert pos.bankroll_usd == bankroll
    assert pos.realized_pnl == realized
    assert not pos.long_locked
    assert pos.last_exit_timestamp is None
    assert pos.market_slug == "btc-updown-5m-2"
    assert can_enter(pos, Side.LONG, NOW + 6, 120.0, cfg).approved
