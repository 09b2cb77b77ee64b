import io

import pytest
from pydantic import ValidationError
from rich.console import Console

from polymarket_scalper.engine.signal import (
    EXPANSION,
    STAGED,
    SignalEngine,
    check_acceleration,
    determine_bias,
    profile_from_config,
)
from polymarket_scalper.models import Bias, EntrySignal, ExitSignal, IndicatorState, Side
from polymarket_scalper.utils.telemetry import EventLog


FLAT = IndicatorState()
BULL_1M = IndicatorState(ema9=0.60, ema21=0.50, rsi14=60.0, momentum_slope=0.01)
BEAR_1M = IndicatorState(ema9=0.40, ema21=0.50, rsi14=40.0, momentum_slope=-0.01)
BULL_15S = IndicatorState(ema9=0.60, ema21=0.50, rsi14=65.0, momentum_slope=0.01)
BEAR_15S = IndicatorState(ema9=0.40, ema21=0.50, rsi14=35.0, momentum_slope=-0.01)


def _fast(slope):
    return IndicatorState(ema9=0.5, ema21=0.5, rsi14=50.0, momentum_slope=slope)


def _regime(slope):
    return IndicatorState(ema9=0.5, ema21=0.5, rsi14=50.0, momentum_slope=slope)


def _fill(engine, prices, fast=0.01, mid=0.001, slow=FLAT):
    out = None
    for p in prices:
        out = engine.update(_fast(fast), _regime(mid), slow, p)
    return out


def test_bias_and_acceleration():
    assert determine_bias(BULL_1M) is Bias.LONG
    assert determine_bias(BEAR_1M) is Bias.SHORT
    assert determine_bias(FLAT) is Bias.NEUTRAL
    assert determine_bias(IndicatorState(ema9=0.6, ema21=0.5, rsi14=50.0, momentum_slope=0.01)) is Bias.NEUTRAL

    assert check_acceleration(Bias.LONG, BULL_15S)
    assert check_acceleration(Bias.SHORT, BEAR_15S)
    assert not check_acceleration(Bias.LONG, BEAR_15S)
    assert not check_acceleration(Bias.NEUTRAL, BULL_15S)
    assert not check_acceleration(Bias.LONG, FLAT)


def test_expansion_waits_for_window_then_breaks_out_long():
    engine = SignalEngine(EXPANSION)
    for _ in range(5):
        sig = engine.update(_fast(0.01), _regime(0.001), FLAT, 0.50)
        assert sig.entry is EntrySignal.NONE
        assert engine.last_reject_reason == "window_filling"

    sig = engine.update(_fast(0.01), _regime(0.001), FLAT, 0.51)
    assert sig.entry is EntrySignal.LONG
    assert sig.exit is ExitSignal.NONE
    assert engine.active_position is Side.LONG
    assert engine.entry_price == 0.51


def test_breakout_must_exceed_prior_window_high():
    engine = SignalEngine(EXPANSION)
    _fill(engine, [0.50, 0.52, 0.50, 0.50, 0.50])
    sig = engine.update(_fast(0.01), _regime(0.001), FLAT, 0.52)
    assert sig.entry is EntrySignal.NONE
    assert engine.last_reject_reason == "no_breakout"
    assert engine.window_high == 0.52


def test_expansion_short_breakdown():
    engine = SignalEngine(EXPANSION)
    _fill(engine, [0.50] * 5, fast=-0.01, mid=-0.001)
    sig = engine.update(_fast(-0.01), _regime(-0.001), FLAT, 0.49)
    assert sig.entry is EntrySignal.SHORT
    assert engine.active_position is Side.SHORT


def test_expansion_filters():
    engine = SignalEngine(EXPANSION)
    _fill(engine, [0.50] * 5)
    assert engine.update(_fast(0.01), _regime(0.0001), FLAT, 0.51).entry is EntrySignal.NONE
    assert engine.last_reject_reason == "regime_flat"

    assert engine.update(_fast(0.01), _regime(0.001), FLAT, 0.70).entry is EntrySignal.NONE
    assert engine.last_reject_reason == "price_out_of_band"

    assert engine.update(_fast(None), _regime(0.001), FLAT, 0.60).entry is EntrySignal.NONE
    assert engine.last_reject_reason == "fast_slope_missing"

    assert engine.update(_fast(0.001), _regime(0.001), FLAT, 0.65).entry is EntrySignal.NONE
    assert engine.last_reject_reason == "no_breakout"

    # regime slope not yet available does not block
    assert engine.update(_fast(0.01), FLAT, FLAT, 0.65).entry is EntrySignal.NONE
    assert engine.last_reject_reason == "no_breakout"


def test_expansion_fast_flip_exits_and_suppresses_duplicates():
    engine = SignalEngine(EXPANSION)
    _fill(engine, [0.50] * 5)
    assert engine.update(_fast(0.01), _regime(0.001), FLAT, 0.51).entry is EntrySignal.LONG

    sig = engine.update(_fast(0.01), _regime(0.001), FLAT, 0.55)
    assert sig.entry is EntrySignal.NONE
    assert sig.exit is ExitSignal.NONE
    assert engine.last_reject_reason == "position_active"

    sig = engine.update(_fast(-0.01), _regime(0.001), FLAT, 0.54)
    assert sig.exit is ExitSignal.FULL_EXIT
    assert engine.active_position is None


def _staged_long(engine):
    for p in (0.40, 0.45, 0.48):
        sig = engine.update(_fast(0.01), BULL_15S, BULL_1M, p)
        assert sig.entry is EntrySignal.NONE
    sig = engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.50)
    assert sig.bias is Bias.LONG and sig.acceleration
    assert sig.entry is EntrySignal.LONG
    return sig


def test_staged_requires_bias_and_acceleration():
    engine = SignalEngine(STAGED)
    _fill(engine, [0.40, 0.45, 0.48], slow=FLAT)
    sig = engine.update(_fast(0.01), _regime(0.001), FLAT, 0.50)
    assert sig.entry is EntrySignal.NONE
    assert engine.last_reject_reason == "no_bias"

    sig = engine.update(_fast(0.01), BEAR_15S, BULL_1M, 0.55)
    assert sig.bias is Bias.LONG and not sig.acceleration
    assert engine.last_reject_reason == "no_bias"


def test_staged_scale_outs_then_ceiling():
    engine = SignalEngine(STAGED)
    _staged_long(engine)
    assert engine.entry_price == 0.50

    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.60).exit is ExitSignal.SCALE_OUT_25
    assert engine.scale_stage == 1
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.62).exit is ExitSignal.NONE
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.70).exit is ExitSignal.SCALE_OUT_50
    assert engine.scale_stage == 2
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.75).exit is ExitSignal.NONE
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.94).exit is ExitSignal.FULL_EXIT
    assert engine.active_position is None
    assert engine.scale_stage == 0


def test_staged_jump_straight_to_second_scale_out():
    engine = SignalEngine(STAGED)
    _staged_long(engine)
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.72).exit is ExitSignal.SCALE_OUT_50
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.73).exit is ExitSignal.NONE


def test_staged_stop_loss():
    engine = SignalEngine(STAGED)
    _staged_long(engine)
    sig = engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.45)
    assert sig.exit is ExitSignal.STOP_LOSS
    assert engine.active_position is None


def test_staged_trend_flip_exit():
    engine = SignalEngine(STAGED)
    _staged_long(engine)
    sig = engine.update(_fast(0.01), BULL_15S, BEAR_1M, 0.51)
    assert sig.exit is ExitSignal.FULL_EXIT


def test_staged_short_mirrors_gains_and_floor():
    engine = SignalEngine(STAGED)
    for p in (0.60, 0.55, 0.52):
        engine.update(_fast(-0.01), BEAR_15S, BEAR_1M, p)
    sig = engine.update(_fast(-0.01), BEAR_15S, BEAR_1M, 0.50)
    assert sig.entry is EntrySignal.SHORT

    assert engine.update(_fast(-0.01), BEAR_15S, BEAR_1M, 0.40).exit is ExitSignal.SCALE_OUT_25
    assert engine.update(_fast(-0.01), BEAR_15S, BEAR_1M, 0.06).exit is ExitSignal.FULL_EXIT


def test_staged_short_stop_loss_on_rising_price():
    engine = SignalEngine(STAGED)
    for p in (0.60, 0.55, 0.52, 0.50):
        engine.update(_fast(-0.01), BEAR_15S, BEAR_1M, p)
    assert engine.active_position is Side.SHORT
    assert engine.update(_fast(-0.01), BEAR_15S, BEAR_1M, 0.55).exit is ExitSignal.STOP_LOSS


def test_cancel_entry_and_reset():
    engine = SignalEngine(EXPANSION)
    _fill(engine, [0.50] * 5)
    engine.update(_fast(0.01), _regime(0.001), FLAT, 0.51)
    engine.cancel_entry()
    assert engine.active_position is None
    assert engine.entry_price is None

    engine.reset()
    assert len(engine.recent_prices) == 0
    assert engine.window_high is None
    engine.update(_fast(0.01), _regime(0.001), FLAT, 0.51)
    assert engine.last_reject_reason == "window_filling"


def test_profile_from_config():
    assert profile_from_config({}).name == "expansion"
    staged = profile_from_config({"strategy": {"profile": "STAGED", "stop_loss_pct": 0.2, "unknown": 1}})
    assert staged.name == "staged"
    assert staged.stop_loss_pct == 0.2
    assert STAGED.stop_loss_pct == 0.10
    with pytest.raises(ValueError):
        profile_from_config({"strategy": {"profile": "scalper"}})


def test_profile_overrides_are_validated():
    # YAML can hand over quoted numbers
    prof = profile_from_config({"strategy": {"entry_slope": "0.0025", "window_len": "4"}})
    assert prof.entry_slope == 0.0025
    assert prof.window_len == 4
    assert isinstance(prof.entry_slope, float)
    assert EXPANSION.entry_slope == 0.002

    with pytest.raises(ValidationError):
        profile_from_config({"strategy": {"entry_slope": "abc"}})
    with pytest.raises(ValueError):
        profile_from_config({"strategy": {"profile": "staged", "stop_loss_pct": [0.1]}})


def test_rejections_are_reported_as_debug_events():
    buf = io.StringIO()
    events = EventLog(console=Console(file=buf, highlight=False), debug=True)
    engine = SignalEngine(EXPANSION, events=events)
    _fill(engine, [0.50] * 3)
    engine.update(_fast(0.01), _regime(0.001), FLAT, 0.80)
    assert events.counts["entry_rejected"] == 4
    assert "window_filling" in buf.getvalue()
    assert "price_out_of_band" in buf.getvalue()

    quiet = EventLog(console=Console(file=io.StringIO()), debug=False)
    SignalEngine(EXPANSION, events=quiet).update(_fast(0.01), _regime(0.001), FLAT, 0.5)
    assert quiet.counts["entry_rejected"] == 0


def test_keep_position_undoes_last_exit():
    engine = SignalEngine(EXPANSION)
    _fill(engine, [0.50] * 5)
    engine.update(_fast(0.01), _regime(0.001), FLAT, 0.51)
    sig = engine.update(_fast(-0.01), _regime(0.001), FLAT, 0.50)
    assert sig.exit is ExitSignal.FULL_EXIT
    engine.keep_position()
    assert engine.active_position is Side.LONG
    assert engine.entry_price == 0.51
    # still held, so the exit fires again on the next candle
    assert engine.update(_fast(-0.01), _regime(0.001), FLAT, 0.50).exit is ExitSignal.FULL_EXIT


def test_keep_position_restores_scale_stage():
    engine = SignalEngine(STAGED)
    _staged_long(engine)
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.60).exit is ExitSignal.SCALE_OUT_25
    engine.keep_position()
    assert engine.scale_stage == 0
    assert engine.update(_fast(0.01), BULL_15S, BULL_1M, 0.60).exit is ExitSignal.SCALE_OUT_25
    assert engine.scale_stage == 1
