from __future__ import annotations

from collections import deque
from typing import Deque, Optional, Tuple

from pydantic import BaseModel

from polymarket_scalper.models import Bias, EntrySignal, ExitSignal, IndicatorState, SignalState, Side
from polymarket_scalper.utils.telemetry import EventLog


_EPS = 1e-9


class StrategyProfile(BaseModel):
    name: str = "expansion"
    window_len: int = 5
    min_price: float = 0.35
    max_price: float = 0.65
    entry_slope: float = 0.002
    regime_min_slope: Optional[float] = 0.0005
    require_bias: bool = False
    bias_rsi_long: float = 55.0
    bias_rsi_short: float = 45.0
    accel_rsi_long: float = 60.0
    accel_rsi_short: float = 40.0
    exit_on_fast_flip: bool = True
    exit_on_trend_flip: bool = False
    stop_loss_pct: Optional[float] = None
    scale_out_25_pct: Optional[float] = None
    scale_out_50_pct: Optional[float] = None
    exit_ceiling: Optional[float] = None
    exit_floor: Optional[float] = None


EXPANSION = StrategyProfile()

STAGED = StrategyProfile(
    name="staged",
    window_len=3,
    min_price=0.0,
    max_price=1.0,
    entry_slope=0.001,
    regime_min_slope=None,
    require_bias=True,
    exit_on_fast_flip=False,
    exit_on_trend_flip=True,
    stop_loss_pct=0.10,
    scale_out_25_pct=0.20,
    scale_out_50_pct=0.40,
    exit_ceiling=0.94,
    exit_floor=0.06,
)

PROFILES = {p.name: p for p in (EXPANSION, STAGED)}


def profile_from_config(cfg: dict) -> StrategyProfile:
    strategy = dict(cfg.get("strategy", {}) or {})
    name = str(strategy.pop("profile", "expansion")).lower()
    if name not in PROFILES:
        raise ValueError(f"unknown strategy profile: {name}")
    overrides = {k: v for k, v in strategy.items() if k in StrategyProfile.model_fields}
    # model_copy skips validation, so rebuild to coerce YAML strings and reject bad types
    return StrategyProfile.model_validate({**PROFILES[name].model_dump(), **overrides})


def determine_bias(one_min: IndicatorState, profile: StrategyProfile = EXPANSION) -> Bias:
    e9, e21, rsi, slope = one_min.ema9, one_min.ema21, one_min.rsi14, one_min.momentum_slope
    if None in (e9, e21, rsi, slope):
        return Bias.NEUTRAL
    if e9 > e21 and rsi > profile.bias_rsi_long and slope > 0.0:
        return Bias.LONG
    if e9 < e21 and rsi < profile.bias_rsi_short and slope < 0.0:
        return Bias.SHORT
    return Bias.NEUTRAL


def check_acceleration(bias: Bias, fifteen_sec: IndicatorState, profile: StrategyProfile = EXPANSION) -> bool:
    if bias is Bias.NEUTRAL:
        return False
    e9, e21, rsi, slope = fifteen_sec.ema9, fifteen_sec.ema21, fifteen_sec.rsi14, fifteen_sec.momentum_slope
    if None in (e9, e21, rsi, slope):
        return False
    if bias is Bias.LONG:
        return slope > 0.0 and rsi > profile.accel_rsi_long and e9 > e21
    return slope < 0.0 and rsi < profile.accel_rsi_short and e9 < e21


class SignalEngine:
    """Entry/exit state machine driven once per fast (5s) candle close.

    Holds only the side it believes is open, the entry reference price, the
    scale-out stage and a short window of recent reference prices.
    """

    def __init__(self, profile: StrategyProfile = EXPANSION, events: Optional[EventLog] = None):
        self.profile = profile
        self.events = events or EventLog.silent()
        self.recent_prices: Deque[float] = deque(maxlen=profile.window_len)
        self.active_position: Optional[Side] = None
        self.entry_price: Optional[float] = None
        self.scale_stage = 0
        self.window_high: Optional[float] = None
        self.window_low: Optional[float] = None
        self.last_reject_reason: Optional[str] = None
        self._held: Tuple[Optional[Side], Optional[float], int] = (None, None, 0)

    def reset(self) -> None:
        self.recent_prices.clear()
        self.clear_position()
        self.window_high = None
        self.window_low = None
        self.last_reject_reason = None

    def clear_position(self) -> None:
        self.active_position = None
        self.entry_price = None
        self.scale_stage = 0

    def cancel_entry(self) -> None:
        # downstream filter refused the fill; forget the entry we just recorded
        self.clear_position()

    def keep_position(self) -> None:
        """Undo the exit emitted by the last update; the position was not closed."""
        self.active_position, self.entry_price, self.scale_stage = self._held

    def update(
        self,
        five_sec: IndicatorState,
        fifteen_sec: IndicatorState,
        one_min: IndicatorState,
        price: float,
    ) -> SignalState:
        p = self.profile
        self._held = (self.active_position, self.entry_price, self.scale_stage)
        bias = determine_bias(one_min, p)
        acceleration = check_acceleration(bias, fifteen_sec, p)

        # breakout range comes from history only; the current price is inserted afterwards
        self.window_high = max(self.recent_prices) if self.recent_prices else None
        self.window_low = min(self.recent_prices) if self.recent_prices else None

        entry = self._check_entry(bias, acceleration, five_sec, fifteen_sec, price)
        self.recent_prices.append(float(price))

        exit_signal = self._check_exit(price, five_sec, one_min)

        if exit_signal in (ExitSignal.FULL_EXIT, ExitSignal.STOP_LOSS):
            self.clear_position()
        elif exit_signal is ExitSignal.SCALE_OUT_25:
            self.scale_stage = 1
        elif exit_signal is ExitSignal.SCALE_OUT_50:
            self.scale_stage = 2

        if entry is not EntrySignal.NONE and self.active_position is None:
            self.active_position = entry.side()
            self.entry_price = float(price)
            self.scale_stage = 0

        return SignalState(bias=bias, acceleration=acceleration, entry=entry, exit=exit_signal)

    def _reject(self, reason: str) -> EntrySignal:
        self.last_reject_reason = reason
        self.events.debug("entry_rejected", f"entry rejected: {reason}", reason=reason)
        return EntrySignal.NONE

    def _check_entry(
        self,
        bias: Bias,
        acceleration: bool,
        five_sec: IndicatorState,
        fifteen_sec: IndicatorState,
        price: float,
    ) -> EntrySignal:
        p = self.profile
        self.last_reject_reason = None
        if self.active_position is not None:
            return self._reject("position_active")
        if not (p.min_price <= price <= p.max_price):
            return self._reject("price_out_of_band")
        if len(self.recent_prices) < p.window_len:
            return self._reject("window_filling")
        if p.require_bias and (bias is Bias.NEUTRAL or not acceleration):
            return self._reject("no_bias")

        slope = five_sec.momentum_slope
        if slope is None:
            return self._reject("fast_slope_missing")

        regime = fifteen_sec.momentum_slope
        if p.regime_min_slope is not None and regime is not None and abs(regime) < p.regime_min_slope:
            return self._reject("regime_flat")

        long_ok = slope > p.entry_slope and price > self.window_high
        short_ok = slope < -p.entry_slope and price < self.window_low
        if p.require_bias:
            long_ok = long_ok and bias is Bias.LONG
            short_ok = short_ok and bias is Bias.SHORT

        if long_ok:
            return EntrySignal.LONG
        if short_ok:
            return EntrySignal.SHORT
        return self._reject("no_breakout")

    def _check_exit(self, price: float, five_sec: IndicatorState, one_min: IndicatorState) -> ExitSignal:
        p = self.profile
        side, entry = self.active_position, self.entry_price
        if side is None or entry is None:
            return ExitSignal.NONE

        if p.exit_on_fast_flip and five_sec.momentum_slope is not None:
            if _slope_against(side, five_sec.momentum_slope):
                return ExitSignal.FULL_EXIT

        if p.exit_on_trend_flip and one_min.momentum_slope is not None:
            if _slope_against(side, one_min.momentum_slope):
                return ExitSignal.FULL_EXIT

        pct_change = (price - entry) / entry if entry > 0 else 0.0
        # a short profits when the reference (YES) price falls
        gain = pct_change if side is Side.LONG else -pct_change

        if p.stop_loss_pct is not None and gain <= -p.stop_loss_pct + _EPS:
            return ExitSignal.STOP_LOSS
        if side is Side.LONG and p.exit_ceiling is not None and price >= p.exit_ceiling:
            return ExitSignal.FULL_EXIT
        if side is Side.SHORT and p.exit_floor is not None and price <= p.exit_floor:
            return ExitSignal.FULL_EXIT
        if p.scale_out_50_pct is not None and gain >= p.scale_out_50_pct - _EPS and self.scale_stage < 2:
            return ExitSignal.SCALE_OUT_50
        if p.scale_out_25_pct is not None and gain >= p.scale_out_25_pct - _EPS and self.scale_stage < 1:
            return ExitSignal.SCALE_OUT_25
        return ExitSignal.NONE


def _slope_against(side: Side, slope: float) -> bool:
    if side is Side.LONG:
        return slope < 0.0
    return slope > 0.0
