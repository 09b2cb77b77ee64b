from __future__ import annotations

import math
from collections import deque
from typing import Deque, Optional

from polymarket_scalper.models import Candle, IndicatorState
from polymarket_scalper.utils.telemetry import EventLog


STALE_GAP_SECONDS = 120
MIN_VALID_CLOSE = 0.0001
READY_WARMUP = 5


def is_stale_gap(last_start: Optional[int], start: int, max_gap: int = STALE_GAP_SECONDS) -> bool:
    if last_start is None:
        return False
    return (int(start) - int(last_start)) > max_gap


def is_valid_close(close: float) -> bool:
    return close is not None and math.isfinite(close) and close > MIN_VALID_CLOSE


class Ema:
    def __init__(self, period: int):
        self.period = int(period)
        self.multiplier = 2.0 / (self.period + 1.0)
        self.value: Optional[float] = None
        self.warmup_count = 0

    def update(self, close: float) -> Optional[float]:
        self.warmup_count += 1
        if self.value is None:
            # seeded at the first close, no SMA warmup
            self.value = float(close)
        else:
            self.value = (float(close) - self.value) * self.multiplier + self.value
        return self.value


class Rsi:
    """Wilder RSI with a growing simple mean over the first ``period`` updates."""

    def __init__(self, period: int):
        self.period = int(period)
        self.avg_gain: Optional[float] = None
        self.avg_loss: Optional[float] = None
        self.last_close: Optional[float] = None
        self.value: Optional[float] = None
        self.warmup_count = 0

    def update(self, close: float) -> Optional[float]:
        self.warmup_count += 1
        if self.last_close is None:
            self.last_close = float(close)
            self.avg_gain = 0.0
            self.avg_loss = 0.0
            self._calc()
            return self.value

        change = float(close) - self.last_close
        self.last_close = float(close)
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0

        n = self.warmup_count
        if n <= self.period:
            self.avg_gain = (self.avg_gain * (n - 1) + gain) / n
            self.avg_loss = (self.avg_loss * (n - 1) + loss) / n
        else:
            self.avg_gain = (self.avg_gain * (self.period - 1) + gain) / self.period
            self.avg_loss = (self.avg_loss * (self.period - 1) + loss) / self.period

        self._calc()
        return self.value

    def _calc(self) -> None:
        ag, al = self.avg_gain, self.avg_loss
        if ag is None or al is None or (ag == 0.0 and al == 0.0):
            self.value = 50.0
        elif al == 0.0:
            self.value = 100.0
        elif ag == 0.0:
            self.value = 0.0
        else:
            self.value = 100.0 - (100.0 / (1.0 + ag / al))


class MomentumSlope:
    """OLS slope of close against sample index over a sliding window."""

    def __init__(self, window: int):
        self.window = int(window)
        self.closes: Deque[float] = deque(maxlen=self.window)
        self.value: Optional[float] = None

    def update(self, close: float) -> Optional[float]:
        self.closes.append(float(close))
        n = len(self.closes)
        if n < 2:
            self.value = None
            return None

        mean_x = (n - 1) / 2.0
        var_x = sum((i - mean_x) ** 2 for i in range(n))
        if var_x == 0.0:
            self.value = 0.0
            return self.value
        mean_y = sum(self.closes) / n
        cov_xy = sum((i - mean_x) * (y - mean_y) for i, y in enumerate(self.closes))
        self.value = cov_xy / var_x
        return self.value


class IndicatorEngine:
    def __init__(
        self,
        label: str = "",
        ema_fast: int = 9,
        ema_slow: int = 21,
        rsi_period: int = 14,
        slope_window: int = 14,
        stale_gap_seconds: int = STALE_GAP_SECONDS,
        events: Optional[EventLog] = None,
    ):
        self.label = label
        self._periods = (ema_fast, ema_slow, rsi_period, slope_window)
        self.stale_gap_seconds = stale_gap_seconds
        self.events = events or EventLog.silent()
        self.reset_count = 0
        self._init_state()

    def _init_state(self) -> None:
        ema_fast, ema_slow, rsi_period, slope_window = self._periods
        self.ema9 = Ema(ema_fast)
        self.ema21 = Ema(ema_slow)
        self.rsi14 = Rsi(rsi_period)
        self.slope = MomentumSlope(slope_window)
        self.last_candle_time: Optional[int] = None
        self.prev_ema9: Optional[float] = None
        self.prev_ema21: Optional[float] = None

    def reset(self, reason: str = "manual") -> None:
        self._init_state()
        self.reset_count += 1
        self.events.debug("indicator_reset", f"INDICATORS {self.label} reset ({reason})", timeframe=self.label, reason=reason)

    def is_ready(self) -> bool:
        return self.ema9.warmup_count >= READY_WARMUP

    def ema_cross_up(self) -> bool:
        if not self.is_ready():
            return False
        c9, c21, p9, p21 = self.ema9.value, self.ema21.value, self.prev_ema9, self.prev_ema21
        if None in (c9, c21, p9, p21):
            return False
        return p9 <= p21 and c9 > c21

    def ema_cross_down(self) -> bool:
        if not self.is_ready():
            return False
        c9, c21, p9, p21 = self.ema9.value, self.ema21.value, self.prev_ema9, self.prev_ema21
        if None in (c9, c21, p9, p21):
            return False
        return p9 >= p21 and c9 < c21

    def update(self, candle: Candle) -> IndicatorState:
        close = candle.close
        if not is_valid_close(close):
            return self.get_state()
        if self.last_candle_time is not None:
            if candle.start_time <= self.last_candle_time:
                return self.get_state()
            if is_stale_gap(self.last_candle_time, candle.start_time, self.stale_gap_seconds):
                self.reset("stale_gap")
        self.last_candle_time = candle.start_time

        self.prev_ema9 = self.ema9.value
        self.prev_ema21 = self.ema21.value

        self.ema9.update(close)
        self.ema21.update(close)
        self.rsi14.update(close)
        self.slope.update(close)

        if self._has_invalid_state():
            self.reset("non_finite")
        return self.get_state()

    def _has_invalid_state(self) -> bool:
        for v in (self.ema9.value, self.ema21.value, self.rsi14.value, self.slope.value):
            if v is not None and not math.isfinite(v):
                return True
        return False

    def get_state(self) -> IndicatorState:
        return IndicatorState(
            ema9=self.ema9.value,
            ema21=self.ema21.value,
            rsi14=self.rsi14.value,
            momentum_slope=self.slope.value,
        )
