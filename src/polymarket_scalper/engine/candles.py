from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterable, Optional

from polymarket_scalper.models import Candle
from polymarket_scalper.utils.telemetry import EventLog


MAX_BUFFER_LEN = 100
DEFAULT_INTERVALS = (5, 15, 60)


class VolumeMode(str, Enum):
    SNAPSHOT = "snapshot"  # input is cumulative book depth
    DELTA = "delta"  # input is already the traded/added volume


def bucket_start(epoch_seconds: int, interval: int) -> int:
    return (int(epoch_seconds) // int(interval)) * int(interval)


def is_late_tick(bucket: int, current_start: int) -> bool:
    return bucket < current_start


def is_price_valid(price: float, spread: float) -> bool:
    if price is None or not math.isfinite(price):
        return False
    if price <= 0.01:
        return False
    if price >= 0.99 and spread > 0.9:
        return False
    return True


class CandleAggregator:
    def __init__(
        self,
        interval_seconds: int,
        max_len: int = MAX_BUFFER_LEN,
        volume_mode: VolumeMode = VolumeMode.SNAPSHOT,
        events: Optional[EventLog] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = int(interval_seconds)
        self.volume_mode = VolumeMode(volume_mode)
        self.buffer: Deque[Candle] = deque(maxlen=max_len)
        self.current: Optional[Candle] = None
        self._last_snapshot_vol: Optional[float] = None
        self.events = events or EventLog.silent()

    def _volume_delta(self, volume: float) -> float:
        if self.volume_mode is VolumeMode.DELTA:
            return float(volume)
        prev = self._last_snapshot_vol if self._last_snapshot_vol is not None else float(volume)
        self._last_snapshot_vol = float(volume)
        # depth can vanish between polls; never book that as negative volume
        return max(0.0, float(volume) - prev)

    def update(self, price: float, volume: float, epoch_seconds: int) -> Optional[Candle]:
        bucket = bucket_start(epoch_seconds, self.interval_seconds)
        cur = self.current

        if cur is not None and is_late_tick(bucket, cur.start_time):
            return None

        delta_vol = self._volume_delta(volume)

        if cur is not None and bucket == cur.start_time:
            cur.high = max(cur.high, price)
            cur.low = min(cur.low, price)
            cur.close = price
            cur.volume += delta_vol
            return None

        closed = None
        if cur is not None:
            closed = cur
            self.buffer.append(closed)
            self.events.debug(
                "candle_close",
                f"CANDLE CLOSE {self.interval_seconds}s O={closed.open:.4f} H={closed.high:.4f} "
                f"L={closed.low:.4f} C={closed.close:.4f} V={closed.volume:.4f}",
                interval=self.interval_seconds,
                **closed.model_dump(),
            )

        self.current = Candle(
            start_time=bucket,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=delta_vol,
        )
        self.events.debug(
            "candle_start",
            f"CANDLE START {self.interval_seconds}s open={price:.4f} start={bucket}",
            interval=self.interval_seconds,
            start_time=bucket,
        )
        return closed

    def last(self) -> Optional[Candle]:
        return self.buffer[-1] if self.buffer else None

    def reset(self) -> None:
        self.buffer.clear()
        self.current = None
        self._last_snapshot_vol = None


@dataclass
class TickResult:
    accepted: bool
    closed: Dict[int, Candle] = field(default_factory=dict)

    def closed_interval(self, interval: int) -> Optional[Candle]:
        return self.closed.get(interval)


class CandleEngine:
    def __init__(
        self,
        intervals: Iterable[int] = DEFAULT_INTERVALS,
        volume_mode: VolumeMode = VolumeMode.SNAPSHOT,
        max_len: int = MAX_BUFFER_LEN,
        events: Optional[EventLog] = None,
    ):
        self.aggregators: Dict[int, CandleAggregator] = {
            int(i): CandleAggregator(int(i), max_len=max_len, volume_mode=volume_mode, events=events)
            for i in intervals
        }

    @property
    def intervals(self) -> list[int]:
        return sorted(self.aggregators)

    def set_volume_mode(self, mode: VolumeMode) -> None:
        for agg in self.aggregators.values():
            agg.volume_mode = VolumeMode(mode)

    def update(self, price: float, spread: float, volume: float, epoch_seconds: int) -> TickResult:
        if not is_price_valid(price, spread):
            return TickResult(accepted=False)
        closed: Dict[int, Candle] = {}
        for interval, agg in self.aggregators.items():
            c = agg.update(price, volume, epoch_seconds)
            if c is not None:
                closed[interval] = c
        return TickResult(accepted=True, closed=closed)

    def last(self, interval: int) -> Optional[Candle]:
        agg = self.aggregators.get(int(interval))
        return agg.last() if agg else None

    def get_last_5s(self) -> Optional[Candle]:
        return self.last(5)

    def get_last_15s(self) -> Optional[Candle]:
        return self.last(15)

    def get_last_1m(self) -> Optional[Candle]:
        return self.last(60)

    def reset(self) -> None:
        for agg in self.aggregators.values():
            agg.reset()
