from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Side(str, Enum):
    LONG = "LONG"  # holds the YES/Up token
    SHORT = "SHORT"  # holds the NO/Down token

    @property
    def token(self) -> str:
        return "YES" if self is Side.LONG else "NO"


class Bias(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"


class EntrySignal(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NONE = "NONE"

    def side(self) -> Optional[Side]:
        if self is EntrySignal.LONG:
            return Side.LONG
        if self is EntrySignal.SHORT:
            return Side.SHORT
        return None


class ExitSignal(str, Enum):
    NONE = "NONE"
    FULL_EXIT = "FULL_EXIT"
    SCALE_OUT_25 = "SCALE_OUT_25"
    SCALE_OUT_50 = "SCALE_OUT_50"
    STOP_LOSS = "STOP_LOSS"


class Candle(BaseModel):
    start_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class IndicatorState(BaseModel):
    ema9: Optional[float] = None
    ema21: Optional[float] = None
    rsi14: Optional[float] = None
    momentum_slope: Optional[float] = None


class SignalState(BaseModel):
    bias: Bias = Bias.NEUTRAL
    acceleration: bool = False
    entry: EntrySignal = EntrySignal.NONE
    exit: ExitSignal = ExitSignal.NONE


class Decision(BaseModel):
    approved: bool
    reason: str


class SideQuote(BaseModel):
    midpoint: Optional[float] = None
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    top5_bid_depth: float = 0.0
    top5_ask_depth: float = 0.0

    @property
    def spread(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return self.best_ask - self.best_bid


class DualSnapshot(BaseModel):
    yes: SideQuote
    no: SideQuote
    ts: float

    def quote(self, side: Side) -> SideQuote:
        return self.yes if side is Side.LONG else self.no

    def reference_price(self) -> Optional[float]:
        if self.yes.midpoint is not None:
            return self.yes.midpoint
        if self.yes.best_bid is not None and self.yes.best_ask is not None:
            return (self.yes.best_bid + self.yes.best_ask) / 2.0
        return None

    def ask_sum(self) -> Optional[float]:
        if self.yes.best_ask is None or self.no.best_ask is None:
            return None
        return self.yes.best_ask + self.no.best_ask


class MarketRef(BaseModel):
    market_id: str
    slug: Optional[str] = None
    question: Optional[str] = None
    active: Optional[bool] = None
    closed: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    outcomes: Optional[List[str]] = None
    token_ids: Optional[List[str]] = None


class WatchedMarket(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    slug: str
    yes_token_id: str
    no_token_id: str
    end_time: datetime


class ShadowPosition(BaseModel):
    side: Optional[Side] = None
    entry_price: float = 0.0
    size: float = 0.0  # shares still held
    bankroll_usd: float
    position_size_usd: float = 0.0  # cost basis still at risk
    stake_usd: float = 0.0  # cost basis at entry
    realized_pnl: float = 0.0  # session total, fraction of stake per trade
    position_realized_pnl: float = 0.0
    position_pnl_usd: float = 0.0
    scale_stage: int = 0
    entry_timestamp: Optional[float] = None
    last_exit_timestamp: Optional[float] = None
    long_locked: bool = False
    short_locked: bool = False
    market_slug: str = ""

    @property
    def is_active(self) -> bool:
        return self.side is not None

    def is_locked(self, side: Side) -> bool:
        return self.long_locked if side is Side.LONG else self.short_locked


class TradeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    market_slug: str
    token_side: str
    entry_price: float
    exit_price: float
    pnl_percent: float  # fraction, 0.12 == +12%
    pnl_usd: float
    bankroll_after: float
    duration_seconds: int


class MarketRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    market_slug: str
    trades: int
    total_pnl_percent: float
    wins: int
    losses: int
