from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import httpx

from polymarket_scalper.adapters.clob import ClobAdapter
from polymarket_scalper.adapters.gamma import GammaAdapter
from polymarket_scalper.discovery import MarketDiscovery
from polymarket_scalper.engine.candles import CandleEngine, VolumeMode
from polymarket_scalper.engine.indicators import IndicatorEngine
from polymarket_scalper.engine.signal import SignalEngine, profile_from_config
from polymarket_scalper.models import (
    Bias,
    DualSnapshot,
    EntrySignal,
    ExitSignal,
    IndicatorState,
    Side,
    SignalState,
    TradeRecord,
    WatchedMarket,
)
from polymarket_scalper.risk.guards import check_entry
from polymarket_scalper.sim.paper import (
    can_enter,
    close_position,
    init_position,
    open_position,
    reset_for_market,
    scale_out,
    settle_position,
    unrealized_pnl,
)
from polymarket_scalper.utils.telemetry import EventLog
from polymarket_scalper.validation import ValidationTracker


_SCALE_FRACTIONS = {
    ExitSignal.SCALE_OUT_25: (0.25, 1),
    ExitSignal.SCALE_OUT_50: (0.50, 2),
}


def _fmt(v: Optional[float]) -> str:
    return "N/A" if v is None else f"{v:.4f}"


class MarketWatcher:
    """Watches one rolling contract at a time and drives the shadow pipeline.

    All engines are owned here and mutated only from the polling task. On
    rollover they are reset in place; bankroll and the validation history
    carry over.
    """

    def __init__(
        self,
        cfg: dict,
        gamma: GammaAdapter,
        clob: ClobAdapter,
        events: Optional[EventLog] = None,
        tracker: Optional[ValidationTracker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.gamma = gamma
        self.clob = clob
        self.events = events or EventLog.silent()
        self.clock = clock

        app = cfg.get("app", {})
        data = cfg.get("data", {})
        val = cfg.get("validation", {})
        self.poll_seconds = float(app.get("poll_seconds", 1.0))
        self.identity_check_seconds = float(app.get("identity_check_seconds", 30.0))
        self.pnl_tick_seconds = float(app.get("pnl_tick_seconds", 10.0))
        self.contract_seconds = int(data.get("contract_seconds", 300))
        self.stake_usd = float(cfg["paper"]["stake_usd"])

        self.intervals = sorted(int(i) for i in data.get("candle_intervals", [5, 15, 60]))
        self.fast = self.intervals[0]
        self.mid = self.intervals[1] if len(self.intervals) > 1 else self.intervals[0]
        self.slow = self.intervals[-1]

        self.candles = CandleEngine(self.intervals, volume_mode=VolumeMode(data.get("volume_mode", "snapshot")), events=self.events)
        self.indicators: Dict[int, IndicatorEngine] = {
            i: IndicatorEngine(label=f"{i}s", events=self.events) for i in self.intervals
        }
        self.states: Dict[int, IndicatorState] = {i: IndicatorState() for i in self.intervals}
        self.signal = SignalEngine(profile_from_config(cfg), events=self.events)
        self.position = init_position(cfg)
        self.tracker = tracker or ValidationTracker(
            starting_capital=self.position.bankroll_usd,
            max_markets=int(val.get("max_markets", 0)) if val.get("enabled") else 0,
            output_dir=str(val.get("output_dir", "validation")),
            events=self.events,
        )
        self.discovery = MarketDiscovery(
            gamma, cfg, events=self.events, clock=lambda: datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        )

        self.watched: Optional[WatchedMarket] = None
        self.last_snapshot: Optional[DualSnapshot] = None
        self.last_bids: Dict[Side, Optional[float]] = {Side.LONG: None, Side.SHORT: None}
        self.stop_event = asyncio.Event()
        self._last_identity_check = 0.0
        self._last_pnl_tick = 0.0

    # market lifecycle

    def seconds_remaining(self, now: float) -> float:
        if self.watched is None:
            return 0.0
        return self.watched.end_time.timestamp() - now

    def contract_age(self, now: float) -> float:
        if self.watched is None:
            return 0.0
        return now - (self.watched.end_time.timestamp() - self.contract_seconds)

    def reset_engines(self) -> None:
        self.candles.reset()
        for eng in self.indicators.values():
            eng.reset("rollover")
        self.states = {i: IndicatorState() for i in self.intervals}
        self.signal.reset()
        reset_for_market(self.position, self.watched.slug if self.watched else "")
        self.last_snapshot = None
        self.last_bids = {Side.LONG: None, Side.SHORT: None}
        self._last_identity_check = self.clock()

    def set_market(self, watched: WatchedMarket) -> None:
        self.watched = watched
        self.reset_engines()

    async def start(self) -> None:
        self.set_market(await self.discovery.discover_loop())

    def settle_and_finalize(self, reason: str) -> Optional[TradeRecord]:
        now = self.clock()
        slug = self.watched.slug if self.watched else ""
        record = None
        if self.position.is_active:
            side = self.position.side
            last_bid = self.last_bids.get(side)
            record = settle_position(self.position, last_bid, now)
            self.signal.clear_position()
            self.tracker.record_trade(record)
            self.events.info(
                "settlement",
                f"SETTLE {side.token} {slug} last_bid={_fmt(last_bid)} -> {record.exit_price:.1f} "
                f"pnl={record.pnl_percent * 100:+.2f}% (${record.pnl_usd:+.4f}) bankroll=${record.bankroll_after:.2f}",
                reason=reason,
                **record.model_dump(),
            )
        self.tracker.finalize_market(slug)
        return record

    async def rollover(self, reason: str) -> None:
        self.events.info(
            "rollover",
            f"Market {self.watched.slug} {reason}. Looking for next active BTC 5m market...",
            slug=self.watched.slug,
            reason=reason,
        )
        self.settle_and_finalize(reason)
        if self.tracker.is_complete():
            self.stop_event.set()
            return
        self.set_market(await self.discovery.discover_loop())

    async def _market_closed_early(self, now: float) -> bool:
        if self.identity_check_seconds <= 0 or (now - self._last_identity_check) < self.identity_check_seconds:
            return False
        self._last_identity_check = now
        try:
            m = await self.gamma.find_market_by_slug(self.watched.slug)
        except (httpx.HTTPError, ValueError) as e:
            self.events.warn("identity_check_failed", f"warn: identity check failed for {self.watched.slug}: {e}", error=str(e))
            return False
        return m is not None and (m.closed is True or m.active is False)

    # per-tick pipeline

    async def tick(self) -> None:
        if self.watched is None:
            await self.start()
        now = self.clock()
        if now >= self.watched.end_time.timestamp():
            await self.rollover("reached resolution time")
            return
        if await self._market_closed_early(now):
            await self.rollover("closed before its end time")
            return

        snap = await self.clob.fetch_dual_snapshot(self.watched.yes_token_id, self.watched.no_token_id, ts=now)
        self.process_snapshot(snap)

    def process_snapshot(self, snap: DualSnapshot) -> Optional[SignalState]:
        now = snap.ts
        self.last_snapshot = snap
        for side in (Side.LONG, Side.SHORT):
            bid = snap.quote(side).best_bid
            if bid is not None:
                self.last_bids[side] = bid

        ref = snap.reference_price()
        self._log_book(snap, ref, now)
        if ref is None:
            self.events.debug("tick_skipped", "tick skipped: no reference price", reason="no_reference_price")
            return None

        spread = snap.yes.spread if snap.yes.spread is not None else 0.0
        volume = snap.yes.top5_bid_depth + snap.yes.top5_ask_depth
        result = self.candles.update(ref, spread, volume, int(now))
        if not result.accepted:
            self.events.debug("tick_rejected", f"tick rejected price={ref:.4f} spread={spread:.4f}", price=ref, spread=spread)
            return None

        for interval in self.intervals:
            candle = result.closed_interval(interval)
            if candle is not None:
                self.states[interval] = self.indicators[interval].update(candle)

        state = None
        if result.closed_interval(self.fast) is not None:
            state = self.signal_step(snap, ref, now)
        self._maybe_pnl_tick(snap, now)
        return state

    def signal_step(self, snap: DualSnapshot, ref: float, now: float) -> SignalState:
        sig = self.signal.update(self.states[self.fast], self.states[self.mid], self.states[self.slow], ref)
        if sig.bias is not Bias.NEUTRAL or sig.acceleration:
            self.events.debug("bias", f"BIAS {sig.bias.value} accel={sig.acceleration}", bias=sig.bias.value, acceleration=sig.acceleration)
        if sig.exit is not ExitSignal.NONE:
            self._apply_exit(sig.exit, snap, now)
        if sig.entry is not EntrySignal.NONE:
            self._apply_entry(sig.entry.side(), snap, ref, now)
        return sig

    def _exit_bid(self, snap: DualSnapshot, side: Side) -> Optional[float]:
        bid = snap.quote(side).best_bid
        if bid is None:
            bid = self.last_bids.get(side)
        return bid

    def _apply_exit(self, exit_signal: ExitSignal, snap: DualSnapshot, now: float) -> None:
        pos = self.position
        if not pos.is_active:
            return
        side = pos.side
        bid = self._exit_bid(snap, side)
        if bid is None:
            # nothing to sell into; keep holding and let the signal fire again
            self.signal.keep_position()
            self.events.warn(
                "exit_deferred",
                f"EXIT DEFERRED {exit_signal.value} {side.token}: no bid seen",
                signal=exit_signal.value,
                side=side.value,
                reason="no_bid",
            )
            return
        if exit_signal in _SCALE_FRACTIONS:
            fraction, stage = _SCALE_FRACTIONS[exit_signal]
            pnl = scale_out(pos, bid, fraction, stage)
            self.events.info(
                "scale_out",
                f"SCALE OUT {int(fraction * 100)}% {side.token} @ bid {bid:.4f} pnl=${pnl:+.4f} bankroll=${pos.bankroll_usd:.2f}",
                signal=exit_signal.value,
                side=side.value,
                bid=bid,
                pnl_usd=pnl,
                stage=stage,
            )
            return
        record = close_position(pos, bid, now)
        self.tracker.record_trade(record)
        lock = ""
        if record.pnl_usd < 0:
            lock = f" ({side.value} locked until rollover)"
        self.events.info(
            "exit",
            f"EXIT {exit_signal.value} {side.token} @ bid {bid:.4f} pnl={record.pnl_percent * 100:+.2f}% "
            f"(${record.pnl_usd:+.4f}) bankroll=${record.bankroll_after:.2f}{lock}",
            signal=exit_signal.value,
            **record.model_dump(),
        )

    def _block(self, side: Side, reason: str, **fields) -> None:
        self.signal.cancel_entry()
        self.tracker.record_entry_blocked(reason)
        self.events.info("entry_blocked", f"ENTRY BLOCKED {side.value} reason={reason}", side=side.value, reason=reason, **fields)

    def _apply_entry(self, side: Side, snap: DualSnapshot, ref: float, now: float) -> None:
        self.tracker.record_signal()
        decision = check_entry(snap, side, self.contract_age(now), self.cfg)
        if not decision.approved:
            q = snap.quote(side)
            self._block(side, decision.reason, bid=q.best_bid, ask=q.best_ask, ask_sum=snap.ask_sum())
            return
        decision = can_enter(self.position, side, now, self.seconds_remaining(now), self.cfg)
        if not decision.approved:
            self._block(side, decision.reason, bankroll=self.position.bankroll_usd)
            return

        ask = snap.quote(side).best_ask
        stake = open_position(self.position, side, ask, now, self.stake_usd)
        self.tracker.record_entry_taken()
        self.events.info(
            "entry",
            f"ENTRY {side.value} {side.token} @ ask {ask:.4f} ref={ref:.4f} stake=${stake:.2f} "
            f"bankroll=${self.position.bankroll_usd:.2f} rem={self.seconds_remaining(now):.0f}s",
            side=side.value,
            token=side.token,
            ask=ask,
            reference=ref,
            stake_usd=stake,
            bankroll_usd=self.position.bankroll_usd,
        )

    def _maybe_pnl_tick(self, snap: DualSnapshot, now: float) -> None:
        pos = self.position
        if not pos.is_active or (now - self._last_pnl_tick) < self.pnl_tick_seconds:
            return
        self._last_pnl_tick = now
        bid = snap.quote(pos.side).best_bid
        open_usd, pct = unrealized_pnl(pos, bid)
        self.events.info(
            "pnl_tick",
            f"PNL {pos.side.token} entry={pos.entry_price:.4f} bid={_fmt(bid)} unrealized=${open_usd:+.4f} "
            f"trade={pct * 100:+.2f}% session={pos.realized_pnl * 100:+.2f}% bankroll=${pos.bankroll_usd:.2f}",
            side=pos.side.value,
            bid=bid,
            unrealized_usd=open_usd,
            trade_pnl_pct=pct,
        )

    def _log_book(self, snap: DualSnapshot, ref: Optional[float], now: float) -> None:
        y, n = snap.yes, snap.no
        s = snap.ask_sum()
        when = datetime.fromtimestamp(now).strftime("%H:%M:%S")
        self.events.info(
            "book",
            f"{when} {self.watched.label if self.watched else '-'} | ref={_fmt(ref)} "
            f"YES bid={_fmt(y.best_bid)} ask={_fmt(y.best_ask)} spr={_fmt(y.spread)} "
            f"| NO bid={_fmt(n.best_bid)} ask={_fmt(n.best_ask)} spr={_fmt(n.spread)} "
            f"| sum={_fmt(s)} depth={y.top5_bid_depth:.0f}/{y.top5_ask_depth:.0f} "
            f"| rem={max(0.0, self.seconds_remaining(now)):.0f}s",
            reference=ref,
            yes=y.model_dump(),
            no=n.model_dump(),
            ask_sum=s,
        )

    # loop

    def request_stop(self) -> None:
        self.stop_event.set()

    async def _race(self, coro):
        """Run ``coro`` unless a stop request lands first; stop wins ties."""
        task = asyncio.ensure_future(coro)
        stopper = asyncio.ensure_future(self.stop_event.wait())
        done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if stopper in done:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            return True, None
        stopper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stopper
        return False, task.result()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)
        try:
            stopped, _ = await self._race(self.start())
            next_tick = loop.time()
            while not stopped and not self.stop_event.is_set():
                stopped, _ = await self._race(self.tick())
                if stopped or self.stop_event.is_set():
                    break
                next_tick += self.poll_seconds
                now = loop.time()
                if next_tick <= now:
                    # behind schedule: drop the missed ticks instead of bursting
                    missed = int((now - next_tick) // self.poll_seconds) + 1
                    next_tick += missed * self.poll_seconds
                stopped, _ = await self._race(asyncio.sleep(next_tick - now))
        finally:
            self.shutdown()
            await self.gamma.aclose()
            await self.clob.aclose()

    def shutdown(self) -> None:
        pos = self.position
        open_note = ""
        if pos.is_active:
            open_usd, pct = unrealized_pnl(pos, self.last_bids.get(pos.side))
            open_note = f" open={pos.side.token} unrealized=${open_usd:+.4f} ({pct * 100:+.2f}%)"
        self.events.info(
            "shutdown",
            f"Stopping watcher. bankroll=${pos.bankroll_usd:.2f} session_pnl={pos.realized_pnl * 100:+.2f}% "
            f"trades={len(self.tracker.trades)} markets={self.tracker.completed_markets}{open_note}",
            bankroll_usd=pos.bankroll_usd,
            realized_pnl=pos.realized_pnl,
        )
        self.tracker.export_json()
        if self.tracker.max_markets > 0:
            self.tracker.print_summary()
