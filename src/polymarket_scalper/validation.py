from __future__ import annotations

from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from polymarket_scalper.models import MarketRecord, TradeRecord
from polymarket_scalper.utils.storage import append_csv_row, write_json
from polymarket_scalper.utils.telemetry import EventLog


TRADE_CSV_HEADER = [
    "market_slug",
    "token_side",
    "entry_price",
    "exit_price",
    "pnl_percent",
    "pnl_usd",
    "bankroll_after",
    "duration_seconds",
]

LOW_PARTICIPATION_PCT = 40.0
HIGH_PARTICIPATION_PCT = 80.0


def new_session_id(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d_%H%M%S")


def participation_note(rate_pct: float) -> tuple[str, str]:
    if rate_pct < LOW_PARTICIPATION_PCT:
        return "warn", "Participation rate < 40% - model may be over-filtered"
    if rate_pct > HIGH_PARTICIPATION_PCT:
        return "warn", "Participation rate > 80% - model may be over-permissive"
    return "info", "Participation rate in healthy range (40-80%)"


class ValidationTracker:
    """Session-wide trade/market ledger with CSV and JSON exports.

    Export failures are logged and never propagate into the trading loop.
    """

    def __init__(
        self,
        starting_capital: float,
        max_markets: int = 0,
        output_dir: str = "validation",
        session_id: Optional[str] = None,
        events: Optional[EventLog] = None,
    ):
        self.starting_capital = float(starting_capital)
        self.max_markets = int(max_markets)
        self.output_dir = Path(output_dir)
        self.session_id = session_id or new_session_id()
        self.events = events or EventLog.silent()

        self.trades: List[TradeRecord] = []
        self.markets: List[MarketRecord] = []
        self.current_market_trades: List[TradeRecord] = []
        self.completed_markets = 0

        self.signals_generated = 0
        self.entries_taken = 0
        self.entries_blocked_by_filter = 0
        self.filter_reasons: Counter = Counter()

    @property
    def csv_path(self) -> Path:
        return self.output_dir / f"session_{self.session_id}_trades.csv"

    @property
    def json_path(self) -> Path:
        return self.output_dir / f"session_{self.session_id}_summary.json"

    def record_signal(self) -> None:
        self.signals_generated += 1

    def record_entry_taken(self) -> None:
        self.entries_taken += 1

    def record_entry_blocked(self, reason: str = "filter") -> None:
        self.entries_blocked_by_filter += 1
        self.filter_reasons[reason] += 1

    def participation_rate(self) -> float:
        if self.signals_generated == 0:
            return 0.0
        return self.entries_taken / self.signals_generated * 100.0

    def is_complete(self) -> bool:
        return self.max_markets > 0 and self.completed_markets >= self.max_markets

    def record_trade(self, record: TradeRecord) -> None:
        self.current_market_trades.append(record)
        self.trades.append(record)
        self._export_csv(record)

    def finalize_market(self, market_slug: str) -> MarketRecord:
        wins = sum(1 for t in self.current_market_trades if t.pnl_percent > 0)
        losses = sum(1 for t in self.current_market_trades if t.pnl_percent < 0)
        total = sum(t.pnl_percent for t in self.current_market_trades)
        rec = MarketRecord(
            market_slug=market_slug,
            trades=len(self.current_market_trades),
            total_pnl_percent=total,
            wins=wins,
            losses=losses,
        )
        self.markets.append(rec)
        self.current_market_trades = []
        self.completed_markets += 1
        self.events.info(
            "market_finalized",
            f"MARKET DONE {market_slug} trades={rec.trades} W/L={wins}/{losses} pnl={total * 100:+.2f}% "
            f"({self.completed_markets}{'/' + str(self.max_markets) if self.max_markets else ''})",
            **rec.model_dump(),
        )
        self.export_json()
        return rec

    def summary(self) -> dict:
        pnls = [t.pnl_percent for t in self.trades]
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        total_trades = len(pnls)
        net_usd = sum(t.pnl_usd for t in self.trades)
        return {
            "session_id": self.session_id,
            "markets": [m.model_dump() for m in self.markets],
            "total_trades": total_trades,
            "completed_markets": self.completed_markets,
            "win_rate_pct": (len(wins) / total_trades * 100.0) if total_trades else 0.0,
            "avg_win_pct": (sum(wins) / len(wins) * 100.0) if wins else 0.0,
            "avg_loss_pct": (sum(losses) / len(losses) * 100.0) if losses else 0.0,
            "total_pnl_pct": sum(pnls) * 100.0,
            "max_win_pct": max(wins, default=0.0) * 100.0,
            "max_loss_pct": min(losses, default=0.0) * 100.0,
            "starting_capital_usd": self.starting_capital,
            "ending_capital_usd": self.starting_capital + net_usd,
            "net_profit_usd": net_usd,
            "return_on_capital_pct": (net_usd / self.starting_capital * 100.0) if self.starting_capital else 0.0,
            "signals_generated": self.signals_generated,
            "entries_taken": self.entries_taken,
            "entries_blocked_by_filter": self.entries_blocked_by_filter,
            "participation_rate_pct": self.participation_rate(),
            "filter_reasons": dict(self.filter_reasons),
        }

    def export_json(self) -> bool:
        try:
            write_json(str(self.json_path), self.summary())
            return True
        except OSError as e:
            self.events.error("export_error", f"summary export failed: {e}", path=str(self.json_path), error=str(e))
            return False

    def _export_csv(self, t: TradeRecord) -> bool:
        row = [
            t.market_slug,
            t.token_side,
            f"{t.entry_price:.4f}",
            f"{t.exit_price:.4f}",
            f"{t.pnl_percent * 100:.2f}",
            f"{t.pnl_usd:.4f}",
            f"{t.bankroll_after:.2f}",
            t.duration_seconds,
        ]
        try:
            append_csv_row(str(self.csv_path), TRADE_CSV_HEADER, row)
            return True
        except OSError as e:
            self.events.error("export_error", f"trade export failed: {e}", path=str(self.csv_path), error=str(e))
            return False

    def print_summary(self) -> None:
        s = self.summary()
        rate = s["participation_rate_pct"]
        level, note = participation_note(rate)
        lines = [
            "============ FINAL PERFORMANCE ============",
            f"Starting Capital: ${s['starting_capital_usd']:.2f}",
            f"Ending Capital: ${s['ending_capital_usd']:.2f}",
            f"Net USD: {s['net_profit_usd']:+.4f}",
            f"Capital Return: {s['return_on_capital_pct']:.2f}%",
            "--------------------------------------------",
            f"Markets: {s['completed_markets']}",
            f"Total Trades: {s['total_trades']}",
            f"Win Rate: {s['win_rate_pct']:.2f}%",
            f"Average Win: {s['avg_win_pct']:.4f}%",
            f"Average Loss: {s['avg_loss_pct']:.4f}%",
            f"Total PnL (Strategy Edge): {s['total_pnl_pct']:.4f}%",
            f"Max Win: {s['max_win_pct']:.4f}%",
            f"Max Loss: {s['max_loss_pct']:.4f}%",
            "--------------------------------------------",
            f"Signals Generated: {s['signals_generated']}",
            f"Entries Taken: {s['entries_taken']}",
            f"Entries Blocked by Filter: {s['entries_blocked_by_filter']}",
            f"Participation Rate: {rate:.2f}%",
            "============================================",
            f"Session ID: {self.session_id}",
            f"Results saved to: {self.output_dir}/",
        ]
        for ln in lines:
            self.events.console.print(ln, highlight=False)
        self.events.emit("participation", note, level=level, participation_rate_pct=rate)
        self.events.info("session_summary", **{k: v for k, v in s.items() if k != "markets"})
