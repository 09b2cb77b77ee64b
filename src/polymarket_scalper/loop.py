import argparse
import asyncio
from typing import Optional

from polymarket_scalper.adapters.clob import ClobAdapter
from polymarket_scalper.adapters.gamma import GammaAdapter
from polymarket_scalper.config import load_config
from polymarket_scalper.utils.telemetry import EventLog
from polymarket_scalper.watcher import MarketWatcher


def build_watcher(cfg: dict, events: Optional[EventLog] = None) -> MarketWatcher:
    data = cfg["data"]
    events = events or EventLog(
        events_path=cfg["storage"].get("events_path"),
        debug=bool(cfg["app"].get("debug", False)),
    )
    timeout = float(data.get("timeout_seconds", 5.0))
    gamma = GammaAdapter(data["gamma_rest_base"], timeout=timeout)
    clob = ClobAdapter(data["clob_rest_base"], timeout=timeout, events=events)
    return MarketWatcher(cfg, gamma, clob, events=events)


async def run_forever(cfg: dict) -> MarketWatcher:
    watcher = build_watcher(cfg)
    await watcher.run()
    return watcher


def main(argv=None):
    parser = argparse.ArgumentParser(description="Shadow-trade the rolling BTC 5m Up/Down market.")
    parser.add_argument("--config", default=None, help="YAML config (defaults are used when omitted)")
    parser.add_argument("--profile", choices=["expansion", "staged"], default=None)
    parser.add_argument("--validate", type=int, default=None, metavar="N", help="stop after N finalized markets")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    if args.profile:
        cfg["strategy"]["profile"] = args.profile
    if args.validate is not None:
        cfg["validation"]["enabled"] = True
        cfg["validation"]["max_markets"] = args.validate
    if args.debug:
        cfg["app"]["debug"] = True

    try:
        asyncio.run(run_forever(cfg))
    except KeyboardInterrupt:
        # signal handlers are unavailable on some platforms; the watcher already flushed in its finally
        pass


if __name__ == "__main__":
    main()
