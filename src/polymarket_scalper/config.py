from __future__ import annotations

import copy
from pathlib import Path
from typing import Optional

import yaml


DEFAULT_CONFIG: dict = {
    "app": {
        "poll_seconds": 1.0,
        "discovery_retry_seconds": 2.0,
        "identity_check_seconds": 30.0,
        "pnl_tick_seconds": 10.0,
        "debug": False,
    },
    "data": {
        "gamma_rest_base": "https://gamma-api.polymarket.com",
        "clob_rest_base": "https://clob.polymarket.com",
        "timeout_seconds": 5.0,
        "slug_prefix": "btc-updown-5m-",
        "search_query": "btc-updown-5m",
        "contract_seconds": 300,
        "volume_mode": "snapshot",
        "candle_intervals": [5, 15, 60],
    },
    "strategy": {
        "profile": "expansion",
    },
    "filters": {
        "min_ask": 0.35,
        "max_ask": 0.65,
        "spread_pct_of_ask": 0.10,
        "min_spread_cap": 0.03,
        "complement_tolerance": 0.10,
        "min_contract_age_seconds": 15.0,
    },
    "paper": {
        "starting_bankroll_usd": 4.0,
        "stake_usd": 1.0,
        "min_bankroll_usd": 0.5,
        "cooldown_seconds": 15.0,
        "min_seconds_remaining": 30.0,
        "max_seconds_remaining": 280.0,
    },
    "validation": {
        "enabled": False,
        "max_markets": 0,
        "output_dir": "validation",
    },
    "storage": {
        "events_path": "data/events.jsonl",
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: Optional[str] = None) -> dict:
    if not path:
        return copy.deepcopy(DEFAULT_CONFIG)
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)
    raw = yaml.safe_load(p.read_text()) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return _deep_merge(DEFAULT_CONFIG, raw)
