from __future__ import annotations

from polymarket_scalper.models import Decision, DualSnapshot, Side


def check_entry(snap: DualSnapshot, side: Side, contract_age_s: float, cfg: dict) -> Decision:
    f = cfg.get("filters", {})
    q = snap.quote(side)
    bid, ask = q.best_bid, q.best_ask

    if bid is None and ask is None:
        return Decision(approved=False, reason="no_liquidity")

    ask_sum = snap.ask_sum()
    if ask_sum is not None and abs(ask_sum - 1.0) > float(f.get("complement_tolerance", 0.10)):
        return Decision(approved=False, reason="book_broken")

    if bid is not None and ask is not None:
        max_spread = max(float(f.get("spread_pct_of_ask", 0.10)) * ask, float(f.get("min_spread_cap", 0.03)))
        if (ask - bid) > max_spread:
            return Decision(approved=False, reason="spread_too_wide")

    if ask is None or not (float(f.get("min_ask", 0.35)) <= ask <= float(f.get("max_ask", 0.65))):
        return Decision(approved=False, reason="ask_out_of_range")

    if contract_age_s < float(f.get("min_contract_age_seconds", 15.0)):
        return Decision(approved=False, reason="contract_too_young")

    return Decision(approved=True, reason="ok")
