from polymarket_scalper import loop
from polymarket_scalper.config import load_config
from polymarket_scalper.utils.telemetry import EventLog


def test_cli_flags_override_config(monkeypatch):
    seen = {}

    async def _fake_run(cfg):
        seen["cfg"] = cfg

    monkeypatch.setattr(loop, "run_forever", _fake_run)
    loop.main(["--profile", "staged", "--validate", "3", "--debug"])

    cfg = seen["cfg"]
    assert cfg["strategy"]["profile"] == "staged"
    assert cfg["validation"]["enabled"] is True
    assert cfg["validation"]["max_markets"] == 3
    assert cfg["app"]["debug"] is True


def test_keyboard_interrupt_is_quiet(monkeypatch):
    async def _interrupted(cfg):
        raise KeyboardInterrupt

    monkeypatch.setattr(loop, "run_forever", _interrupted)
    loop.main([])


def test_build_watcher_wires_adapters(tmp_path):
    cfg = load_config()
    cfg["validation"]["enabled"] = True
    cfg["validation"]["max_markets"] = 2
    cfg["validation"]["output_dir"] = str(tmp_path)
    w = loop.build_watcher(cfg, events=EventLog.silent())
    assert w.gamma.base_url == "https://gamma-api.polymarket.com"
    assert w.clob.base_url == "https://clob.polymarket.com"
    assert w.tracker.max_markets == 2
    assert w.signal.profile.name == "expansion"
