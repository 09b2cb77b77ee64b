import pytest

from polymarket_scalper.config import load_config


@pytest.fixture
def cfg(tmp_path):
    c = load_config()
    c["validation"]["output_dir"] = str(tmp_path / "validation")
    c["storage"]["events_path"] = str(tmp_path / "events.jsonl")
    return c
