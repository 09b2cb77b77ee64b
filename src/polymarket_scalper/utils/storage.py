from __future__ import annotations
import csv
import json
import os
from pathlib import Path
from datetime import datetime, timezone
from typing import Iterable, Sequence


def write_json(path: str, payload: dict) -> None:
    # Full rewrite through a temp file so readers never see a partial summary.
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2))
    os.replace(tmp, p)


def append_csv_row(path: str, header: Sequence[str], row: Iterable) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    write_header = not p.exists() or p.stat().st_size == 0
    with p.open("a", newline="") as f:
        w = csv.writer(f, lineterminator="\n")
        if write_header:
            w.writerow(header)
        w.writerow(list(row))


def append_event(path: str, event: dict) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    event = {"ts": datetime.now(timezone.utc).isoformat(), **event}
    with p.open("a") as f:
        f.write(json.dumps(event, default=str) + "\n")
