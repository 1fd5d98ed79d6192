"""JSON-lines audit trail of submission lifecycle transitions."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Optional


class EventLog:
    """Append one JSON record per event to ``path``; does nothing when ``path`` is None."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._lock = threading.Lock()

    def event(self, step: str, submission_id: Optional[str] = None, status: str = "ok", **kw: object) -> None:
        if self.path is None:
            return
        rec = {"ts": time.time(), "step": step, "submission_id": submission_id, "status": status}
        rec.update(kw)
        line = json.dumps(rec, default=str) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
