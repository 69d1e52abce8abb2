"""
Session History Store - append-only log of completed turns, keyed by session id.

In-memory by default; when a directory is given every turn is also appended
as one JSON line to `<history_dir>/<session_id>.jsonl`.
"""

import json
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..session import Turn


class SessionHistoryStore:
    """Thread-safe, append-only turn log."""

    def __init__(self, history_dir: Optional[str] = None):
        self._lock = threading.Lock()
        self._logs: Dict[str, List[Turn]] = {}
        self.history_dir = Path(history_dir) if history_dir else None
        if self.history_dir:
            self.history_dir.mkdir(parents=True, exist_ok=True)

    def _log_path(self, session_id: str) -> Path:
        if not re.match(r"^[a-zA-Z0-9_-]+$", session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.history_dir / f"{session_id}.jsonl"

    def append(self, session_id: str, turn: Turn) -> None:
        """Atomically append one completed turn."""
        with self._lock:
            self._logs.setdefault(session_id, []).append(turn)
            if self.history_dir:
                with open(self._log_path(session_id), "a", encoding="utf-8") as f:
                    f.write(json.dumps(turn.to_dict(), ensure_ascii=False) + "\n")

    def turns(self, session_id: str) -> List[Turn]:
        with self._lock:
            return list(self._logs.get(session_id, []))

    def latest(self, session_id: str) -> Optional[Turn]:
        with self._lock:
            log = self._logs.get(session_id)
            return log[-1] if log else None

    def load(self, session_id: str) -> List[Turn]:
        """Restore a session's log from disk (no-op without a history dir)."""
        if not self.history_dir:
            return self.turns(session_id)
        path = self._log_path(session_id)
        loaded: List[Turn] = []
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        loaded.append(Turn.from_dict(json.loads(line)))
        with self._lock:
            self._logs[session_id] = loaded
        return list(loaded)

    def sessions(self) -> List[str]:
        with self._lock:
            return sorted(self._logs)

    def forget(self, session_id: str) -> None:
        """Drop the in-memory log of a torn-down session; files on disk are kept."""
        with self._lock:
            self._logs.pop(session_id, None)
