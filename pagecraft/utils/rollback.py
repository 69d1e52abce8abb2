"""
Rollback Manager - last known-good CodeSnapshot per session.

snapshot() is taken before a turn touches anything, rollback() restores it
(and re-applies it to the live document if the turn had mutated it), and
commit() promotes a fully accepted snapshot.
"""

import threading
from typing import Dict, Optional

from ..session import CodeSnapshot, Session
from .progress import ProgressReporter
from .timeouts import call_with_timeout


class RollbackManager(ProgressReporter):

    def __init__(self, on_progress: Optional[callable] = None, document_timeout: Optional[float] = 10.0):
        self.on_progress = on_progress
        self.document_timeout = document_timeout
        self._lock = threading.Lock()
        self._checkpoints: Dict[str, CodeSnapshot] = {}

    def snapshot(self, session: Session) -> CodeSnapshot:
        """Remember the session's current snapshot as the turn's restore point."""
        with self._lock:
            self._checkpoints[session.session_id] = session.current
        return session.current

    def checkpoint(self, session: Session) -> CodeSnapshot:
        with self._lock:
            # The empty snapshot is always a valid restore point
            return self._checkpoints.get(session.session_id, session.current)

    def rollback(self, session: Session) -> CodeSnapshot:
        """Restore the checkpoint. Calling it again changes nothing.

        The session's state is restored first and never fails. Re-applying to
        the live document is best effort: if the page is gone or hangs, the
        failure is reported and `document_dirty` stays set so the next apply
        starts from a known state.
        """
        restored = self.checkpoint(session)
        session.current = restored
        if not session.document_dirty:
            return restored
        self._notify(f"↩️ [Rollback] Restoring snapshot v{restored.version} on the live document")
        try:
            call_with_timeout(lambda: session.document.apply(restored), self.document_timeout, "Restore")
        except Exception as e:
            self._notify(f"⚠️ [Rollback] Live document could not be restored: {e}")
            return restored
        session.document_dirty = False
        return restored

    def commit(self, session: Session, new_snapshot: CodeSnapshot) -> CodeSnapshot:
        if not new_snapshot.validated:
            raise ValueError("Refusing to commit a snapshot that has not passed validation")
        session.current = new_snapshot
        session.document_dirty = False
        with self._lock:
            self._checkpoints[session.session_id] = new_snapshot
        self._notify(f"💾 [Rollback] Committed snapshot v{new_snapshot.version}")
        return new_snapshot

    def forget(self, session: Session) -> None:
        with self._lock:
            self._checkpoints.pop(session.session_id, None)
