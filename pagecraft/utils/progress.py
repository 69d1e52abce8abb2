"""Progress reporting shared by the agents, graphs and the chain."""

import os
from typing import Callable, Optional


class ProgressReporter:
    """Mixin: route status lines to `on_progress`, falling back to stdout."""

    on_progress: Optional[Callable[[str], None]] = None
    verbose_logs: bool = os.getenv("VERBOSE_LOGS", "0") == "1"

    def _notify(self, message: str) -> None:
        safe_message = str(message).encode("utf-8", "backslashreplace").decode("utf-8")
        if self.on_progress:
            try:
                self.on_progress(safe_message)
                return
            except Exception as callback_error:
                print(f"⚠️ Progress callback failed: {callback_error}")
        print(safe_message)

    def _debug(self, message: str) -> None:
        if self.verbose_logs:
            self._notify(f"DEBUG: {message}")
