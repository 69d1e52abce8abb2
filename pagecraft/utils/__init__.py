# Utils package
from .history_store import SessionHistoryStore
from .quality_monitor import QualityMonitor, DegradationReport
from .rollback import RollbackManager
from .timeouts import call_with_timeout

__all__ = [
    "SessionHistoryStore",
    "QualityMonitor",
    "DegradationReport",
    "RollbackManager",
    "call_with_timeout",
]
