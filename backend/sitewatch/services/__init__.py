"""Services for target scheduling, checking, alerting and live updates."""
from .checker import CheckerService, PerformanceScorer
from .scheduler import SchedulerService, SchedulerStatus, build_scheduler_service
from .alerter import AlerterService, NotificationDispatcher
from .result_store import ResultStore
from .target_registry import TargetRegistry, StorageUnavailableError
from .tls_inspector import TLSInspector
from .websocket_manager import ConnectionManager, NullBroadcaster

__all__ = [
    "CheckerService",
    "PerformanceScorer",
    "SchedulerService",
    "SchedulerStatus",
    "build_scheduler_service",
    "AlerterService",
    "NotificationDispatcher",
    "ResultStore",
    "TargetRegistry",
    "StorageUnavailableError",
    "TLSInspector",
    "ConnectionManager",
    "NullBroadcaster",
]
