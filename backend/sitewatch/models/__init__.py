"""Database models."""
from .target import Target
from .check_result import CheckResultRecord
from .ssl_check import SSLCheck
from .alert import AlertRule, AlertEvent, AlertDelivery

__all__ = ["Target", "CheckResultRecord", "SSLCheck", "AlertRule", "AlertEvent", "AlertDelivery"]
