"""Pydantic schemas for API request/response models."""
from .monitoring import (
    SchedulerStatusResponse,
    TLSInfoResponse,
    CheckResultResponse,
    ExpiringCertificate,
    AlertEventResponse,
    ResultsList,
)

__all__ = [
    "SchedulerStatusResponse",
    "TLSInfoResponse",
    "CheckResultResponse",
    "ExpiringCertificate",
    "AlertEventResponse",
    "ResultsList",
]
