"""Monitoring API schemas."""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel


class SchedulerStatusResponse(BaseModel):
    running: bool
    active_target_count: int
    process_uptime: float  # seconds


class TLSInfoResponse(BaseModel):
    valid: bool
    days_until_expiry: Optional[int] = None
    issuer: Optional[str] = None
    grade: str
    chain_valid: bool


class CheckResultResponse(BaseModel):
    """One merged check result."""
    target_id: int
    checked_at: datetime
    status: str  # up, down, degraded
    response_time_ms: int
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    performance_score: Optional[int] = None
    page_size_bytes: Optional[int] = None
    tls: Optional[TLSInfoResponse] = None

    @classmethod
    def from_result(cls, result) -> "CheckResultResponse":
        tls = None
        if result.tls is not None:
            tls = TLSInfoResponse(
                valid=result.tls.valid,
                days_until_expiry=result.tls.days_until_expiry,
                issuer=result.tls.issuer,
                grade=result.tls.grade,
                chain_valid=result.tls.chain_valid,
            )
        return cls(
            target_id=result.target_id,
            checked_at=result.checked_at,
            status=result.status,
            response_time_ms=result.response_time_ms,
            status_code=result.status_code,
            error_message=result.error_message,
            performance_score=result.performance_score,
            page_size_bytes=result.page_size_bytes,
            tls=tls,
        )


class ExpiringCertificate(BaseModel):
    target_id: int
    checked_at: datetime
    expires_at: Optional[datetime] = None
    days_until_expiry: int
    issuer: Optional[str] = None
    security_grade: str

    class Config:
        from_attributes = True


class AlertEventResponse(BaseModel):
    id: int
    target_id: int
    alert_type: str  # status_change, ssl_expiry, performance
    message: str
    severity: str
    triggered_at: datetime
    resolved_at: Optional[datetime] = None
    delivery_status: str

    class Config:
        from_attributes = True


class ResultsList(BaseModel):
    items: List[CheckResultResponse]
    count: int
