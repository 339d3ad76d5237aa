"""Value types passed between the registry, checks, store and alerter.

Built once at the storage boundary so nothing downstream touches ORM rows.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List

STATUS_UP = "up"
STATUS_DOWN = "down"
STATUS_DEGRADED = "degraded"


@dataclass(frozen=True)
class Target:
    """A monitored URL plus its check configuration."""
    id: int
    url: str
    name: str
    check_interval: int  # seconds
    timeout: int  # seconds
    enabled: bool = True
    owner_id: Optional[int] = None
    monitor_type: str = "uptime"

    @classmethod
    def from_model(cls, row) -> "Target":
        return cls(
            id=row.id,
            url=row.url,
            name=row.name,
            check_interval=row.check_interval,
            timeout=row.timeout,
            enabled=bool(row.enabled),
            owner_id=row.owner_id,
            monitor_type=row.monitor_type or "uptime",
        )

    def is_valid(self) -> bool:
        """interval > 0 and timeout < interval."""
        return self.check_interval > 0 and 0 < self.timeout < self.check_interval

    def schedule_key(self) -> tuple:
        """Fields whose change requires the ticker to be re-armed."""
        return (self.url, self.check_interval, self.timeout)


@dataclass(frozen=True)
class TLSInfo:
    """TLS summary attached to a check result."""
    valid: bool
    days_until_expiry: Optional[int]
    issuer: Optional[str]
    grade: str
    chain_valid: bool
    expires_at: Optional[datetime] = field(default=None, compare=False)


@dataclass(frozen=True)
class UptimeOutcome:
    status: str
    response_time_ms: int
    status_code: Optional[int] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PerformanceSample:
    elapsed_ms: int
    page_size_bytes: int
    status_code: int
    score: int


@dataclass(frozen=True)
class CheckResult:
    """Merged outcome of one tick. Immutable once produced."""
    target_id: int
    checked_at: datetime
    status: str
    response_time_ms: int
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    performance_score: Optional[int] = None
    page_size_bytes: Optional[int] = None
    tls: Optional[TLSInfo] = None


@dataclass(frozen=True)
class CheckResultRow:
    """Persisted shape of a CheckResult (``check_results`` table)."""
    target_id: int
    checked_at: datetime
    status: str
    response_time_ms: int
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    ssl_expiry_days: Optional[int] = None
    ssl_valid: Optional[bool] = None
    ssl_grade: Optional[str] = None
    ssl_issuer: Optional[str] = None
    ssl_chain_valid: Optional[bool] = None
    performance_score: Optional[int] = None
    page_size_bytes: Optional[int] = None

    @classmethod
    def from_result(cls, result: CheckResult) -> "CheckResultRow":
        tls = result.tls
        return cls(
            target_id=result.target_id,
            checked_at=result.checked_at,
            status=result.status,
            response_time_ms=result.response_time_ms,
            status_code=result.status_code,
            error_message=result.error_message,
            ssl_expiry_days=tls.days_until_expiry if tls else None,
            ssl_valid=tls.valid if tls else None,
            ssl_grade=tls.grade if tls else None,
            ssl_issuer=tls.issuer if tls else None,
            ssl_chain_valid=tls.chain_valid if tls else None,
            performance_score=result.performance_score,
            page_size_bytes=result.page_size_bytes,
        )

    @classmethod
    def from_model(cls, record) -> "CheckResultRow":
        return cls(
            target_id=record.target_id,
            checked_at=record.checked_at,
            status=record.status,
            response_time_ms=record.response_time_ms,
            status_code=record.status_code,
            error_message=record.error_message,
            ssl_expiry_days=record.ssl_expiry_days,
            ssl_valid=record.ssl_valid,
            ssl_grade=record.ssl_grade,
            ssl_issuer=record.ssl_issuer,
            ssl_chain_valid=record.ssl_chain_valid,
            performance_score=record.performance_score,
            page_size_bytes=record.page_size_bytes,
        )

    def as_columns(self) -> dict:
        return dict(self.__dict__)

    def to_result(self) -> CheckResult:
        tls = None
        # A row carries TLS data only when the inspection produced a grade
        if self.ssl_grade is not None:
            tls = TLSInfo(
                valid=bool(self.ssl_valid),
                days_until_expiry=self.ssl_expiry_days,
                issuer=self.ssl_issuer,
                grade=self.ssl_grade,
                chain_valid=bool(self.ssl_chain_valid),
            )
        return CheckResult(
            target_id=self.target_id,
            checked_at=self.checked_at,
            status=self.status,
            response_time_ms=self.response_time_ms,
            status_code=self.status_code,
            error_message=self.error_message,
            performance_score=self.performance_score,
            page_size_bytes=self.page_size_bytes,
            tls=tls,
        )


@dataclass(frozen=True)
class AlertCandidate:
    """An alert the rules say should fire, before suppression."""
    alert_type: str
    message: str
    severity: str


@dataclass
class DeliveryOutcome:
    channel: str
    destination: str
    success: bool


@dataclass
class FiredAlert:
    """An alert that passed suppression and was recorded."""
    id: Optional[int]
    target_id: int
    alert_type: str
    message: str
    severity: str
    triggered_at: datetime
    delivery_status: str
    deliveries: List[DeliveryOutcome] = field(default_factory=list)
