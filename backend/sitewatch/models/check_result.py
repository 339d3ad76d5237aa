"""CheckResultRecord model - append-only history of scheduled ticks."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.orm import relationship

from ..database import Base


class CheckResultRecord(Base):
    """Merged outcome of one tick for one target."""

    __tablename__ = "check_results"
    __table_args__ = (
        Index("ix_check_results_target_checked_at", "target_id", "checked_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(Integer, ForeignKey("targets.id", ondelete="CASCADE"), nullable=False)
    checked_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(String, nullable=False)  # up, down, degraded
    response_time_ms = Column(Integer, nullable=False, default=0)
    status_code = Column(Integer, nullable=True)
    error_message = Column(String, nullable=True)
    ssl_expiry_days = Column(Integer, nullable=True)
    ssl_valid = Column(Boolean, nullable=True)
    ssl_grade = Column(String, nullable=True)
    ssl_issuer = Column(String, nullable=True)
    ssl_chain_valid = Column(Boolean, nullable=True)
    performance_score = Column(Integer, nullable=True)
    page_size_bytes = Column(Integer, nullable=True)

    # Relationships
    target = relationship("Target", back_populates="results")
