"""SSLCheck model - certificate inspection history."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship

from ..database import Base


class SSLCheck(Base):
    """Leaf certificate details captured during a tick."""

    __tablename__ = "ssl_checks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(Integer, ForeignKey("targets.id", ondelete="CASCADE"), nullable=False)
    checked_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    certificate_valid = Column(Boolean, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    days_until_expiry = Column(Integer, nullable=True)
    issuer = Column(String, nullable=True)
    security_grade = Column(String, nullable=False)  # A+, A, B, C, D, F
    chain_valid = Column(Boolean, nullable=False)

    # Relationships
    target = relationship("Target", back_populates="ssl_checks")
