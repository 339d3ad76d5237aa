"""Target model - websites being monitored."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship

from ..config import settings
from ..database import Base


class Target(Base):
    """A monitored URL together with its check configuration."""

    __tablename__ = "targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=True, index=True)  # Owning user, managed by the API layer
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    monitor_type = Column(String, default="uptime")
    check_interval = Column(Integer, default=lambda: settings.default_check_interval)  # seconds
    timeout = Column(Integer, default=lambda: settings.default_timeout)  # seconds
    enabled = Column(Boolean, default=True)
    status = Column(String, nullable=True)  # cached last-known status: up, down, degraded
    last_checked = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    results = relationship("CheckResultRecord", back_populates="target", cascade="all, delete-orphan")
    ssl_checks = relationship("SSLCheck", back_populates="target", cascade="all, delete-orphan")
    alert_rules = relationship("AlertRule", back_populates="target", cascade="all, delete-orphan")
