"""Alert models - rules, fired events and per-channel deliveries."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.orm import relationship

from ..database import Base


class AlertRule(Base):
    """Per-target notification channel configuration."""

    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(Integer, ForeignKey("targets.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String, nullable=False)  # email, sms, webhook
    destination = Column(String, nullable=False)  # address, phone number or URL
    enabled = Column(Boolean, default=True)
    slow_response_threshold_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    target = relationship("Target", back_populates="alert_rules")


class AlertEvent(Base):
    """Record of an alert firing.

    Targets are referenced by id only, so events survive target deletion.
    """

    __tablename__ = "alert_events"
    __table_args__ = (
        Index("ix_alert_events_target_type_triggered", "target_id", "alert_type", "triggered_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(Integer, nullable=False)
    alert_type = Column(String, nullable=False)  # status_change, ssl_expiry, performance
    message = Column(String, nullable=False)
    severity = Column(String, nullable=False, default="medium")  # low, medium, high, critical
    triggered_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    delivery_status = Column(String, nullable=False, default="pending")  # pending, sent, failed

    deliveries = relationship("AlertDelivery", back_populates="event", cascade="all, delete-orphan")


class AlertDelivery(Base):
    """Outcome of sending one alert event through one rule's channel."""

    __tablename__ = "alert_deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("alert_events.id", ondelete="CASCADE"), nullable=False)
    channel = Column(String, nullable=False)
    destination = Column(String, nullable=False)
    success = Column(Boolean, nullable=False)
    sent_at = Column(DateTime, default=datetime.utcnow)

    event = relationship("AlertEvent", back_populates="deliveries")
