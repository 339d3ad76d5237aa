"""Alerter service - evaluates results, suppresses repeats, sends notifications."""
import asyncio
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import async_session
from ..models import AlertRule, AlertEvent, AlertDelivery
from ..utils.db_utils import retry_on_lock
from .clock import system_clock
from .email_sender import EmailSenderService
from .records import (
    AlertCandidate,
    CheckResult,
    DeliveryOutcome,
    FiredAlert,
    Target,
    STATUS_UP,
    STATUS_DOWN,
    STATUS_DEGRADED,
)

logger = logging.getLogger(__name__)

STATUS_CHANGE = "status_change"
SSL_EXPIRY = "ssl_expiry"
PERFORMANCE = "performance"

DELIVERY_PENDING = "pending"
DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"

# Degraded results only alert when this slow
DEGRADED_ALERT_MS = 10000
# Any result slower than this alerts regardless of status
PERFORMANCE_ALERT_MS = 15000
SSL_EXPIRY_ALERT_DAYS = 30
SSL_URGENT_DAYS = 7
SSL_CRITICAL_DAYS = 1

DEFAULT_SUPPRESSION_MINUTES = 15

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"
CHANNEL_WEBHOOK = "webhook"


def _status_change_alert(target: Target, result: CheckResult) -> Optional[AlertCandidate]:
    if result.status == STATUS_DOWN:
        severity = "critical"
    elif result.status == STATUS_DEGRADED and result.response_time_ms > DEGRADED_ALERT_MS:
        severity = "high"
    else:
        return None

    message = f"Website {target.name} is {result.status.upper()}. Response time: {result.response_time_ms}ms"
    if result.error_message:
        message += f". Error: {result.error_message}"
    return AlertCandidate(alert_type=STATUS_CHANGE, message=message, severity=severity)


def _ssl_expiry_alert(target: Target, result: CheckResult) -> Optional[AlertCandidate]:
    tls = result.tls
    if tls is None or tls.days_until_expiry is None or tls.days_until_expiry > SSL_EXPIRY_ALERT_DAYS:
        return None

    days = tls.days_until_expiry
    if days < 0:
        message = f"CRITICAL: SSL certificate for {target.name} expired {abs(days)} days ago"
        severity = "critical"
    elif days <= SSL_CRITICAL_DAYS:
        message = f"CRITICAL: SSL certificate for {target.name} expires in {days} days"
        severity = "critical"
    elif days <= SSL_URGENT_DAYS:
        message = f"URGENT: SSL certificate for {target.name} expires in {days} days"
        severity = "high"
    else:
        message = f"SSL certificate for {target.name} expires in {days} days"
        severity = "medium"
    message += f" (daysUntilExpiry={days}, grade {tls.grade})"
    return AlertCandidate(alert_type=SSL_EXPIRY, message=message, severity=severity)


def _performance_alert(target: Target, result: CheckResult, threshold_ms: int) -> Optional[AlertCandidate]:
    if result.response_time_ms <= threshold_ms:
        return None
    return AlertCandidate(
        alert_type=PERFORMANCE,
        message=f"Slow response detected for {target.name}: {result.response_time_ms}ms",
        severity="medium",
    )


def evaluate(
    target: Target,
    result: CheckResult,
    performance_threshold_ms: int = PERFORMANCE_ALERT_MS,
) -> List[AlertCandidate]:
    """Apply every alert rule to a result. Each rule is independent."""
    candidates = [
        _status_change_alert(target, result),
        _ssl_expiry_alert(target, result),
        _performance_alert(target, result, performance_threshold_ms),
    ]
    return [c for c in candidates if c is not None]


def resolvable_types(result: CheckResult, performance_threshold_ms: int = PERFORMANCE_ALERT_MS) -> List[str]:
    """Alert types whose condition is known to have cleared for this result."""
    cleared = []
    if result.status == STATUS_UP:
        cleared.append(STATUS_CHANGE)
    if result.tls is not None and result.tls.days_until_expiry is not None \
            and result.tls.days_until_expiry > SSL_EXPIRY_ALERT_DAYS:
        cleared.append(SSL_EXPIRY)
    if result.response_time_ms <= performance_threshold_ms:
        cleared.append(PERFORMANCE)
    return cleared


class NotificationDispatcher:
    """Delivers one alert through one rule's channel."""

    def __init__(
        self,
        email_sender: Optional[EmailSenderService] = None,
        sms_gateway_url: Optional[str] = None,
        webhook_timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.email_sender = email_sender
        self.sms_gateway_url = sms_gateway_url
        self.webhook_timeout = webhook_timeout
        self._transport = transport

    async def deliver(
        self,
        channel: str,
        destination: str,
        target: Target,
        alert: AlertCandidate,
        result: CheckResult,
    ) -> bool:
        if channel == CHANNEL_EMAIL:
            return await self._send_email(destination, target, alert, result)
        if channel == CHANNEL_WEBHOOK:
            return await self._post_json(destination, self._webhook_payload(target, alert, result))
        if channel == CHANNEL_SMS:
            if not self.sms_gateway_url:
                logger.warning(f"SMS alert for {target.name} not sent: no SMS gateway configured")
                return False
            return await self._post_json(self.sms_gateway_url, {"to": destination, "message": alert.message})
        logger.warning(f"Unknown alert channel '{channel}' for target {target.id}")
        return False

    def _webhook_payload(self, target: Target, alert: AlertCandidate, result: CheckResult) -> dict:
        return {
            "target_id": target.id,
            "target": target.name,
            "url": target.url,
            "alert_type": alert.alert_type,
            "severity": alert.severity,
            "message": alert.message,
            "status": result.status,
            "response_time_ms": result.response_time_ms,
            "timestamp": result.checked_at.isoformat() + "Z",
        }

    def _email_body(self, target: Target, alert: AlertCandidate, result: CheckResult) -> str:
        lines = [
            f"SiteWatch {alert.alert_type.replace('_', ' ').upper()} Alert",
            "=" * 40,
            "",
            f"Website: {target.name}",
            f"URL: {target.url}",
            f"Status: {result.status.upper()}",
            f"Response Time: {result.response_time_ms}ms",
        ]
        if result.error_message:
            lines.append(f"Error: {result.error_message}")
        lines.append(f"Time: {result.checked_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        lines.extend(["", alert.message, "", "--", "SiteWatch Monitoring"])
        return "\n".join(lines)

    async def _send_email(self, destination: str, target: Target, alert: AlertCandidate, result: CheckResult) -> bool:
        if self.email_sender is None:
            logger.warning(f"Email alert for {target.name} not sent: SMTP not configured")
            return False
        subject = f"{alert.severity.upper()} - {target.name} - {alert.alert_type}"
        return await self.email_sender.send_email(destination, subject, self._email_body(target, alert, result))

    async def _post_json(self, url: str, payload: dict) -> bool:
        """POST a JSON payload; any 4xx/5xx or network error is a failure."""
        try:
            async with httpx.AsyncClient(timeout=self.webhook_timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Failed to POST alert to {url}: {e}")
            return False
        if response.status_code >= 400:
            logger.warning(f"Alert endpoint {url} returned {response.status_code}")
            return False
        return True


class AlerterService:
    """Turns results into suppressed, delivered and recorded alert events."""

    def __init__(
        self,
        session_factory=None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock=system_clock,
        suppression_minutes: int = DEFAULT_SUPPRESSION_MINUTES,
    ):
        self._session_factory = session_factory or async_session
        self.dispatcher = dispatcher or NotificationDispatcher()
        self._clock = clock
        self.suppression_window = timedelta(minutes=suppression_minutes)
        # Scheduled ticks and on-demand checks may evaluate the same target at once
        self._target_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def evaluate(self, target: Target, result: CheckResult, rules: Optional[List[AlertRule]] = None) -> List[AlertCandidate]:
        return evaluate(target, result, self._performance_threshold(rules or []))

    def _performance_threshold(self, rules: List[AlertRule]) -> int:
        thresholds = [r.slow_response_threshold_ms for r in rules if r.slow_response_threshold_ms]
        return min(thresholds + [PERFORMANCE_ALERT_MS])

    async def _enabled_rules(self, session: AsyncSession, target_id: int) -> List[AlertRule]:
        result = await session.execute(
            select(AlertRule)
            .where(AlertRule.target_id == target_id, AlertRule.enabled.is_(True))
            .order_by(AlertRule.id)
        )
        return list(result.scalars().all())

    async def _recently_fired(self, session: AsyncSession, target_id: int, alert_type: str) -> bool:
        cutoff = self._clock.now() - self.suppression_window
        result = await session.execute(
            select(AlertEvent.id)
            .where(
                AlertEvent.target_id == target_id,
                AlertEvent.alert_type == alert_type,
                AlertEvent.triggered_at > cutoff,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _resolve(self, session: AsyncSession, target_id: int, alert_types: List[str]):
        if not alert_types:
            return
        await session.execute(
            update(AlertEvent)
            .where(
                AlertEvent.target_id == target_id,
                AlertEvent.alert_type.in_(alert_types),
                AlertEvent.resolved_at.is_(None),
            )
            .values(resolved_at=self._clock.now())
        )

    async def _deliver_all(
        self,
        channels: List[Tuple[str, str]],
        target: Target,
        alert: AlertCandidate,
        result: CheckResult,
    ) -> List[DeliveryOutcome]:
        async def deliver(channel: str, destination: str) -> DeliveryOutcome:
            try:
                success = await self.dispatcher.deliver(channel, destination, target, alert, result)
            except Exception as e:
                logger.error(f"Error delivering {channel} alert for {target.name}: {e}")
                success = False
            return DeliveryOutcome(channel=channel, destination=destination, success=success)

        return list(await asyncio.gather(*[deliver(c, d) for c, d in channels]))

    async def _record_new_events(
        self,
        target: Target,
        result: CheckResult,
    ) -> Tuple[List[Tuple[AlertEvent, AlertCandidate]], List[Tuple[str, str]]]:
        """Resolve cleared alerts and commit events for non-suppressed candidates."""
        async with self._session_factory() as session:
            rules = await self._enabled_rules(session, target.id)
            channels = [(r.channel, r.destination) for r in rules]
            threshold = self._performance_threshold(rules)
            await self._resolve(session, target.id, resolvable_types(result, threshold))

            new_events = []
            for candidate in evaluate(target, result, threshold):
                if await self._recently_fired(session, target.id, candidate.alert_type):
                    logger.debug(f"Alert suppressed for {target.name}: {candidate.alert_type}")
                    continue
                event = AlertEvent(
                    target_id=target.id,
                    alert_type=candidate.alert_type,
                    message=candidate.message,
                    severity=candidate.severity,
                    triggered_at=self._clock.now(),
                    delivery_status=DELIVERY_PENDING,
                )
                session.add(event)
                new_events.append((event, candidate))

            await retry_on_lock(session.commit)
        return new_events, channels

    async def _record_deliveries(self, outcomes: List[Tuple[AlertEvent, List[DeliveryOutcome]]]):
        if not outcomes:
            return
        try:
            async with self._session_factory() as session:
                for event, deliveries in outcomes:
                    await session.execute(
                        update(AlertEvent)
                        .where(AlertEvent.id == event.id)
                        .values(delivery_status=event.delivery_status)
                    )
                    for d in deliveries:
                        session.add(AlertDelivery(
                            event_id=event.id,
                            channel=d.channel,
                            destination=d.destination,
                            success=d.success,
                            sent_at=self._clock.now(),
                        ))
                await retry_on_lock(session.commit)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Error recording alert deliveries: {e}")

    async def process(self, target: Target, result: CheckResult) -> List[FiredAlert]:
        """Evaluate a result, then record and deliver every non-suppressed alert.

        Events are committed before anything is sent, and delivery happens
        with no transaction open. If the events cannot be stored the error
        propagates and nothing is delivered.
        """
        fired: List[FiredAlert] = []
        async with self._target_locks[target.id]:
            new_events, channels = await self._record_new_events(target, result)

            outcomes = []
            for event, candidate in new_events:
                deliveries = await self._deliver_all(channels, target, candidate, result)
                event.delivery_status = DELIVERY_SENT if all(d.success for d in deliveries) else DELIVERY_FAILED
                outcomes.append((event, deliveries))

                logger.info(
                    f"Alert triggered for {target.name}: {candidate.alert_type} "
                    f"({len(deliveries)} channel(s), {event.delivery_status})"
                )
                fired.append(FiredAlert(
                    id=event.id,
                    target_id=target.id,
                    alert_type=candidate.alert_type,
                    message=candidate.message,
                    severity=candidate.severity,
                    triggered_at=event.triggered_at,
                    delivery_status=event.delivery_status,
                    deliveries=deliveries,
                ))

            await self._record_deliveries(outcomes)
        return fired


    async def recent_events(self, target_id: int, limit: int = 50) -> List[AlertEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertEvent)
                .where(AlertEvent.target_id == target_id)
                .order_by(AlertEvent.triggered_at.desc(), AlertEvent.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
