"""Scheduler service - one repeating ticker per monitored target.

Design:
- Every enabled target owns one ``TargetTicker`` (see ticker.py), keyed by id
- A tick runs uptime, TLS and performance checks concurrently, then persists,
  alerts and broadcasts, then sleeps for the target's interval
- Ticks never raise; a failing target keeps being retried until disabled
- The registry is re-polled periodically (APScheduler interval job) to pick up
  added, edited and disabled targets without a restart
"""
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .alerter import AlerterService, NotificationDispatcher
from .checker import CheckerService
from .clock import system_clock
from .email_sender import EmailConfig, EmailSenderService
from .records import CheckResult, Target
from .result_store import ResultStore
from .target_registry import TargetRegistry
from .ticker import ScheduleMap
from .tls_inspector import TLSInspector
from .websocket_manager import Broadcaster, NullBroadcaster, alert_update, monitoring_update

logger = logging.getLogger(__name__)

# Re-poll the registry this often
DEFAULT_REFRESH_MINUTES = 5

# Extra time granted to in-flight ticks on shutdown, on top of the longest timeout
SHUTDOWN_GRACE_SECONDS = 5

_PROCESS_STARTED_AT = time.monotonic()


@dataclass(frozen=True)
class SchedulerStatus:
    running: bool
    active_target_count: int
    process_uptime: float  # seconds


class SchedulerService:
    """Owns the schedule map and the tick pipeline."""

    def __init__(
        self,
        registry: TargetRegistry,
        checker: CheckerService,
        store: ResultStore,
        alerter: AlerterService,
        broadcaster: Optional[Broadcaster] = None,
        clock=system_clock,
        refresh_minutes: int = DEFAULT_REFRESH_MINUTES,
    ):
        self.registry = registry
        self.checker = checker
        self.store = store
        self.alerter = alerter
        self.broadcaster: Broadcaster = broadcaster or NullBroadcaster()
        self.refresh_minutes = refresh_minutes
        self._clock = clock
        self.schedule = ScheduleMap(self._tick, clock=clock)
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        # Scheduled ticks and on-demand checks of one target run one at a time
        self._pipeline_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Load targets and start one ticker per enabled target.

        Raises StorageUnavailableError if the store cannot be reached.
        """
        if self._running:
            return

        await self.registry.ping()
        self._running = True
        await self.refresh()

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.refresh,
            trigger=IntervalTrigger(minutes=self.refresh_minutes),
            id="refresh_targets",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with {len(self.schedule)} targets (refresh every {self.refresh_minutes}m)")

    async def stop(self):
        """Cancel pending ticks and wait, bounded, for in-flight ones."""
        if not self._running:
            return
        self._running = False
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        longest_timeout = max(
            [t.timeout for t in self.schedule.targets()] + [self.checker.tls_inspector.timeout],
        )
        await self.schedule.clear(grace_seconds=longest_timeout + SHUTDOWN_GRACE_SECONDS)
        logger.info("Scheduler stopped")

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self._running,
            active_target_count=len(self.schedule),
            process_uptime=time.monotonic() - _PROCESS_STARTED_AT,
        )

    async def refresh(self):
        """Sync the schedule map with the registry's enabled targets."""
        if not self._running:
            return
        targets = await self.registry.load_enabled_targets()
        # A stop may have landed while the registry was loading
        if not self._running:
            return
        if not self.registry.last_load_ok:
            logger.warning(f"Target registry unavailable, keeping {len(self.schedule)} scheduled targets")
            return
        armed, removed = await self.schedule.sync(targets)
        logger.info(f"Loaded {len(targets)} monitoring configurations ({armed} armed, {removed} removed)")

    async def schedule_target(self, target: Target) -> bool:
        """Arm (or re-arm) a single target right away, e.g. after an API edit."""
        if not self._running:
            return False
        if not target.enabled:
            await self.schedule.disarm(target.id)
            return False
        if not target.is_valid():
            logger.warning(f"Not scheduling target {target.id}: timeout must be below a positive interval")
            return False
        return await self.schedule.arm(target, force=True)

    async def unschedule_target(self, target_id: int) -> bool:
        removed = await self.schedule.disarm(target_id)
        if removed:
            logger.info(f"Removed monitoring for target {target_id}")
        return removed

    async def run_single_check(self, target_id: int) -> Optional[CheckResult]:
        """Run one full tick for a target on demand. None if it does not exist."""
        target = await self.registry.get_target(target_id)
        if target is None:
            return None
        return await self._run_pipeline(target)

    async def _tick(self, target: Target):
        await self._run_pipeline(target)

    async def _run_pipeline(self, target: Target) -> CheckResult:
        async with self._pipeline_locks[target.id]:
            return await self._check_and_report(target)

    async def _check_and_report(self, target: Target) -> CheckResult:
        """check -> persist -> alert -> broadcast. Never raises on check/storage errors."""
        start = self._clock.monotonic()
        result = await self.checker.run_checks(target)

        if not await self.store.save(result):
            logger.warning(f"Result for {target.name} was not persisted")

        try:
            fired = await self.alerter.process(target, result)
        except Exception as e:
            logger.error(f"Error evaluating alerts for {target.name}: {e}")
            fired = []

        self._publish(monitoring_update(target, result))
        for alert in fired:
            self._publish(alert_update(target, alert))

        duration_ms = int((self._clock.monotonic() - start) * 1000)
        logger.info(
            f"Checked {target.name} ({target.url}): {result.status} in {result.response_time_ms}ms "
            f"(tick {duration_ms}ms)"
        )
        return result

    def _publish(self, update: dict):
        try:
            self.broadcaster.publish(update)
        except Exception as e:
            logger.warning(f"Dropping {update.get('event')} update: {e}")


def build_scheduler_service(
    settings,
    session_factory=None,
    broadcaster: Optional[Broadcaster] = None,
) -> SchedulerService:
    """Wire the scheduler and its collaborators from application settings."""
    email_sender = EmailSenderService(EmailConfig.from_settings(settings)) if settings.smtp_host else None
    checker = CheckerService(
        user_agent=settings.user_agent,
        slow_response_ms=settings.slow_response_ms,
        tls_inspector=TLSInspector(timeout=settings.tls_timeout_seconds),
    )
    alerter = AlerterService(
        session_factory=session_factory,
        dispatcher=NotificationDispatcher(
            email_sender=email_sender,
            sms_gateway_url=settings.sms_gateway_url,
            webhook_timeout=settings.webhook_timeout_seconds,
        ),
        suppression_minutes=settings.alert_suppression_minutes,
    )
    return SchedulerService(
        registry=TargetRegistry(session_factory),
        checker=checker,
        store=ResultStore(session_factory),
        alerter=alerter,
        broadcaster=broadcaster,
        refresh_minutes=settings.registry_refresh_minutes,
    )
