"""Checker service - uptime, TLS and performance checks for one target."""
import asyncio
import logging
from typing import Optional, Sequence, Tuple

import httpx

from .clock import system_clock
from .records import (
    CheckResult,
    PerformanceSample,
    Target,
    UptimeOutcome,
    STATUS_UP,
    STATUS_DOWN,
    STATUS_DEGRADED,
)
from .tls_inspector import TLSInspector

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SiteWatch/1.0 (Uptime Check)"
PERFORMANCE_USER_AGENT = "SiteWatch/1.0 (Performance Sample)"

# (upper bound in ms, score) - first band the response time falls under wins
DEFAULT_PERFORMANCE_BANDS: Tuple[Tuple[int, int], ...] = (
    (200, 100),
    (500, 90),
    (1000, 80),
    (2000, 70),
    (3000, 60),
    (5000, 50),
)
SLOWEST_BAND_SCORE = 30
CLIENT_ERROR_SCORE = 25
SERVER_ERROR_SCORE = 0


class PerformanceScorer:
    """Maps a sampled response to a 0-100 score using a latency band table."""

    def __init__(
        self,
        bands: Sequence[Tuple[int, int]] = DEFAULT_PERFORMANCE_BANDS,
        slowest_score: int = SLOWEST_BAND_SCORE,
    ):
        self.bands = tuple(sorted(bands))
        self.slowest_score = slowest_score

    def score(self, status_code: int, elapsed_ms: int) -> int:
        if status_code >= 500:
            return SERVER_ERROR_SCORE
        if status_code >= 400:
            return CLIENT_ERROR_SCORE
        for upper_bound, score in self.bands:
            if elapsed_ms < upper_bound:
                return score
        return self.slowest_score


def classify_status_code(status_code: int, elapsed_ms: int, slow_response_ms: int) -> Tuple[str, Optional[str]]:
    """Determine (status, error message) for an HTTP response."""
    if 200 <= status_code < 300:
        if elapsed_ms > slow_response_ms:
            return STATUS_DEGRADED, f"Slow response: {elapsed_ms}ms"
        return STATUS_UP, None
    if status_code >= 500:
        return STATUS_DOWN, f"HTTP {status_code}"
    # 4xx client errors, and redirects that were not resolved
    return STATUS_DEGRADED, f"HTTP {status_code}"


class CheckerService:
    """Runs the three checks of a tick and merges them into one result."""

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        slow_response_ms: int = 5000,
        tls_inspector: Optional[TLSInspector] = None,
        scorer: Optional[PerformanceScorer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=system_clock,
    ):
        self.user_agent = user_agent
        self.slow_response_ms = slow_response_ms
        self.tls_inspector = tls_inspector or TLSInspector(clock=clock)
        self.scorer = scorer or PerformanceScorer()
        self._transport = transport
        self._clock = clock

    def _client(self, timeout: float, user_agent: str) -> httpx.AsyncClient:
        # Certificates are graded separately, so the probe must not fail on them
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            verify=False,
            transport=self._transport,
            headers={
                "User-Agent": user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
        )

    def _elapsed_ms(self, start: float) -> int:
        return max(0, int((self._clock.monotonic() - start) * 1000))

    async def check_uptime(self, url: str, timeout: float) -> UptimeOutcome:
        """Single GET; maps the response (or failure) to up/degraded/down."""
        start = self._clock.monotonic()
        try:
            async with self._client(timeout, self.user_agent) as client:
                # httpx timeouts are per phase, wait_for bounds the whole request
                response = await asyncio.wait_for(client.get(url), timeout=timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            # A timed-out request waited at least the configured timeout
            elapsed = max(self._elapsed_ms(start), int(timeout * 1000))
            return UptimeOutcome(status=STATUS_DOWN, response_time_ms=elapsed, error_message="Request timeout")
        except httpx.ConnectError as e:
            return UptimeOutcome(
                status=STATUS_DOWN,
                response_time_ms=self._elapsed_ms(start),
                error_message=f"Connection error: {e}",
            )
        except httpx.HTTPError as e:
            return UptimeOutcome(
                status=STATUS_DOWN,
                response_time_ms=self._elapsed_ms(start),
                error_message=f"Request failed: {type(e).__name__}: {e}",
            )

        elapsed = self._elapsed_ms(start)
        status, error_message = classify_status_code(response.status_code, elapsed, self.slow_response_ms)
        return UptimeOutcome(
            status=status,
            response_time_ms=elapsed,
            status_code=response.status_code,
            error_message=error_message,
        )

    async def check_performance(self, url: str, timeout: float) -> Optional[PerformanceSample]:
        """Coarse latency/size sample. None when the request fails."""
        start = self._clock.monotonic()
        try:
            async with self._client(timeout, PERFORMANCE_USER_AGENT) as client:
                response = await asyncio.wait_for(client.get(url), timeout=timeout)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.debug(f"Performance sample for {url} failed: {type(e).__name__}: {e}")
            return None

        elapsed = self._elapsed_ms(start)
        return PerformanceSample(
            elapsed_ms=elapsed,
            page_size_bytes=len(response.content),
            status_code=response.status_code,
            score=self.scorer.score(response.status_code, elapsed),
        )

    async def run_checks(self, target: Target) -> CheckResult:
        """Run uptime, TLS and performance checks concurrently and merge them.

        TLS or performance failures only blank their own fields; uptime
        drives the overall status.
        """
        checked_at = self._clock.now()
        uptime, tls_report, performance = await asyncio.gather(
            self.check_uptime(target.url, target.timeout),
            self.tls_inspector.inspect(target.url),
            self.check_performance(target.url, target.timeout),
            return_exceptions=True,
        )

        if isinstance(uptime, BaseException):
            logger.error(f"Uptime check for target {target.id} raised: {uptime}")
            uptime = UptimeOutcome(status=STATUS_DOWN, response_time_ms=0, error_message=str(uptime) or "Check failed")
        if isinstance(tls_report, BaseException):
            logger.warning(f"TLS check for target {target.id} raised: {tls_report}")
            tls_report = None
        if isinstance(performance, BaseException):
            logger.warning(f"Performance check for target {target.id} raised: {performance}")
            performance = None

        return CheckResult(
            target_id=target.id,
            checked_at=checked_at,
            status=uptime.status,
            response_time_ms=uptime.response_time_ms,
            status_code=uptime.status_code,
            error_message=uptime.error_message,
            performance_score=performance.score if performance else None,
            page_size_bytes=performance.page_size_bytes if performance else None,
            tls=tls_report.to_tls_info() if tls_report else None,
        )
