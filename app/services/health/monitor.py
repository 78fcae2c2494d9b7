"""
Health monitor for the GP51 platform.

Keeps a rolling window of call outcomes, classifies the platform as
healthy, degraded or unhealthy and pushes a snapshot to subscribers
whenever that classification changes.
"""
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional

from app.core.config import settings
from app.schemas.health import HealthMetrics, HealthStatus

logger = logging.getLogger("fleetsync.health")

HealthCallback = Callable[[HealthMetrics], Any]


@dataclass
class _Outcome:
    success: bool
    latency_ms: float
    error_kind: Optional[str]


class HealthMonitor:
    """
    Rolling-window classifier of GP51 call outcomes.

    All mutation happens synchronously on the event loop thread, so recorded
    outcomes are applied one at a time and subscribers are notified after the
    status field has changed. The monitor never raises to its callers.
    """

    def __init__(
        self,
        window_size: int = None,
        healthy_rate: float = None,
        unhealthy_rate: float = None,
        degraded_failures: int = None,
        unhealthy_failures: int = None,
        min_samples: int = None,
        max_issues: int = None,
    ):
        self.window_size = window_size or settings.HEALTH_WINDOW_SIZE
        self.healthy_rate = healthy_rate if healthy_rate is not None else settings.HEALTH_HEALTHY_RATE
        self.unhealthy_rate = unhealthy_rate if unhealthy_rate is not None else settings.HEALTH_UNHEALTHY_RATE
        self.degraded_failures = degraded_failures or settings.HEALTH_DEGRADED_FAILURES
        self.unhealthy_failures = unhealthy_failures or settings.HEALTH_UNHEALTHY_FAILURES
        self.min_samples = min_samples if min_samples is not None else settings.HEALTH_MIN_SAMPLES
        self.max_issues = max_issues or settings.HEALTH_MAX_ISSUES

        self._subscribers: Dict[int, HealthCallback] = {}
        self._next_subscriber = 0
        self._reset()

    def _reset(self) -> None:
        self._window: Deque[_Outcome] = deque(maxlen=self.window_size)
        self._issues: Deque[str] = deque(maxlen=self.max_issues)
        self._status = HealthStatus.HEALTHY
        self._consecutive_failures = 0
        self._total_requests = 0
        self._error_count = 0
        self._last_check: Optional[datetime] = None
        self._recovering = False

    @property
    def status(self) -> HealthStatus:
        return self._status

    @property
    def recovering(self) -> bool:
        """True from an unhealthy episode until the platform is healthy again."""
        return self._recovering

    def record_outcome(
        self,
        success: bool,
        latency: float,
        error_kind: Optional[str] = None
    ) -> None:
        """
        Record one completed GP51 call.

        Args:
            success: Whether the call succeeded
            latency: Call duration in milliseconds
            error_kind: Failure classification, e.g. "timeout" or "rate_limit"
        """
        if not isinstance(success, bool) or isinstance(latency, bool) or not isinstance(latency, (int, float)) or latency < 0:
            logger.warning(f"Dropping malformed outcome: success={success!r} latency={latency!r}")
            return

        try:
            self._window.append(_Outcome(success, float(latency), error_kind))
            self._total_requests += 1
            self._last_check = datetime.now(timezone.utc)

            if success:
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                self._error_count += 1
                self._issues.append(self._describe(error_kind))

            self._apply_status(self._classify())
        except Exception as e:
            logger.error(f"Health monitor failed to record outcome: {e}", exc_info=True)

    @staticmethod
    def _describe(error_kind: Optional[str]) -> str:
        kind = (error_kind or "unknown").replace("_", " ")
        return f"GP51 call failed: {kind}"

    def _success_rate(self) -> float:
        if not self._window:
            return 1.0
        return sum(1 for o in self._window if o.success) / len(self._window)

    def _classify(self) -> HealthStatus:
        rate = self._success_rate()
        rate_applies = len(self._window) >= self.min_samples

        if self._consecutive_failures >= self.unhealthy_failures or (rate_applies and rate < self.unhealthy_rate):
            return HealthStatus.UNHEALTHY
        if self._consecutive_failures >= self.degraded_failures or (rate_applies and rate < self.healthy_rate):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def _apply_status(self, new_status: HealthStatus) -> None:
        if new_status == self._status:
            return

        old_status = self._status
        self._status = new_status
        if new_status == HealthStatus.UNHEALTHY:
            self._recovering = True
        elif new_status == HealthStatus.HEALTHY:
            self._recovering = False

        log = logger.warning if new_status != HealthStatus.HEALTHY else logger.info
        log(f"GP51 health changed: {old_status.value} -> {new_status.value}")
        self._notify(self.get_health_metrics())

    def get_health_metrics(self) -> HealthMetrics:
        """Snapshot of the current metrics. Pure read."""
        latencies = [o.latency_ms for o in self._window]
        return HealthMetrics(
            is_healthy=self._status == HealthStatus.HEALTHY,
            last_check=self._last_check,
            response_time=round(sum(latencies) / len(latencies), 2) if latencies else 0.0,
            success_rate=self._success_rate(),
            error_count=self._error_count,
            total_requests=self._total_requests,
            consecutive_failures=self._consecutive_failures,
            window_size=len(self._window),
            status=self._status,
            issues=list(self._issues),
        )

    def subscribe(self, callback: HealthCallback, replay: bool = True) -> Callable[[], None]:
        """
        Register a callback for status transitions.

        With ``replay`` the callback immediately receives the current snapshot.

        Returns:
            Callable: Call it to unsubscribe
        """
        subscriber_id = self._next_subscriber
        self._next_subscriber += 1
        self._subscribers[subscriber_id] = callback

        if replay:
            self._deliver(subscriber_id, callback, self.get_health_metrics())

        def unsubscribe() -> None:
            self._subscribers.pop(subscriber_id, None)

        return unsubscribe

    def _notify(self, metrics: HealthMetrics) -> None:
        for subscriber_id, callback in list(self._subscribers.items()):
            self._deliver(subscriber_id, callback, metrics)

    @staticmethod
    def _deliver(subscriber_id: int, callback: HealthCallback, metrics: HealthMetrics) -> None:
        try:
            callback(metrics)
        except Exception as e:
            logger.error(f"Health subscriber {subscriber_id} raised: {e}", exc_info=True)

    def clear_history(self) -> None:
        """Operator reset: drop the window and counters, keep subscribers."""
        previous = self._status
        self._reset()
        logger.info("GP51 health history cleared")
        if previous != self._status:
            self._notify(self.get_health_metrics())

    async def probe(self, client: Any) -> HealthMetrics:
        """Ping the platform once and record the outcome."""
        started = datetime.now(timezone.utc)
        success, error_kind = True, None
        try:
            await client.ping()
        except Exception as e:
            success = False
            error_kind = getattr(e, "error_kind", "probe_failed")
            logger.warning(f"GP51 health probe failed: {e}")
        latency = (datetime.now(timezone.utc) - started).total_seconds() * 1000
        self.record_outcome(success, latency, error_kind)
        return self.get_health_metrics()


# Singleton instance
_health_monitor = None

def get_health_monitor() -> HealthMonitor:
    """Get the process-wide health monitor, created on first use."""
    global _health_monitor
    if _health_monitor is None:
        _health_monitor = HealthMonitor()
    return _health_monitor
