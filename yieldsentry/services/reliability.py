import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from yieldsentry.adapters.base import BaseAdapter
from yieldsentry.config import ReliabilitySettings
from yieldsentry.exceptions import (
    AdapterNotFoundError,
    CircuitOpenError,
    DataTransformError,
    InsufficientSourcesError,
    OpportunityNotFoundError,
    SourceTimeoutError,
)
from yieldsentry.schemas import Opportunity, SystemReliability
from yieldsentry.services.ticker import PeriodicTask

logger = logging.getLogger(__name__)

T = TypeVar("T")
AdapterOperation = Callable[[BaseAdapter], Awaitable[T]]

DEGRADED_AFTER_FAILURES = 3
DOWN_AFTER_FAILURES = 5
UPTIME_BY_STATUS = {"healthy": 0.99, "degraded": 0.8, "down": 0.0}
SLOW_PROBE_MS = 2000
CONSENSUS_MAX_SOURCES = 3


@dataclass(frozen=True)
class AdapterHealth:
    """
    Snapshot of one adapter's health. Never mutated in place: every update
    swaps in a new record so readers can't see status and counters disagree.
    """
    name: str
    priority: int
    status: str = "healthy"
    response_time_ms: float = 0.0
    uptime: float = 1.0
    consecutive_failures: int = 0
    last_check: float = 0.0
    last_failure: Optional[float] = None
    enabled: bool = True
    half_open: bool = False
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset: Optional[float] = None


class ReliabilityCoordinator:
    """
    Wraps adapter calls with health tracking, a circuit breaker, exponential
    retry and multi-source strategies (primary_fallback / fastest / consensus).
    """

    def __init__(
        self,
        adapters: Optional[Dict[str, BaseAdapter]] = None,
        settings: Optional[ReliabilitySettings] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or ReliabilitySettings()
        self._clock = clock
        self._sleep = sleep
        self._adapters: Dict[str, BaseAdapter] = {}
        self._health: Dict[str, AdapterHealth] = {}
        self.total_calls = 0
        self.failed_calls = 0
        self._probe_task = PeriodicTask(
            "health-probe", self.run_health_checks, self.settings.health_check_interval_sec
        )
        for name, adapter in (adapters or {}).items():
            self.register_adapter(name, adapter)

    def register_adapter(self, name: str, adapter: BaseAdapter):
        self._adapters[name] = adapter
        self._health[name] = AdapterHealth(name=name, priority=len(self._health), last_check=self._clock())

    def start(self):
        self._probe_task.start()
        logger.info("🩺 Reliability coordinator online (%d adapters, method=%s)",
                    len(self._adapters), self.settings.aggregation_method)

    async def stop(self):
        await self._probe_task.stop()

    # Health state machine ---------------------------------------------------

    def record_success(self, name: str, response_time_ms: float, status: str = "healthy"):
        current = self._health[name]
        self._health[name] = replace(
            current,
            status=status,
            response_time_ms=response_time_ms,
            uptime=UPTIME_BY_STATUS[status],
            consecutive_failures=0,
            half_open=False,
            last_check=self._clock(),
        )

    def record_failure(self, name: str):
        current = self._health[name]
        now = self._clock()
        failures = current.consecutive_failures + 1
        if current.half_open:
            # Failed probe: trip the breaker again straight away
            failures = max(failures, self.settings.circuit_breaker.threshold)

        status = current.status
        if failures >= DOWN_AFTER_FAILURES:
            status = "down"
        elif failures >= DEGRADED_AFTER_FAILURES:
            status = "degraded"

        self._health[name] = replace(
            current,
            status=status,
            uptime=UPTIME_BY_STATUS[status],
            consecutive_failures=failures,
            half_open=False,
            last_check=now,
            last_failure=now,
        )
        if status != current.status:
            logger.warning("⚠️ Adapter %s is now %s (%d consecutive failures)", name, status, failures)

    def _check_breaker(self, name: str):
        health = self._health[name]
        if health.consecutive_failures < self.settings.circuit_breaker.threshold:
            return
        elapsed = self._clock() - (health.last_failure or 0.0)
        timeout = self.settings.circuit_breaker.timeout_sec
        if elapsed < timeout:
            raise CircuitOpenError(name, timeout - elapsed)
        # Cool-down over: reset and let one probing call through
        self._health[name] = replace(health, consecutive_failures=0, half_open=True)
        logger.info("Circuit breaker for %s half-open after %.1fs", name, elapsed)

    # Guarded call -----------------------------------------------------------

    async def call(self, name: str, operation: AdapterOperation) -> T:
        """
        Run `operation(adapter)` with breaker, timeout and retry.
        Attempts = max_retries; the pause doubles after each failure.
        Health is updated once per call, after the last attempt. A source
        that answers "not found" has responded, so that is not a failure.
        """
        adapter = self._adapters.get(name)
        if adapter is None:
            raise AdapterNotFoundError(name)

        self._check_breaker(name)
        self.total_calls += 1
        max_attempts = self.settings.max_retries
        last_error: Optional[Exception] = None
        for attempt in range(max_attempts):
            if attempt:
                try:
                    # Another call may have tripped the breaker during the pause
                    self._check_breaker(name)
                except CircuitOpenError:
                    self._fail_call(name)
                    raise
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(operation(adapter), timeout=self.settings.timeout_sec)
            except (OpportunityNotFoundError, AdapterNotFoundError):
                raise
            except asyncio.TimeoutError:
                last_error = SourceTimeoutError(name, self.settings.timeout_sec)
            except DataTransformError:
                self._fail_call(name)
                raise
            except Exception as e:
                last_error = e
            else:
                self.record_success(name, (time.perf_counter() - started) * 1000)
                return result

            if attempt < max_attempts - 1:
                delay = self.settings.retry_delay_sec * (2 ** attempt)
                logger.warning("%s call failed (attempt %d/%d): %s, retrying in %.1fs",
                               name, attempt + 1, max_attempts, last_error, delay)
                await self._sleep(delay)

        self._fail_call(name)
        raise last_error

    def _fail_call(self, name: str):
        self.failed_calls += 1
        self.record_failure(name)

    # Strategies -------------------------------------------------------------

    def available_adapters(self) -> List[str]:
        """Enabled, not-down adapters in priority order."""
        ranked = sorted(self._health.values(), key=lambda h: h.priority)
        return [h.name for h in ranked if h.enabled and h.status != "down"]

    async def execute(self, operation: AdapterOperation, method: Optional[str] = None) -> T:
        method = method or self.settings.aggregation_method
        if method == "fastest":
            return await self._fastest(operation)
        if method == "consensus":
            return await self._consensus(operation)
        return await self._primary_fallback(operation)

    async def list_opportunities(self) -> List[Opportunity]:
        return await self.execute(lambda adapter: adapter.list())

    async def get_opportunity(self, opportunity_id: str) -> Opportunity:
        return await self._primary_fallback(lambda adapter: adapter.detail(opportunity_id))

    async def _primary_fallback(self, operation: AdapterOperation) -> T:
        candidates = self.available_adapters()
        if not candidates:
            raise InsufficientSourcesError("no healthy adapters available", available=0, required=1)
        not_found: Optional[OpportunityNotFoundError] = None
        for name in candidates:
            try:
                return await self.call(name, operation)
            except OpportunityNotFoundError as e:
                not_found = e
            except Exception as e:
                logger.warning("Source %s failed, falling back: %s", name, e)
        if not_found is not None:
            raise not_found
        raise InsufficientSourcesError("all sources failed", available=0, required=1)

    async def _fastest(self, operation: AdapterOperation) -> T:
        candidates = self.available_adapters()[: self.settings.max_sources]
        if not candidates:
            raise InsufficientSourcesError("no healthy adapters available", available=0, required=1)

        pending = {asyncio.create_task(self.call(name, operation)) for name in candidates}
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.timeout_sec
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.exception() is None:
                        return task.result()
                    logger.debug("Fastest-strategy candidate failed: %s", task.exception())
        finally:
            for task in pending:
                task.cancel()
        raise InsufficientSourcesError("all sources failed or timed out", available=0, required=1)

    async def _consensus(self, operation: AdapterOperation) -> T:
        """
        Query up to three sources and require `min_sources` successes.
        The first success in priority order is returned; results are not reconciled.
        """
        candidates = self.available_adapters()[:CONSENSUS_MAX_SOURCES]
        required = self.settings.min_sources
        if len(candidates) < required:
            raise InsufficientSourcesError(
                f"consensus needs {required} sources, {len(candidates)} healthy",
                available=len(candidates), required=required,
            )

        results = await asyncio.gather(*(self.call(n, operation) for n in candidates), return_exceptions=True)
        successes = [res for res in results if not isinstance(res, Exception)]
        if len(successes) < required:
            raise InsufficientSourcesError(
                f"consensus needs {required} successes, got {len(successes)}",
                available=len(successes), required=required,
            )
        return successes[0]

    # Health probe -----------------------------------------------------------

    async def run_health_checks(self):
        names = [n for n, h in self._health.items() if h.enabled]
        await asyncio.gather(*(self._probe(n) for n in names))

    async def _probe(self, name: str):
        adapter = self._adapters[name]
        started = time.perf_counter()
        try:
            await asyncio.wait_for(adapter.list(), timeout=self.settings.health_check_timeout_sec)
        except Exception as e:
            logger.warning("Health probe failed for %s: %s", name, e)
            self.record_failure(name)
            return
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.record_success(name, elapsed_ms, status="degraded" if elapsed_ms > SLOW_PROBE_MS else "healthy")

    # Introspection / admin --------------------------------------------------

    def get_adapter_health(self) -> Dict[str, AdapterHealth]:
        return dict(self._health)

    def get_system_reliability(self) -> SystemReliability:
        records = [h for h in self._health.values() if h.enabled]
        total = len(records)
        healthy = sum(1 for h in records if h.status == "healthy")
        if healthy == 0:
            overall = "down"
        elif healthy < total * 0.5:
            overall = "degraded"
        else:
            overall = "healthy"
        return SystemReliability(
            overall_health=overall,
            healthy_adapters=healthy,
            total_adapters=total,
            average_response_time_ms=(sum(h.response_time_ms for h in records) / total) if total else 0.0,
            uptime=(sum(h.uptime for h in records) / total) if total else 0.0,
        )

    def error_rate(self) -> float:
        return self.failed_calls / self.total_calls if self.total_calls else 0.0

    def enable_adapter(self, name: str):
        self._set_enabled(name, True)

    def disable_adapter(self, name: str):
        self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool):
        if name not in self._health:
            raise AdapterNotFoundError(name)
        self._health[name] = replace(self._health[name], enabled=enabled)
        logger.info("Adapter %s %s", name, "enabled" if enabled else "disabled")

    def update_rate_limit(self, name: str, remaining: int, reset_at: float):
        if name not in self._health:
            raise AdapterNotFoundError(name)
        current = self._health[name]
        status = "degraded" if remaining <= 0 else current.status
        self._health[name] = replace(
            current,
            status=status,
            uptime=UPTIME_BY_STATUS[status],
            rate_limit_remaining=remaining,
            rate_limit_reset=reset_at,
        )
