import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from yieldsentry.config import SyncSettings
from yieldsentry.schemas import AggregatedMetricsData, SyncStats
from yieldsentry.services.cache_service import CacheService
from yieldsentry.services.historical.bitquery import BitqueryService, pool_key
from yieldsentry.services.historical.dappradar import DAppRadarService
from yieldsentry.services.ticker import PeriodicTask

logger = logging.getLogger(__name__)

EMA_KEEP = 0.8
EMA_SAMPLE = 0.2


class BackgroundSyncService:
    """
    Keeps per-protocol volume and user metrics warm in the cache store.

    One cycle syncs every configured protocol in turn (bounded retries with a
    fixed pause), then optionally rolls the results up into chain totals.
    A cycle that starts while another is running is skipped, not queued.
    """

    def __init__(
        self,
        cache: CacheService,
        volume_source: BitqueryService,
        user_source: DAppRadarService,
        settings: Optional[SyncSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cache = cache
        self.volume_source = volume_source
        self.user_source = user_source
        self.settings = settings or SyncSettings()
        self._sleep = sleep
        self._is_syncing = False
        self._stats = SyncStats()
        self._ticker = PeriodicTask(
            "background-sync",
            self.perform_sync,
            self.settings.interval_sec,
            initial_delay_sec=self.settings.initial_delay_sec,
        )

    @property
    def is_running(self) -> bool:
        return self._ticker.is_running

    def start(self):
        if not self.settings.enabled:
            logger.info("⏸️ Background sync disabled")
            return
        if self._ticker.is_running:
            logger.info("⏱️ Background sync already running")
            return
        self._ticker.start()
        logger.info("🚀 Background sync started (interval: %.0fs)", self.settings.interval_sec)

    async def stop(self):
        if self._ticker.is_running:
            await self._ticker.stop()
            logger.info("⏹️ Background sync stopped")

    async def perform_sync(self) -> SyncStats:
        if self._is_syncing:
            logger.info("⏳ Sync already in progress, skipping...")
            return self.get_stats()

        self._is_syncing = True
        started = time.perf_counter()
        try:
            logger.info("🔄 Starting background sync...")
            synced: List[str] = []
            errors: List[str] = []

            for protocol in self.settings.protocols:
                try:
                    await self._sync_protocol_with_retry(protocol)
                    synced.append(protocol)
                    logger.info("✅ Sync completed for: %s", protocol)
                except Exception as e:
                    msg = f"Failed to sync {protocol}: {e}"
                    errors.append(msg)
                    logger.error("❌ %s", msg)

            if self.settings.enable_aggregated_metrics:
                try:
                    self._sync_aggregated_metrics()
                    logger.info("✅ Aggregated metrics synced")
                except Exception as e:
                    msg = f"Failed to sync aggregated metrics: {e}"
                    errors.append(msg)
                    logger.error("❌ %s", msg)

            elapsed_ms = (time.perf_counter() - started) * 1000
            self._stats = SyncStats(
                last_sync=time.time(),
                successful_syncs=self._stats.successful_syncs + 1,
                failed_syncs=self._stats.failed_syncs + (1 if errors else 0),
                protocols_updated=len(synced),
                avg_sync_time_ms=self._ema(elapsed_ms),
                errors=errors,
            )
            logger.info("🎉 Background sync completed (%.0fms)", elapsed_ms)
            return self.get_stats()
        except Exception as e:
            msg = f"Background sync failed: {e}"
            logger.error("❌ %s", msg)
            self._stats = self._stats.model_copy(
                update={"failed_syncs": self._stats.failed_syncs + 1, "errors": self._stats.errors + [msg]}
            )
            return self.get_stats()
        finally:
            self._is_syncing = False

    async def _sync_protocol_with_retry(self, protocol: str):
        attempts = self.settings.retry_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                volume = await self.volume_source.get_protocol_volume_data(protocol, 30)
                logger.info("📊 Volume data synced for %s: 24h=%.0f 7d=%.0f",
                            protocol, volume.volume_24h, volume.volume_7d)
                users = await self.user_source.get_protocol_user_metrics(protocol)
                logger.info("👥 User metrics synced for %s: 24h=%d 7d=%d",
                            protocol, users.unique_users_24h, users.unique_users_7d)
                return
            except Exception as e:
                last_error = e
                logger.warning("⚠️ Sync attempt %d/%d failed for %s: %s", attempt, attempts, protocol, e)
                if attempt < attempts:
                    await self._sleep(self.settings.retry_delay_sec)
        raise last_error

    def _sync_aggregated_metrics(self):
        """Roll cached per-protocol rows up into chain totals."""
        volumes = []
        users = []
        for protocol in self.settings.protocols:
            volume = self.cache.get_volume_data(protocol, pool_key(protocol))
            if volume is not None:
                volumes.append(volume)
            metrics = self.cache.get_user_metrics(protocol)
            if metrics is not None:
                users.append(metrics)

        if not volumes and not users:
            raise RuntimeError("no protocol data available to aggregate")

        aggregated = AggregatedMetricsData(
            chain=self.settings.chain,
            total_volume_24h=sum(v.volume_24h for v in volumes),
            total_volume_7d=sum(v.volume_7d for v in volumes),
            total_volume_30d=sum(v.volume_30d for v in volumes),
            total_users_24h=sum(u.unique_users_24h for u in users),
            total_users_7d=sum(u.unique_users_7d for u in users),
            total_users_30d=sum(u.unique_users_30d for u in users),
            protocol_count=len({v.protocol for v in volumes} | {u.protocol for u in users}),
            timestamp=time.time(),
        )
        self.cache.set_aggregated_metrics(self.settings.chain, aggregated)
        logger.info("📈 Aggregated metrics stored for %s: volume24h=%.0f users24h=%d protocols=%d",
                    aggregated.chain, aggregated.total_volume_24h, aggregated.total_users_24h,
                    aggregated.protocol_count)

    def _ema(self, sample_ms: float) -> float:
        if self._stats.avg_sync_time_ms == 0:
            return sample_ms
        return self._stats.avg_sync_time_ms * EMA_KEEP + sample_ms * EMA_SAMPLE

    async def force_sync(self) -> SyncStats:
        logger.info("🔄 Forcing immediate background sync...")
        return await self.perform_sync()

    def get_stats(self) -> SyncStats:
        return self._stats.model_copy(deep=True)

    def is_sync_in_progress(self) -> bool:
        return self._is_syncing

    def clear_errors(self):
        self._stats = self._stats.model_copy(update={"errors": []})

    async def update_config(self, **changes):
        """
        Apply settings changes. A new interval restarts a running timer;
        flipping `enabled` starts or stops the scheduler.
        """
        was_enabled = self.settings.enabled
        interval_changed = "interval_sec" in changes and changes["interval_sec"] != self.settings.interval_sec
        self.settings = self.settings.model_copy(update=changes)

        if interval_changed and self._ticker.is_running:
            logger.info("🔄 Sync interval changed, restarting sync...")
            await self._ticker.stop()
            self._ticker.interval_sec = self.settings.interval_sec
            self._ticker.initial_delay_sec = self.settings.initial_delay_sec
            self.start()
            return

        self._ticker.interval_sec = self.settings.interval_sec
        if not was_enabled and self.settings.enabled:
            logger.info("🔄 Sync enabled, starting...")
            self.start()
        elif was_enabled and not self.settings.enabled:
            logger.info("🔄 Sync disabled, stopping...")
            await self.stop()
