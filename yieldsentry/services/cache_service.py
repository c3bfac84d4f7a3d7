import json
import logging
import math
import time
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel
from sqlalchemy import func

from yieldsentry.config import CacheSettings
from yieldsentry.database import Database
from yieldsentry.models import AggregatedMetrics, CacheEntry, UserMetricsCache, VolumeCache
from yieldsentry.schemas import AggregatedMetricsData, CacheStats, UserMetrics, VolumeData
from yieldsentry.services.ticker import PeriodicTask

logger = logging.getLogger(__name__)

# Default TTLs for the specialized tables
VOLUME_TTL_SEC = 4 * 3600
USER_METRICS_TTL_SEC = 6 * 3600
AGGREGATED_TTL_SEC = 12 * 3600

# Share of the table evicted when max_entries is reached
PRUNE_FRACTION = 0.2


class CacheKeys:
    @staticmethod
    def volume(protocol: str, pool: str) -> str:
        return f"volume:{protocol}:{pool}"

    @staticmethod
    def user_metrics(protocol: str) -> str:
        return f"user_metrics:{protocol}"

    @staticmethod
    def aggregated(chain: str) -> str:
        return f"aggregated:{chain}"

    @staticmethod
    def api(api: str, endpoint: str) -> str:
        return f"api:{api}:{endpoint}"


def _json_default(value: Any):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class CacheService:
    """
    TTL cache persisted in SQLite so it survives restarts.

    Every public call is a single transaction, so interleaved coroutines
    never see half-updated bookkeeping. Expired rows are treated as absent
    on read and removed lazily, plus a periodic sweep over all tables.
    """

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        database: Optional[Database] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or CacheSettings()
        self.db = database or Database(self.settings.db_url)
        self.db.init_db()
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self._cleanup_task = PeriodicTask(
            "cache-cleanup", self._cleanup_tick, self.settings.cleanup_interval_sec
        )

    def start(self):
        self._cleanup_task.start()

    async def stop(self):
        await self._cleanup_task.stop()

    def close(self):
        self.db.dispose()

    # Generic key-value -----------------------------------------------------

    def set(self, key: str, data: Any, ttl_sec: Optional[float] = None):
        ttl = self.settings.default_ttl_sec if ttl_sec is None else float(ttl_sec)
        now = self._clock()
        payload = json.dumps(data, default=_json_default)
        with self.db.session_scope() as db:
            entry = db.query(CacheEntry).filter(CacheEntry.key == key).first()
            if entry is None:
                self._prune_if_full(db)
                entry = CacheEntry(key=key)
                db.add(entry)
            # Overwrite resets the entry like a fresh insert
            entry.data = payload
            entry.ttl = ttl
            entry.created_at = now
            entry.expires_at = now + ttl
            entry.updated_at = now
            entry.last_accessed = now
            entry.access_count = 0

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self.db.session_scope() as db:
            entry = db.query(CacheEntry).filter(CacheEntry.key == key).first()
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(now):
                db.delete(entry)
                self.misses += 1
                return None
            entry.last_accessed = now
            entry.access_count = (entry.access_count or 0) + 1
            payload = entry.data
        self.hits += 1
        return json.loads(payload)

    def delete(self, key: str) -> bool:
        with self.db.session_scope() as db:
            removed = db.query(CacheEntry).filter(CacheEntry.key == key).delete(synchronize_session=False)
        return removed > 0

    def delete_prefix(self, prefix: str) -> int:
        with self.db.session_scope() as db:
            return db.query(CacheEntry).filter(CacheEntry.key.startswith(prefix)).delete(
                synchronize_session=False
            )

    def clear(self):
        with self.db.session_scope() as db:
            for model in (CacheEntry, VolumeCache, UserMetricsCache, AggregatedMetrics):
                db.query(model).delete(synchronize_session=False)
        logger.info("🧹 Cache cleared")

    def _prune_if_full(self, db):
        count = db.query(func.count(CacheEntry.id)).scalar() or 0
        if count < self.settings.max_entries:
            return
        n_evict = max(1, math.ceil(self.settings.max_entries * PRUNE_FRACTION))
        victims = [
            row_id for (row_id,) in db.query(CacheEntry.id)
            .order_by(CacheEntry.last_accessed.asc(), CacheEntry.id.asc())
            .limit(n_evict)
            .all()
        ]
        db.query(CacheEntry).filter(CacheEntry.id.in_(victims)).delete(synchronize_session=False)
        logger.info("Cache full (%d entries), evicted %d least-recently-used", count, len(victims))

    # Specialized tables -----------------------------------------------------

    def set_volume_data(
        self, protocol: str, pool: str, data: Union[VolumeData, dict], ttl_sec: float = VOLUME_TTL_SEC
    ):
        volume = data if isinstance(data, VolumeData) else VolumeData(protocol=protocol, pool=pool, **data)
        now = self._clock()
        with self.db.session_scope() as db:
            row = (
                db.query(VolumeCache)
                .filter(VolumeCache.protocol == protocol, VolumeCache.pool == pool)
                .first()
            )
            if row is None:
                row = VolumeCache(protocol=protocol, pool=pool)
                db.add(row)
            row.volume_24h = volume.volume_24h
            row.volume_7d = volume.volume_7d
            row.volume_30d = volume.volume_30d
            row.concentration_risk = volume.concentration_risk
            row.timestamp = volume.timestamp or now
            row.expires_at = now + ttl_sec

    def get_volume_data(self, protocol: str, pool: str) -> Optional[VolumeData]:
        now = self._clock()
        with self.db.session_scope() as db:
            row = (
                db.query(VolumeCache)
                .filter(VolumeCache.protocol == protocol, VolumeCache.pool == pool)
                .first()
            )
            if row is None or now > row.expires_at:
                if row is not None:
                    db.delete(row)
                return None
            return VolumeData(**row.to_dict())

    def set_user_metrics(
        self, protocol: str, data: Union[UserMetrics, dict], ttl_sec: float = USER_METRICS_TTL_SEC
    ):
        metrics = data if isinstance(data, UserMetrics) else UserMetrics(protocol=protocol, **data)
        now = self._clock()
        with self.db.session_scope() as db:
            row = db.query(UserMetricsCache).filter(UserMetricsCache.protocol == protocol).first()
            if row is None:
                row = UserMetricsCache(protocol=protocol)
                db.add(row)
            row.unique_users_24h = metrics.unique_users_24h
            row.unique_users_7d = metrics.unique_users_7d
            row.unique_users_30d = metrics.unique_users_30d
            row.active_wallets = metrics.active_wallets
            row.new_users = metrics.new_users
            row.user_retention = metrics.user_retention
            row.timestamp = metrics.timestamp or now
            row.expires_at = now + ttl_sec

    def get_user_metrics(self, protocol: str) -> Optional[UserMetrics]:
        now = self._clock()
        with self.db.session_scope() as db:
            row = db.query(UserMetricsCache).filter(UserMetricsCache.protocol == protocol).first()
            if row is None or now > row.expires_at:
                if row is not None:
                    db.delete(row)
                return None
            return UserMetrics(**row.to_dict())

    def set_aggregated_metrics(
        self, chain: str, data: Union[AggregatedMetricsData, dict], ttl_sec: float = AGGREGATED_TTL_SEC
    ):
        metrics = data if isinstance(data, AggregatedMetricsData) else AggregatedMetricsData(chain=chain, **data)
        now = self._clock()
        with self.db.session_scope() as db:
            row = db.query(AggregatedMetrics).filter(AggregatedMetrics.chain == chain).first()
            if row is None:
                row = AggregatedMetrics(chain=chain)
                db.add(row)
            row.total_volume_24h = metrics.total_volume_24h
            row.total_volume_7d = metrics.total_volume_7d
            row.total_volume_30d = metrics.total_volume_30d
            row.total_users_24h = metrics.total_users_24h
            row.total_users_7d = metrics.total_users_7d
            row.total_users_30d = metrics.total_users_30d
            row.protocol_count = metrics.protocol_count
            row.timestamp = metrics.timestamp or now
            row.expires_at = now + ttl_sec

    def get_aggregated_metrics(self, chain: str) -> Optional[AggregatedMetricsData]:
        now = self._clock()
        with self.db.session_scope() as db:
            row = db.query(AggregatedMetrics).filter(AggregatedMetrics.chain == chain).first()
            if row is None or now > row.expires_at:
                if row is not None:
                    db.delete(row)
                return None
            return AggregatedMetricsData(**row.to_dict())

    # Maintenance ------------------------------------------------------------

    def cleanup_expired(self) -> int:
        now = self._clock()
        removed = 0
        with self.db.session_scope() as db:
            for model in (CacheEntry, VolumeCache, UserMetricsCache, AggregatedMetrics):
                removed += db.query(model).filter(model.expires_at < now).delete(synchronize_session=False)
        if removed:
            logger.info("🧹 Removed %d expired cache rows", removed)
        return removed

    async def _cleanup_tick(self):
        self.cleanup_expired()

    def get_stats(self) -> CacheStats:
        now = self._clock()
        with self.db.session_scope() as db:
            total = db.query(func.count(CacheEntry.id)).scalar() or 0
            expired = db.query(func.count(CacheEntry.id)).filter(CacheEntry.expires_at < now).scalar() or 0
            avg_ttl = db.query(func.avg(CacheEntry.ttl)).scalar() or 0.0
            volume = db.query(func.count(VolumeCache.id)).scalar() or 0
            users = db.query(func.count(UserMetricsCache.id)).scalar() or 0
            aggregated = db.query(func.count(AggregatedMetrics.id)).scalar() or 0
        lookups = self.hits + self.misses
        return CacheStats(
            total_entries=total,
            expired_entries=expired,
            volume_entries=volume,
            user_metrics_entries=users,
            aggregated_entries=aggregated,
            average_ttl=float(avg_ttl),
            hits=self.hits,
            misses=self.misses,
            hit_rate=(self.hits / lookups) if lookups else 0.0,
        )
