from sqlalchemy import Column, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Timestamps are epoch seconds (time.time()) so expiry checks stay a plain comparison.


class CacheEntry(Base):
    """Generic TTL key-value row"""
    __tablename__ = "cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(512), unique=True, nullable=False, index=True)
    data = Column(Text, nullable=False)  # JSON
    ttl = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)
    last_accessed = Column(Float, nullable=False, index=True)
    access_count = Column(Integer, default=0, nullable=False)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class VolumeCache(Base):
    """Per-pool trading volume"""
    __tablename__ = "volume_cache"
    __table_args__ = (UniqueConstraint("protocol", "pool", name="uq_volume_protocol_pool"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    protocol = Column(String(128), nullable=False, index=True)
    pool = Column(String(256), nullable=False)
    volume_24h = Column(Float, default=0.0)
    volume_7d = Column(Float, default=0.0)
    volume_30d = Column(Float, default=0.0)
    concentration_risk = Column(Float, default=0.0)
    timestamp = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)

    def to_dict(self):
        return {
            "protocol": self.protocol,
            "pool": self.pool,
            "volume_24h": self.volume_24h,
            "volume_7d": self.volume_7d,
            "volume_30d": self.volume_30d,
            "concentration_risk": self.concentration_risk,
            "timestamp": self.timestamp,
        }


class UserMetricsCache(Base):
    """Per-protocol user activity"""
    __tablename__ = "user_metrics_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    protocol = Column(String(128), unique=True, nullable=False, index=True)
    unique_users_24h = Column(Integer, default=0)
    unique_users_7d = Column(Integer, default=0)
    unique_users_30d = Column(Integer, default=0)
    active_wallets = Column(Integer, default=0)
    new_users = Column(Integer, default=0)
    user_retention = Column(Float, default=0.0)
    timestamp = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)

    def to_dict(self):
        return {
            "protocol": self.protocol,
            "unique_users_24h": self.unique_users_24h,
            "unique_users_7d": self.unique_users_7d,
            "unique_users_30d": self.unique_users_30d,
            "active_wallets": self.active_wallets,
            "new_users": self.new_users,
            "user_retention": self.user_retention,
            "timestamp": self.timestamp,
        }


class AggregatedMetrics(Base):
    """Chain-wide totals across synced protocols"""
    __tablename__ = "aggregated_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chain = Column(String(64), unique=True, nullable=False, index=True)
    total_volume_24h = Column(Float, default=0.0)
    total_volume_7d = Column(Float, default=0.0)
    total_volume_30d = Column(Float, default=0.0)
    total_users_24h = Column(Integer, default=0)
    total_users_7d = Column(Integer, default=0)
    total_users_30d = Column(Integer, default=0)
    protocol_count = Column(Integer, default=0)
    timestamp = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)

    def to_dict(self):
        return {
            "chain": self.chain,
            "total_volume_24h": self.total_volume_24h,
            "total_volume_7d": self.total_volume_7d,
            "total_volume_30d": self.total_volume_30d,
            "total_users_24h": self.total_users_24h,
            "total_users_7d": self.total_users_7d,
            "total_users_30d": self.total_users_30d,
            "protocol_count": self.protocol_count,
            "timestamp": self.timestamp,
        }
