"""
Database connection and session management for the cache store
"""

from contextlib import contextmanager
import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from yieldsentry.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns one engine + session factory. One instance per cache store."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine = None
        self._SessionLocal = None

    def get_engine(self):
        """Get or create the database engine"""
        if self._engine is None:
            if "sqlite" in self.database_url:
                _ensure_sqlite_dir(self.database_url)
                connect_args = {"check_same_thread": False}
                pool_kwargs = {}  # SQLite has different pooling
            else:
                connect_args = {}
                pool_kwargs = {
                    "pool_pre_ping": True,
                    "pool_size": 5,
                    "max_overflow": 10,
                }

            self._engine = create_engine(
                self.database_url,
                connect_args=connect_args,
                echo=os.getenv("SQL_DEBUG", "false").lower() == "true",
                **pool_kwargs
            )
        return self._engine

    def get_session_factory(self):
        """Get or create the session factory"""
        if self._SessionLocal is None:
            self._SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.get_engine())
        return self._SessionLocal

    def init_db(self):
        """Create all tables if they don't exist"""
        logger.info("🗄️ Initializing cache tables...")
        try:
            Base.metadata.create_all(bind=self.get_engine())
            logger.info("✅ Cache tables ready")
        except Exception as e:
            logger.error(f"❌ Failed to initialize cache database: {e}")
            raise

    @contextmanager
    def session_scope(self):
        """Transactional scope: commit on success, rollback on error"""
        SessionLocal = self.get_session_factory()
        db = SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None


def _ensure_sqlite_dir(database_url: str):
    path = make_url(database_url).database
    if not path or path == ":memory:":
        return
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
