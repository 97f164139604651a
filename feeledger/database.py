import logging
import time
from contextlib import contextmanager
from typing import Callable, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from feeledger.errors import ConcurrencyError

logger = logging.getLogger("fee-ledger.db")

Base = declarative_base()

T = TypeVar("T")


class Database:
    """Engine and session factory for one process, opened at startup and closed at shutdown."""

    def __init__(self, database_url: str, lock_timeout_ms: int = 5000):
        self.database_url = database_url
        self.lock_timeout_ms = lock_timeout_ms
        self.engine = None
        self.SessionLocal = None

    def open(self, create_tables: bool = True):
        if self.engine is not None:
            return self
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(self.database_url, connect_args=connect_args, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        if create_tables:
            from feeledger import models  # noqa: F401
            Base.metadata.create_all(bind=self.engine)
        logger.info("Database opened (%s)", self.engine.url.render_as_string(hide_password=True))
        return self

    def close(self):
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database closed")
        self.engine = None
        self.SessionLocal = None

    def session(self) -> Session:
        if self.SessionLocal is None:
            raise RuntimeError("Database is not open")
        return self.SessionLocal()

    def ping(self):
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))


# lock_not_available, serialization_failure, deadlock_detected
_RETRYABLE_PGCODES = {"55P03", "40001", "40P01"}


def _is_lock_error(exc: OperationalError) -> bool:
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True
    return "locked" in str(exc.orig).lower()


@contextmanager
def transaction(db: Session, lock_timeout_ms: int = 5000):
    """Commit everything done in the block, or roll all of it back."""
    try:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'"))
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrencyError("The record was modified concurrently, please retry") from exc
    except OperationalError as exc:
        db.rollback()
        if _is_lock_error(exc):
            raise ConcurrencyError("Timed out waiting for a lock, please retry") from exc
        raise
    except Exception:
        db.rollback()
        raise


def run_with_retry(db: Session, work: Callable[[], T], retries: int = 3, backoff: float = 0.05) -> T:
    """Run a transactional unit, re-running it from scratch on concurrency conflicts."""
    attempt = 0
    while True:
        try:
            return work()
        except ConcurrencyError:
            attempt += 1
            if attempt > retries:
                raise
            logger.warning("Concurrency conflict, retrying (attempt %s/%s)", attempt, retries)
            db.expire_all()
            time.sleep(backoff * attempt)
