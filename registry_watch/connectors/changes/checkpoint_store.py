"""
SQL-backed checkpoint store for the change consumer.

One row per consumer name holds the last processed cursor and the coarse
stage marker external observers read ("watch" once the consumer runs).
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from sqlalchemy import create_engine, Column, String, DateTime, BigInteger, Integer, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, RetryError

from .models import Checkpoint, CheckpointError, Cursor, to_cursor

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatchCheckpoint(Base):
    """
    Checkpoint row.

    Stores:
    - name: Consumer name (row key)
    - seq: Last processed cursor, verbatim
    - stage: Coarse lifecycle marker
    - updated_at: Last update time
    """
    __tablename__ = "watch_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    seq = Column(String(512), nullable=True)
    stage = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


def create_store_engine(database_url: str, pool_size: int = 5, max_overflow: int = 10):
    """Create an engine; pooling options only apply to server databases."""
    options = {"pool_pre_ping": True, "echo": False}
    if make_url(database_url).get_backend_name() == "sqlite":
        # Saves run on worker threads
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(pool_size=pool_size, max_overflow=max_overflow, pool_recycle=3600)
    return create_engine(database_url, **options)


class CheckpointStore:
    """
    Durable record of the consumer's position.

    `get()` is retried on transient database errors because it gates
    startup. `save()` is a single attempt: the consumer fires it and moves
    on, and the next change's save supersedes a failed one.

    Example:
        >>> store = CheckpointStore(database_url)
        >>> store.save(stage="watch")
        >>> store.save(cursor="1234")
        >>> store.get().cursor
        '1234'
    """

    def __init__(self, database_url: str, name: str = "watch", pool_size: int = 5, max_overflow: int = 10):
        """
        Initialize checkpoint store.

        Raises:
            CheckpointError: If database connection fails
        """
        self.name = name
        try:
            self.engine = create_store_engine(database_url, pool_size, max_overflow)
            self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("CheckpointStore initialized successfully", extra={"checkpoint": name})

        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize CheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    @classmethod
    def from_settings(cls, settings) -> "CheckpointStore":
        return cls(
            settings.database.connection_url,
            name=settings.watch.checkpoint_name,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
        )

    def get(self) -> Checkpoint:
        """
        Load the checkpoint; a missing row means "start from the beginning".

        Raises:
            CheckpointError: If load fails after retries
        """
        try:
            return self._load()
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"Database error loading checkpoint: {cause}", extra={"checkpoint": self.name})
            raise CheckpointError(f"Database error: {cause}") from cause
        except SQLAlchemyError as e:
            logger.error(f"Database error loading checkpoint: {e}", extra={"checkpoint": self.name})
            raise CheckpointError(f"Database error: {e}") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(OperationalError)
    )
    def _load(self) -> Checkpoint:
        session: Session = self.SessionLocal()
        try:
            row = session.query(WatchCheckpoint).filter_by(name=self.name).first()
            if row is None:
                logger.debug("No checkpoint found", extra={"checkpoint": self.name})
                return Checkpoint()
            return Checkpoint(cursor=row.seq if row.seq is not None else "0", stage=row.stage)
        finally:
            session.close()

    def save(self, cursor: Optional[Cursor] = None, stage: Optional[str] = None) -> None:
        """
        Merge ``cursor`` and/or ``stage`` into the checkpoint row (upsert).

        Raises:
            CheckpointError: If the write fails
        """
        if cursor is None and stage is None:
            raise ValueError("save() needs a cursor or a stage")

        session: Session = self.SessionLocal()
        try:
            with session.begin():
                row = session.query(WatchCheckpoint).filter_by(
                    name=self.name
                ).with_for_update().first()

                if row is None:
                    row = WatchCheckpoint(name=self.name)
                    session.add(row)

                if cursor is not None:
                    row.seq = to_cursor(cursor)
                if stage is not None:
                    row.stage = stage
                row.updated_at = _utcnow()

            logger.debug(
                "Saved checkpoint",
                extra={"checkpoint": self.name, "cursor": cursor, "stage": stage}
            )

        except SQLAlchemyError as e:
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"checkpoint": self.name, "cursor": cursor}
            )
            raise CheckpointError(f"Database error: {e}") from e

        finally:
            session.close()

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
        logger.info("CheckpointStore connections closed")
