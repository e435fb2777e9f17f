"""
SQL-backed forwarding queue.

Changes are keyed by registry entry id: a newer change for the same entry
replaces the pending one, which is all the indexer needs since it
re-reads the entry when it drains the queue.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Protocol
import logging

from sqlalchemy import Column, String, Integer, DateTime, JSON, func, select
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from ..connectors.changes.checkpoint_store import create_store_engine
from ..connectors.changes.models import ForwardingError

logger = logging.getLogger(__name__)

Base = declarative_base()


class ForwardingQueue(Protocol):
    def save_object(self, record: Dict[str, Any]) -> None:
        ...


class QueuedChange(Base):
    """Pending change awaiting the queue-drain indexer."""
    __tablename__ = "watch_queue"

    object_id = Column(String(512), primary_key=True)
    retries = Column(Integer, nullable=False, default=0)
    change = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SQLForwardingQueue:
    """
    Forwarding queue stored in a SQL table.

    Example:
        >>> queue = SQLForwardingQueue(database_url)
        >>> queue.save_object({"objectID": "lodash", "retries": 0, "change": row})
        >>> queue.fetch_queue_length()
        1
    """

    def __init__(self, database_url: str, pool_size: int = 5, max_overflow: int = 10):
        try:
            self.engine = create_store_engine(database_url, pool_size, max_overflow)
            self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize forwarding queue: {e}")
            raise ForwardingError(f"Database connection failed: {e}") from e

    @classmethod
    def from_settings(cls, settings) -> "SQLForwardingQueue":
        return cls(
            settings.database.connection_url,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
        )

    def save_object(self, record: Dict[str, Any]) -> None:
        """
        Upsert ``{"objectID", "retries", "change"}``.

        Raises:
            ValueError: If the record has no objectID
            ForwardingError: If the write fails
        """
        object_id = record.get("objectID")
        if not object_id:
            raise ValueError("record has no objectID")

        session: Session = self.SessionLocal()
        try:
            with session.begin():
                row = session.get(QueuedChange, object_id)
                if row is None:
                    row = QueuedChange(object_id=object_id)
                    session.add(row)
                row.retries = int(record.get("retries", 0))
                row.change = record.get("change") or {}
                row.updated_at = datetime.now(timezone.utc)
        except SQLAlchemyError as e:
            raise ForwardingError(f"Failed to queue {object_id}: {e}") from e
        finally:
            session.close()

    def get_object(self, object_id: str) -> Dict[str, Any]:
        """Queued record for ``object_id`` (KeyError if absent)."""
        session: Session = self.SessionLocal()
        try:
            row = session.get(QueuedChange, object_id)
            if row is None:
                raise KeyError(object_id)
            return {"objectID": row.object_id, "retries": row.retries, "change": row.change}
        finally:
            session.close()

    def fetch_queue_length(self) -> int:
        session: Session = self.SessionLocal()
        try:
            return session.execute(select(func.count()).select_from(QueuedChange)).scalar_one()
        finally:
            session.close()

    def close(self) -> None:
        self.engine.dispose()
