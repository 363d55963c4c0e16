"""
Dedup store: the persistent record of which items have been delivered.

The (feed_id, guid) unique constraint is the only thing that decides whether
an item was delivered; nothing is cached in process.
"""
import hashlib
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, create_engine, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from feedrelay.errors import StoreError
from feedrelay.models import Item

logger = logging.getLogger(__name__)

MAX_FEED_ID_LENGTH = 255
MAX_GUID_LENGTH = 2048

# Keeps IN (...) lists well below SQLite's bound parameter limit
_QUERY_CHUNK = 500


class Base(DeclarativeBase):
    pass


class DeliveryRecord(Base):
    __tablename__ = "delivery_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    feed_id: Mapped[str] = mapped_column(String(MAX_FEED_ID_LENGTH), nullable=False)
    guid: Mapped[str] = mapped_column(String(MAX_GUID_LENGTH), nullable=False)

    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("feed_id", "guid", name="uq_delivery_records_feed_guid"),)


def storage_key(guid: str) -> str:
    """
    The value stored for a guid. Guids that do not fit the column are stored as
    a SHA-256 digest so every guid maps to one stable, bounded key.
    """
    if len(guid) <= MAX_GUID_LENGTH:
        return guid
    return "sha256:" + hashlib.sha256(guid.encode("utf-8")).hexdigest()


class CommitResult(str, Enum):
    RECORDED = "recorded"
    ALREADY_RECORDED = "already_recorded"


def create_store_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for the store.

    SQLite connections are shared with the fetch worker threads, and an
    in-memory SQLite database only exists for the connection that created it,
    so both get special pooling.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, future=True, **kwargs)
    return create_engine(database_url, future=True, pool_pre_ping=True)


class DedupStore:
    """
    Answers "was this item delivered?" and records deliveries atomically.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "DedupStore":
        return cls(create_store_engine(database_url))

    def init(self) -> None:
        """
        Create tables (idempotent) and verify connectivity.

        Raises:
            StoreError: If the database cannot be reached
        """
        try:
            Base.metadata.create_all(self.engine)
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise StoreError(f"cannot initialize dedup store: {e}") from e
        logger.info(f"Dedup store ready at {self.engine.url.render_as_string(hide_password=True)}")

    def filter_new(self, feed_id: str, items: Iterable[Item]) -> List[Item]:
        """
        Keep only the items that have no delivery record.

        Args:
            feed_id: Feed the items belong to
            items: Candidate items, in feed order

        Returns:
            The undelivered items, in the same order

        Raises:
            StoreError: If the store cannot be queried
        """
        items = list(items)
        if not items:
            return []

        keys = [storage_key(item.guid) for item in items]
        delivered = set()
        try:
            with Session(self.engine) as session:
                for start in range(0, len(keys), _QUERY_CHUNK):
                    chunk = keys[start:start + _QUERY_CHUNK]
                    rows = session.execute(
                        select(DeliveryRecord.guid).where(
                            DeliveryRecord.feed_id == feed_id,
                            DeliveryRecord.guid.in_(chunk),
                        )
                    ).scalars()
                    delivered.update(rows)
        except SQLAlchemyError as e:
            raise StoreError(f"filter_new failed for feed '{feed_id}': {e}") from e

        return [item for item, key in zip(items, keys) if key not in delivered]

    def commit(self, feed_id: str, guid: str, delivered_at: Optional[datetime] = None) -> CommitResult:
        """
        Record a delivery. Safe to call any number of times for the same key.

        Args:
            feed_id: Feed the item belongs to
            guid: Item identifier
            delivered_at: Delivery time, defaults to now (UTC)

        Returns:
            CommitResult.RECORDED if this call created the record,
            CommitResult.ALREADY_RECORDED if one already existed

        Raises:
            StoreError: If the store is unavailable
        """
        record = DeliveryRecord(
            feed_id=feed_id,
            guid=storage_key(guid),
            delivered_at=delivered_at or datetime.now(timezone.utc),
        )
        try:
            with Session(self.engine) as session:
                session.add(record)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.debug(f"Delivery of '{guid}' in feed '{feed_id}' was already recorded")
                    return CommitResult.ALREADY_RECORDED
        except SQLAlchemyError as e:
            raise StoreError(f"commit failed for '{guid}' in feed '{feed_id}': {e}") from e

        return CommitResult.RECORDED

    def count(self, feed_id: Optional[str] = None) -> int:
        """Number of delivery records, optionally for a single feed."""
        query = select(func.count(DeliveryRecord.id))
        if feed_id is not None:
            query = query.where(DeliveryRecord.feed_id == feed_id)
        try:
            with Session(self.engine) as session:
                return session.execute(query).scalar_one()
        except SQLAlchemyError as e:
            raise StoreError(f"count failed: {e}") from e

    def counts_by_feed(self) -> Dict[str, int]:
        """Delivery record count per feed id."""
        query = select(DeliveryRecord.feed_id, func.count(DeliveryRecord.id)).group_by(DeliveryRecord.feed_id)
        try:
            with Session(self.engine) as session:
                return {feed_id: total for feed_id, total in session.execute(query)}
        except SQLAlchemyError as e:
            raise StoreError(f"counts_by_feed failed: {e}") from e
