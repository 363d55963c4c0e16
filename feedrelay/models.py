"""
Data models shared across the relay pipeline.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class FeedFormat(str, Enum):
    """Closed set of feed formats the parser understands."""

    AUTO = "auto"
    RSS = "rss"
    ATOM = "atom"
    RDF = "rdf"

    @classmethod
    def detect(cls, version: str) -> Optional["FeedFormat"]:
        """
        Map a feedparser version string (e.g. 'rss20', 'atom10') to a format.

        Args:
            version: Version reported by feedparser

        Returns:
            The detected format, or None when the content was not recognized
        """
        if not version:
            return None
        if version.startswith('atom'):
            return cls.ATOM
        if version in ('rss090', 'rss10'):
            return cls.RDF
        if version.startswith('rss'):
            return cls.RSS
        return None

    @property
    def date_fields(self) -> Tuple[str, ...]:
        """Entry fields holding the publish time, most authoritative first."""
        return _DATE_FIELDS.get(self, ('published', 'updated', 'created'))


_DATE_FIELDS = {
    FeedFormat.ATOM: ('published', 'updated'),
    FeedFormat.RSS: ('published', 'updated'),
    # RSS 1.0 carries dc:date, which feedparser exposes as 'updated'
    FeedFormat.RDF: ('updated', 'published'),
}


class FeedSource(BaseModel):
    """A configured feed. Immutable for the lifetime of the process."""

    model_config = ConfigDict(frozen=True)

    id: str
    url: str
    name: Optional[str] = None
    format: FeedFormat = FeedFormat.AUTO

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Item(BaseModel):
    """
    One syndicated entry, synthesized fresh on every poll.

    Identity is (feed_id, guid); every other field is payload.
    """

    model_config = ConfigDict(frozen=True)

    feed_id: str
    guid: str
    title: str = ""
    link: str = ""
    published_at: Optional[datetime] = None
    raw_summary: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.feed_id, self.guid)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Item):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


class FeedStage(str, Enum):
    FETCHING = "fetching"
    PARSING = "parsing"
    FILTERING = "filtering"
    DELIVERING = "delivering"
    DONE = "done"


class FeedOutcome(BaseModel):
    """Result of processing one feed within one cycle."""

    feed_id: str
    stage: FeedStage = FeedStage.FETCHING
    items_seen: int = 0
    new_items: int = 0
    delivered: int = 0
    permanent_failures: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def fail(self, stage: FeedStage, cause) -> "FeedOutcome":
        self.stage = stage
        self.error = str(cause)
        return self


class CycleReport(BaseModel):
    """Transient summary of one polling cycle. Logged, never persisted."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[FeedOutcome] = Field(default_factory=list)

    @property
    def total_delivered(self) -> int:
        return sum(o.delivered for o in self.outcomes)

    @property
    def failed_feeds(self) -> List[FeedOutcome]:
        return [o for o in self.outcomes if o.failed]

    def outcome_for(self, feed_id: str) -> Optional[FeedOutcome]:
        for outcome in self.outcomes:
            if outcome.feed_id == feed_id:
                return outcome
        return None

    def summary(self) -> dict:
        duration = 0.0
        if self.finished_at:
            duration = (self.finished_at - self.started_at).total_seconds()
        return {
            'feeds_processed': len(self.outcomes),
            'total_new_items': sum(o.new_items for o in self.outcomes),
            'total_delivered': self.total_delivered,
            'permanent_failures': sum(o.permanent_failures for o in self.outcomes),
            'errors': len(self.failed_feeds),
            'duration_seconds': duration,
        }
