"""
Feed parser module.
Turns raw feed bytes into an ordered list of canonical Item records.
"""
import io
import logging
from datetime import datetime
from typing import List, Optional, Tuple

import feedparser

from feedrelay.errors import ParseError
from feedrelay.models import FeedFormat, FeedSource, Item
from feedrelay.utils.helpers import clean_text, create_item_hash, parse_date, struct_time_to_datetime

logger = logging.getLogger(__name__)


class FeedParser:
    """
    Parses RSS 2.0, RSS 1.0 (RDF) and Atom documents.

    The variant is picked per source: a concrete FeedFormat in the source
    configuration must match the content, FeedFormat.AUTO sniffs it.
    """

    def parse(self, raw: bytes, source: FeedSource) -> List[Item]:
        """
        Parse raw feed content.

        Args:
            raw: Feed body exactly as fetched
            source: Feed the content belongs to

        Returns:
            Items in feed-declared order. An empty list is a valid result.

        Raises:
            ParseError: If the content is not a feed, or not the configured format
        """
        try:
            # A file object is never taken for a path or URL
            parsed = feedparser.parse(io.BytesIO(raw))
        except Exception as e:
            raise ParseError(source, f"parser crashed: {e}") from e

        feed_format = self._select_format(parsed, source)

        if parsed.get('bozo'):
            # Tolerated: encoding overrides, undeclared entities, trailing garbage
            logger.debug(f"Feed '{source.id}' is not well-formed: {parsed.get('bozo_exception')}")

        items = []
        seen = set()
        for position, entry in enumerate(parsed.entries):
            item = self._extract_item(entry, source, feed_format)
            if item is None:
                logger.debug(f"Skipping entry {position} of feed '{source.id}': no title and no link")
                continue
            if item.guid in seen:
                logger.debug(f"Skipping repeated guid '{item.guid}' in feed '{source.id}'")
                continue
            seen.add(item.guid)
            items.append(item)

        logger.info(f"Parsed feed '{source.id}' ({feed_format.value}): {len(items)} items")
        return items

    def _select_format(self, parsed, source: FeedSource) -> FeedFormat:
        detected = FeedFormat.detect(parsed.get('version', ''))

        if detected is None:
            if not parsed.entries:
                cause = parsed.get('bozo_exception') or "unrecognized feed format"
                raise ParseError(source, f"content is not a feed: {cause}")
            # Entries were found even though the dialect is unknown
            detected = FeedFormat.RSS

        if source.format not in (FeedFormat.AUTO, detected):
            raise ParseError(source, f"expected {source.format.value} feed, got {detected.value}")

        return detected

    def _extract_item(self, entry, source: FeedSource, feed_format: FeedFormat) -> Optional[Item]:
        """
        Build an Item from a feedparser entry.

        Args:
            entry: Feed entry from feedparser
            source: Feed the entry belongs to
            feed_format: Variant used to read publish dates

        Returns:
            Item, or None when the entry has neither title nor link
        """
        title = clean_text(entry.get('title', ''))
        link = (entry.get('link') or '').strip()
        if not title and not link:
            return None

        raw_published, published_at = self._extract_published(entry, feed_format)

        guid = (entry.get('id') or '').strip()
        if not guid:
            guid = create_item_hash(title, link, raw_published)

        summary = entry.get('summary') or entry.get('description') or ''
        if not summary and entry.get('content'):
            summary = entry.content[0].get('value', '')

        return Item(
            feed_id=source.id,
            guid=guid,
            title=title,
            link=link,
            published_at=published_at,
            raw_summary=summary,
        )

    def _extract_published(self, entry, feed_format: FeedFormat) -> Tuple[str, Optional[datetime]]:
        """
        Returns:
            (raw date string as it appeared in the feed, parsed datetime or None)
        """
        for field in feed_format.date_fields:
            raw = entry.get(field)
            if not raw:
                continue
            published_at = struct_time_to_datetime(entry.get(f"{field}_parsed"))
            if published_at is None:
                published_at = parse_date(raw)
            if published_at is None:
                logger.debug(f"Unparseable {field} date '{raw}', recording as absent")
            return raw, published_at
        return '', None
