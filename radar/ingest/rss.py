"""RSS/Atom feed connector."""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any

import feedparser
import httpx

from radar.ingest import register_connector
from radar.ingest.base import BaseConnector, clamp_int, config_value
from radar.models import ContentItemDraft, FetchParams, FetchResult, parse_ts
from radar.retry import retry_async

logger = logging.getLogger(__name__)

USER_AGENT = "radar/0.1 (personal digest; connectors/rss)"
RECENT_GUIDS_CAP = 200


def _entry_published(entry: Any) -> datetime | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    # feedparser normalizes to UTC struct_time
    return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)


@register_connector("rss")
class RSSConnector(BaseConnector):
    """Fetch entries from a single feed.

    Cursor: ``last_published_at`` (newest entry date seen) and
    ``recent_guids`` (bounded list of ids already delivered). An entry dated
    at or before the cursor is still taken when its guid is new, since some
    feeds reuse dates.
    """

    @property
    def source_type(self) -> str:
        return "rss"

    async def fetch(self, params: FetchParams) -> FetchResult:
        feed_url = config_value(params.config, "feed_url")
        if not feed_url:
            raise ValueError('RSS source config must include "feed_url"')
        max_items = min(
            params.limits.max_items,
            clamp_int(config_value(params.config, "max_item_count", 50), 50, 1, 200),
        )

        text = await retry_async(self._get_feed, feed_url, max_retries=2, base_delay=1.0)
        feed = feedparser.parse(text)

        last_published = parse_ts(params.cursor.get("last_published_at"))
        recent_guids = [g for g in params.cursor.get("recent_guids") or [] if isinstance(g, str)]
        seen = set(recent_guids)

        raw_items: list[dict] = []
        new_guids: list[str] = []
        newest = last_published
        for entry in feed.entries:
            if len(raw_items) >= max_items:
                break
            guid = entry.get("id") or entry.get("link")
            if guid and guid in seen:
                continue
            published = _entry_published(entry)
            if last_published and published and published <= last_published and not guid:
                continue
            if published and (newest is None or published > newest):
                newest = published
            if guid:
                new_guids.append(guid)
                seen.add(guid)

            content = ""
            if entry.get("content"):
                content = entry.content[0].get("value", "")
            raw_items.append({
                "guid": guid,
                "link": entry.get("link"),
                "title": entry.get("title"),
                "author": entry.get("author"),
                "published_at": published.isoformat() if published else None,
                "summary": entry.get("summary", ""),
                "content": content,
                "categories": [t.get("term") for t in entry.get("tags", []) if t.get("term")],
                "feed_url": feed_url,
            })

        next_cursor: dict[str, Any] = {}
        if newest is not None:
            next_cursor["last_published_at"] = newest.isoformat()
        guids = (new_guids + recent_guids)[:RECENT_GUIDS_CAP]
        if guids:
            next_cursor["recent_guids"] = guids

        logger.info("RSS fetched %d of %d entries from %s", len(raw_items), len(feed.entries), feed_url)
        return FetchResult(
            raw_items=raw_items,
            next_cursor=next_cursor,
            meta={"entries_found": len(feed.entries), "feed_title": feed.feed.get("title")},
        )

    async def normalize(self, raw: Any, params: FetchParams) -> ContentItemDraft:
        if not isinstance(raw, dict) or not (raw.get("title") or raw.get("link")):
            raise ValueError("RSS entry without title or link")
        body = raw.get("content") or raw.get("summary") or None
        return ContentItemDraft(
            title=raw.get("title"),
            body_text=body,
            canonical_url=raw.get("link"),
            source_type="rss",
            external_id=raw.get("guid"),
            published_at=parse_ts(raw.get("published_at")),
            author=raw.get("author"),
            metadata={
                "feed_url": raw.get("feed_url"),
                "categories": raw.get("categories") or [],
            },
            raw=raw,
        )

    @staticmethod
    async def _get_feed(url: str) -> str:
        async with httpx.AsyncClient(timeout=20, follow_redirects=True) as client:
            resp = await client.get(url, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
            return resp.text
