"""Reddit connector: public JSON listings, or the OAuth2 API when credentials are set."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from radar.ingest import register_connector
from radar.ingest.base import BaseConnector, clamp_int, config_value
from radar.models import ContentItemDraft, FetchParams, FetchResult
from radar.retry import retry_async
from radar.throttle import normalize_handle

logger = logging.getLogger(__name__)

USER_AGENT = "radar/0.1 (personal digest; connectors/reddit)"
TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
PUBLIC_BASE = "https://www.reddit.com"
OAUTH_BASE = "https://oauth.reddit.com"

LISTINGS = ("new", "top", "hot")
TIME_FILTERS = ("hour", "day", "week", "month", "year", "all")
MAX_PAGES = 10


def parse_reddit_config(config: dict) -> dict:
    subreddits = config_value(config, "subreddits", [])
    if isinstance(subreddits, str):
        subreddits = [subreddits]
    subreddits = [normalize_handle(s) for s in subreddits if isinstance(s, str) and s.strip()]

    listing = config_value(config, "listing", "new")
    time_filter = config_value(config, "time_filter", "day")
    return {
        "subreddits": subreddits,
        "listing": listing if listing in LISTINGS else "new",
        "time_filter": time_filter if time_filter in TIME_FILTERS else "day",
        "include_comments": bool(config_value(config, "include_comments", False)),
        "max_comment_count": clamp_int(config_value(config, "max_comment_count", 0), 0, 0, 50),
        "include_nsfw": bool(config_value(config, "include_nsfw", False)),
        "min_score": clamp_int(config_value(config, "min_score", 0), 0, 0, 1_000_000),
        "client_id": config_value(config, "client_id", ""),
        "client_secret": config_value(config, "client_secret", ""),
    }


@register_connector("reddit")
class RedditConnector(BaseConnector):
    """Fetch posts from a set of subreddits.

    With ``listing: new`` the fetch is incremental: the cursor keeps the
    newest ``created_utc`` seen per subreddit and paging stops there. ``top``
    and ``hot`` are snapshots and always return an empty cursor.
    """

    @property
    def source_type(self) -> str:
        return "reddit"

    def account_handles(self, config: dict) -> list[str]:
        return parse_reddit_config(config)["subreddits"]

    async def fetch(self, params: FetchParams) -> FetchResult:
        cfg = parse_reddit_config(params.config)
        if not cfg["subreddits"]:
            raise ValueError('Reddit source config must include a non-empty "subreddits" list')

        included = params.config.get("included_accounts")
        subreddits = [s for s in cfg["subreddits"] if included is None or s in included]
        incremental = cfg["listing"] == "new"
        last_seen_by_sub = dict(params.cursor.get("last_seen_created_utc") or {}) if incremental else {}

        token = None
        if cfg["client_id"] and cfg["client_secret"]:
            token = await self._get_token(cfg["client_id"], cfg["client_secret"])

        raw_items: list[dict] = []
        requests = 0
        async with httpx.AsyncClient(timeout=15, follow_redirects=True) as client:
            for sub in subreddits:
                remaining = params.limits.max_items - len(raw_items)
                if remaining <= 0:
                    break
                posts, newest, made = await self._fetch_subreddit(
                    client, sub, cfg, remaining, float(last_seen_by_sub.get(sub) or 0), token,
                )
                requests += made
                raw_items.extend(posts)
                if incremental and newest:
                    last_seen_by_sub[sub] = newest

            if cfg["include_comments"] and cfg["max_comment_count"] > 0:
                for post in raw_items:
                    if post.get("permalink"):
                        post["_top_comments"] = await self._fetch_top_comments(
                            client, post["permalink"], cfg["max_comment_count"], token,
                        )
                        requests += 1

        next_cursor = {"last_seen_created_utc": last_seen_by_sub} if incremental else {}
        logger.info(
            "Reddit fetched %d posts from %d subreddits (%s)",
            len(raw_items), len(subreddits), cfg["listing"],
        )
        return FetchResult(
            raw_items=raw_items,
            next_cursor=next_cursor,
            meta={
                "requests": requests,
                "listing": cfg["listing"],
                "subreddits": subreddits,
                "incremental": incremental,
            },
        )

    async def _fetch_subreddit(
        self,
        client: httpx.AsyncClient,
        subreddit: str,
        cfg: dict,
        limit: int,
        last_seen: float,
        token: str | None,
    ) -> tuple[list[dict], float, int]:
        """Page through one listing. Returns (posts, newest created_utc, requests)."""
        incremental = cfg["listing"] == "new"
        newest = last_seen
        posts: list[dict] = []
        after = None
        requests = 0

        for _ in range(MAX_PAGES):
            if len(posts) >= limit:
                break
            query = {"raw_json": 1, "limit": max(1, min(100, limit - len(posts)))}
            if after:
                query["after"] = after
            if cfg["listing"] == "top":
                query["t"] = cfg["time_filter"]

            data = await retry_async(
                self._get_json, client, f"/r/{subreddit}/{cfg['listing']}.json", query, token,
                max_retries=2, base_delay=1.0,
            )
            requests += 1
            children = data.get("data", {}).get("children", [])
            if not children:
                break

            reached_seen = False
            for child in children:
                if len(posts) >= limit:
                    break
                post = child.get("data", {})
                created = post.get("created_utc")
                if incremental and created is not None and created <= last_seen:
                    reached_seen = True
                    break
                if created is not None and created > newest:
                    newest = created
                if post.get("stickied", False):
                    continue
                if post.get("over_18", False) and not cfg["include_nsfw"]:
                    continue
                if post.get("score", 0) < cfg["min_score"]:
                    continue
                posts.append(post)

            after = data.get("data", {}).get("after")
            if reached_seen or not after:
                break

        return posts, newest, requests

    async def _fetch_top_comments(
        self, client: httpx.AsyncClient, permalink: str, max_count: int, token: str | None,
    ) -> list[str]:
        payload = await retry_async(
            self._get_json, client, f"{permalink.rstrip('/')}.json",
            {"raw_json": 1, "limit": max_count, "depth": 1}, token,
            max_retries=2, base_delay=1.0,
        )
        if not isinstance(payload, list) or len(payload) < 2:
            return []
        comments = []
        for child in payload[1].get("data", {}).get("children", []):
            if child.get("kind") != "t1":
                continue
            body = child.get("data", {}).get("body")
            if body:
                comments.append(body)
            if len(comments) >= max_count:
                break
        return comments

    async def normalize(self, raw: Any, params: FetchParams) -> ContentItemDraft:
        if not isinstance(raw, dict) or not raw.get("title"):
            raise ValueError("Reddit post without a title")

        permalink = f"{PUBLIC_BASE}{raw.get('permalink', '')}" if raw.get("permalink") else None
        if raw.get("is_self", False):
            url = permalink
        else:
            url = raw.get("url") or permalink

        body = raw.get("selftext") or ""
        comments = raw.get("_top_comments") or []
        if comments:
            body = "\n\n".join([body, *comments]) if body else "\n\n".join(comments)

        published_at = None
        created_utc = raw.get("created_utc")
        if created_utc:
            try:
                published_at = datetime.fromtimestamp(created_utc, tz=timezone.utc)
            except (ValueError, OSError, OverflowError):
                pass

        return ContentItemDraft(
            title=raw["title"],
            body_text=body or None,
            canonical_url=url,
            source_type="reddit",
            external_id=raw.get("name") or raw.get("id"),
            published_at=published_at,
            author=raw.get("author"),
            metadata={
                "subreddit": raw.get("subreddit"),
                "score": raw.get("score"),
                "num_comments": raw.get("num_comments"),
                "permalink": permalink,
                "over_18": raw.get("over_18", False),
            },
            raw=raw,
        )

    @staticmethod
    async def _get_token(client_id: str, client_secret: str) -> str:
        """Obtain an OAuth2 bearer token using client credentials."""
        async with httpx.AsyncClient(timeout=15) as client:
            resp = await client.post(
                TOKEN_URL,
                data={"grant_type": "client_credentials"},
                auth=(client_id, client_secret),
                headers={"User-Agent": USER_AGENT},
            )
            resp.raise_for_status()
            token = resp.json().get("access_token")
        if not token:
            raise ValueError("Reddit OAuth response carried no access_token")
        return token

    @staticmethod
    async def _get_json(
        client: httpx.AsyncClient, path: str, query: dict, token: str | None,
    ) -> Any:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        base = PUBLIC_BASE
        if token:
            headers["Authorization"] = f"Bearer {token}"
            base = OAUTH_BASE
        resp = await client.get(f"{base}{path}", params=query, headers=headers)
        resp.raise_for_status()
        return resp.json()
