"""Tests for the Reddit connector."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from radar.ingest.reddit import RedditConnector, parse_reddit_config
from radar.models import FetchLimits, FetchParams

from conftest import WINDOW_END, WINDOW_START


def _params(config, cursor=None, max_items=25) -> FetchParams:
    return FetchParams(
        user_id="u1",
        source_id="reddit-1",
        source_type="reddit",
        config=config,
        cursor=cursor or {},
        limits=FetchLimits(max_items=max_items),
        window_start=WINDOW_START,
        window_end=WINDOW_END,
    )


def _post(name, created, **kwargs):
    post = {
        "name": name,
        "id": name.split("_")[-1],
        "title": f"Title {name}",
        "created_utc": created,
        "url": f"https://example.com/{name}",
        "permalink": f"/r/python/comments/{name}/slug/",
        "subreddit": "python",
        "score": 10,
        "is_self": False,
    }
    post.update(kwargs)
    return post


def _listing(*posts, after=None):
    return {"data": {"children": [{"kind": "t3", "data": p} for p in posts], "after": after}}


def test_parse_config_normalizes_subreddits():
    cfg = parse_reddit_config({"subreddits": ["r/Python", "@rust", " "], "listing": "rising"})
    assert cfg["subreddits"] == ["python", "rust"]
    assert cfg["listing"] == "new"

    camel = parse_reddit_config({"subreddits": "golang", "includeComments": True, "maxCommentCount": 99})
    assert camel["subreddits"] == ["golang"]
    assert camel["include_comments"] is True
    assert camel["max_comment_count"] == 50


def test_account_handles_are_subreddits():
    assert RedditConnector().account_handles({"subreddits": ["r/Python"]}) == ["python"]


@pytest.mark.asyncio
@patch("radar.ingest.reddit.RedditConnector._get_json", new_callable=AsyncMock)
async def test_new_listing_stops_at_cursor(mock_get):
    mock_get.return_value = _listing(
        _post("t3_c", 1300), _post("t3_b", 1200), _post("t3_a", 1000), after="t3_a",
    )
    params = _params({"subreddits": ["python"]}, cursor={"last_seen_created_utc": {"python": 1000}})

    result = await RedditConnector().fetch(params)

    assert [p["name"] for p in result.raw_items] == ["t3_c", "t3_b"]
    assert result.next_cursor == {"last_seen_created_utc": {"python": 1300}}
    assert mock_get.call_count == 1
    assert mock_get.call_args.args[1] == "/r/python/new.json"


@pytest.mark.asyncio
@patch("radar.ingest.reddit.RedditConnector._get_json", new_callable=AsyncMock)
async def test_nothing_new_keeps_watermark(mock_get):
    mock_get.return_value = _listing(_post("t3_a", 1000))
    params = _params({"subreddits": ["python"]}, cursor={"last_seen_created_utc": {"python": 1000}})

    result = await RedditConnector().fetch(params)
    assert result.raw_items == []
    assert result.next_cursor == {"last_seen_created_utc": {"python": 1000}}


@pytest.mark.asyncio
@patch("radar.ingest.reddit.RedditConnector._get_json", new_callable=AsyncMock)
async def test_filters_stickied_nsfw_and_low_score(mock_get):
    mock_get.return_value = _listing(
        _post("t3_pinned", 1500, stickied=True),
        _post("t3_nsfw", 1400, over_18=True),
        _post("t3_low", 1300, score=1),
        _post("t3_ok", 1200),
    )
    result = await RedditConnector().fetch(_params({"subreddits": ["python"], "min_score": 5}))

    assert [p["name"] for p in result.raw_items] == ["t3_ok"]
    assert result.next_cursor == {"last_seen_created_utc": {"python": 1500}}


@pytest.mark.asyncio
@patch("radar.ingest.reddit.RedditConnector._get_json", new_callable=AsyncMock)
async def test_top_listing_is_a_snapshot(mock_get):
    mock_get.return_value = _listing(_post("t3_a", 1000))
    params = _params({"subreddits": ["python"], "listing": "top", "time_filter": "week"})

    result = await RedditConnector().fetch(params)
    assert result.next_cursor == {}
    assert mock_get.call_args.args[2]["t"] == "week"


@pytest.mark.asyncio
@patch("radar.ingest.reddit.RedditConnector._get_json", new_callable=AsyncMock)
async def test_only_included_accounts_are_fetched(mock_get):
    mock_get.return_value = _listing()
    params = _params({"subreddits": ["python", "rust"], "included_accounts": ["rust"]})

    await RedditConnector().fetch(params)
    paths = [call.args[1] for call in mock_get.call_args_list]
    assert paths == ["/r/rust/new.json"]


@pytest.mark.asyncio
@patch("radar.ingest.reddit.RedditConnector._get_json", new_callable=AsyncMock)
async def test_respects_max_items(mock_get):
    mock_get.return_value = _listing(*[_post(f"t3_{n}", 2000 - n) for n in range(5)])

    result = await RedditConnector().fetch(_params({"subreddits": ["python"]}, max_items=2))
    assert len(result.raw_items) == 2


@pytest.mark.asyncio
@patch("radar.ingest.reddit.RedditConnector._get_json", new_callable=AsyncMock)
async def test_top_comments_appended(mock_get):
    comments = [
        {},
        {"data": {"children": [
            {"kind": "t1", "data": {"body": "First!"}},
            {"kind": "more", "data": {}},
            {"kind": "t1", "data": {"body": "Good point"}},
        ]}},
    ]
    mock_get.side_effect = [_listing(_post("t3_a", 1000)), comments]
    params = _params({"subreddits": ["python"], "include_comments": True, "max_comment_count": 5})

    connector = RedditConnector()
    result = await connector.fetch(params)
    assert result.raw_items[0]["_top_comments"] == ["First!", "Good point"]

    draft = await connector.normalize(result.raw_items[0], params)
    assert "Good point" in draft.body_text


@pytest.mark.asyncio
async def test_fetch_requires_subreddits():
    with pytest.raises(ValueError):
        await RedditConnector().fetch(_params({"subreddits": []}))


@pytest.mark.asyncio
async def test_normalize_link_and_self_posts():
    connector = RedditConnector()
    params = _params({"subreddits": ["python"]})

    link = await connector.normalize(_post("t3_link", 1700000000), params)
    assert link.canonical_url == "https://example.com/t3_link"
    assert link.external_id == "t3_link"
    assert link.published_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert link.metadata["permalink"] == "https://www.reddit.com/r/python/comments/t3_link/slug/"

    self_post = await connector.normalize(
        _post("t3_self", 1700000000, is_self=True, selftext="Question body"), params,
    )
    assert self_post.canonical_url == "https://www.reddit.com/r/python/comments/t3_self/slug/"
    assert self_post.body_text == "Question body"


@pytest.mark.asyncio
async def test_normalize_rejects_untitled():
    with pytest.raises(ValueError):
        await RedditConnector().normalize({"name": "t3_x"}, _params({"subreddits": ["python"]}))
