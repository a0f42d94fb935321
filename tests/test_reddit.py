import threading
import time

import pytest

from kibble import reddit as reddit_module
from kibble.errors import ExtractionError, RefreshCancelled
from kibble.reddit import (
    LinkPost,
    RedditClient,
    extract_subreddit,
    is_media_domain,
    is_reddit_url,
    rank_domains,
    subreddit_display_name,
)
from kibble.scraper.extract import Scraper

LONG_BODY = " ".join(["word"] * 120)


def _post(**data):
    return {"kind": "t3", "data": data}


def _listing(*children):
    return {"data": {"children": list(children)}}


@pytest.fixture
def listings(monkeypatch):
    responses = {}
    calls = []

    def fake_get_json(url, *, timeout, user_agent):
        calls.append(url)
        return responses[url]

    monkeypatch.setattr(reddit_module, "_get_json", fake_get_json)
    return responses, calls


def test_url_helpers():
    assert is_reddit_url("https://www.reddit.com/r/space/")
    assert is_reddit_url("r/space")
    assert not is_reddit_url("https://example.com/r/space")
    assert extract_subreddit("https://old.reddit.com/r/Space_Flight/top") == "Space_Flight"
    assert extract_subreddit("r/space") == "space"
    assert subreddit_display_name("https://www.reddit.com/r/space/hot") == "r/space"
    with pytest.raises(ValueError):
        extract_subreddit("https://example.com/space")


def test_media_domains():
    assert is_media_domain("i.redd.it")
    assert is_media_domain("www.YouTube.com")
    assert is_media_domain("m.youtube.com")
    assert not is_media_domain("nasa.gov")


def test_reddit_source_is_formatted_as_posts(listings):
    responses, calls = listings
    responses["https://www.reddit.com/r/space.json?limit=25"] = (
        200,
        _listing(
            _post(is_self=True, title="Long read", selftext=LONG_BODY, permalink="/r/space/comments/a/long/",
                  subreddit="space", author="astro", score=42),
            _post(is_self=True, title="Too short", selftext="just a few words", permalink="/r/space/b/",
                  author="brief", score=5),
            _post(is_self=False, title="A link", url="https://nasa.gov/x", permalink="/r/space/c/", score=99),
        ),
        None,
    )
    scraper = Scraper(reddit=RedditClient(min_interval=0))

    content = scraper.scrape_url("https://www.reddit.com/r/space/")

    assert content.source_name == "r/space"
    assert content.content.startswith(
        "REDDIT POST: Long read\n"
        "LINK: https://reddit.com/r/space/comments/a/long/\n"
        "SCORE: 42 | AUTHOR: u/astro\n"
    )
    assert content.content.endswith("\n\n---\n\n")
    assert "Too short" not in content.content
    assert "A link" not in content.content
    assert calls == ["https://www.reddit.com/r/space.json?limit=25"]


def test_reddit_source_without_long_posts_fails(listings):
    responses, _ = listings
    responses["https://www.reddit.com/r/pics.json?limit=25"] = (
        200,
        _listing(_post(is_self=True, title="tiny", selftext="short")),
        None,
    )
    scraper = Scraper(reddit=RedditClient(min_interval=0))

    with pytest.raises(ExtractionError, match="no valid posts found"):
        scraper.scrape_url("https://www.reddit.com/r/pics")


@pytest.mark.parametrize(
    "status, message",
    [
        (404, "subreddit r/nope not found"),
        (403, "private or quarantined"),
        (429, "rate limit exceeded"),
        (500, "returned status 500"),
    ],
)
def test_listing_status_errors(listings, status, message):
    responses, _ = listings
    responses["https://www.reddit.com/r/nope.json?limit=25"] = (status, None, f"HTTP {status}")
    client = RedditClient(min_interval=0)

    with pytest.raises(ValueError, match=message):
        client.fetch_posts("https://www.reddit.com/r/nope")


def test_top_links_skip_self_posts_media_and_low_scores(listings):
    responses, _ = listings
    responses["https://www.reddit.com/r/space/top.json?t=week&limit=25"] = (
        200,
        _listing(
            _post(is_self=False, url="https://www.nasa.gov/a", domain="nasa.gov", score=50),
            _post(is_self=False, url="https://i.redd.it/pic.jpg", domain="i.redd.it", score=500),
            _post(is_self=True, domain="self.space", score=300),
            _post(is_self=False, url="https://spacenews.com/b", domain="spacenews.com", score=3),
            _post(is_self=False, url="https://www.esa.int/c", score=20),
        ),
        None,
    )
    client = RedditClient(min_interval=0)

    links = client.fetch_top_links("r/space")

    assert [link.domain for link in links] == ["nasa.gov", "esa.int"]


def test_rank_domains_orders_by_count_then_score():
    posts = [
        LinkPost(title="a", url="https://nasa.gov/1", domain="nasa.gov", score=10),
        LinkPost(title="b", url="https://esa.int/1", domain="esa.int", score=500),
        LinkPost(title="c", url="https://www.nasa.gov/2", domain="www.nasa.gov", score=15),
        LinkPost(title="d", url="https://spacenews.com/1", domain="spacenews.com", score=600),
        LinkPost(title="e", url="https://youtu.be/x", domain="youtu.be", score=900),
        LinkPost(title="f", url="https://nasa.gov/3", domain="nasa.gov", score=1),
        LinkPost(title="g", url="https://nasa.gov/4", domain="nasa.gov", score=1),
    ]

    ranked = rank_domains(posts, limit=2)

    assert [rank.domain for rank in ranked] == ["nasa.gov", "spacenews.com"]
    assert ranked[0].count == 4
    assert ranked[0].total_score == 27
    assert len(ranked[0].sample_urls) == 3


def test_requests_are_spaced_by_min_interval(listings):
    responses, _ = listings
    responses["https://www.reddit.com/r/space.json?limit=25"] = (200, _listing(), None)
    client = RedditClient(min_interval=0.2)

    started = time.monotonic()
    for _ in range(3):
        client.fetch_posts("r/space")
    elapsed = time.monotonic() - started

    assert elapsed >= 0.4


def test_stop_event_cancels_pending_request(listings):
    responses, calls = listings
    responses["https://www.reddit.com/r/space.json?limit=25"] = (200, _listing(), None)
    stop = threading.Event()
    client = RedditClient(min_interval=0, stop_event=stop)
    stop.set()

    with pytest.raises(RefreshCancelled):
        client.fetch_posts("r/space")
    assert calls == []
