from kibble.errors import ExtractionError
from kibble.fetch import FetchResult
from kibble.models import ScrapedContent
from kibble.scraper import validate as validate_module
from kibble.scraper.validate import SourceValidator, discover_feed_url

PAGE_WITH_FEED = b"""
<html><head>
  <link rel="stylesheet" href="/style.css">
  <link rel="alternate" type="application/rss+xml" title="Blog" href="/blog/feed.xml">
</head><body></body></html>
"""


class FakeScraper:
    user_agent = "test-agent"

    def __init__(self, contents=None, error=None):
        self.contents = contents or {}
        self.error = error
        self.calls = []

    def scrape_url(self, url, name="", *, timeout=None):
        self.calls.append((url, name, timeout))
        if self.error:
            raise self.error
        return ScrapedContent(source_name=name or "Scraped Title", url=url, content=self.contents[url])


def _page(monkeypatch, body, *, content_type="text/html; charset=utf-8", status=200, url="https://x.com/blog"):
    def fake_fetch(page_url, *, timeout, user_agent, accept=None, max_bytes=None):
        return FetchResult(url=url, status=status, content_type=content_type, body=body, error=None)

    monkeypatch.setattr(validate_module, "fetch_url", fake_fetch)


def test_discover_feed_url_resolves_relative_href(monkeypatch):
    _page(monkeypatch, PAGE_WITH_FEED)

    assert discover_feed_url("https://x.com/blog", user_agent="ua") == "https://x.com/blog/feed.xml"


def test_discover_feed_url_ignores_pages_without_feed_links(monkeypatch):
    _page(monkeypatch, b'<html><head><link rel="icon" href="/favicon.ico"></head></html>')

    assert discover_feed_url("https://x.com/blog", user_agent="ua") == ""


def test_discover_feed_url_ignores_failed_fetches(monkeypatch):
    _page(monkeypatch, PAGE_WITH_FEED, status=500)

    assert discover_feed_url("https://x.com/blog", user_agent="ua") == ""


def test_validator_prefers_advertised_feed(monkeypatch):
    _page(monkeypatch, PAGE_WITH_FEED)
    scraper = FakeScraper({"https://x.com/blog/feed.xml": "x" * 500})
    validator = SourceValidator(scraper, timeout=7, min_chars=200)

    verdict = validator.validate("https://x.com/blog", "X Blog")

    assert verdict.ok
    assert verdict.feed_url == "https://x.com/blog/feed.xml"
    assert verdict.url == "https://x.com/blog"
    assert scraper.calls == [("https://x.com/blog/feed.xml", "X Blog", 7)]


def test_validator_rejects_thin_content(monkeypatch):
    _page(monkeypatch, b"<html></html>")
    scraper = FakeScraper({"https://x.com/blog": "x" * 50})

    verdict = SourceValidator(scraper, min_chars=200).validate("https://x.com/blog")

    assert not verdict.ok
    assert verdict.reason == "insufficient content: 50 chars"


def test_validator_reports_scrape_errors(monkeypatch):
    _page(monkeypatch, b"<html></html>")
    scraper = FakeScraper(error=ExtractionError("scrape error for https://x.com/blog: boom"))

    verdict = SourceValidator(scraper).validate("https://x.com/blog", "X")

    assert not verdict.ok
    assert "boom" in verdict.reason


def test_validator_skips_feed_discovery_for_reddit(monkeypatch):
    def fail_fetch(*args, **kwargs):
        raise AssertionError("reddit sources never go through feed discovery")

    monkeypatch.setattr(validate_module, "fetch_url", fail_fetch)
    scraper = FakeScraper({"https://www.reddit.com/r/space": "y" * 300})

    verdict = SourceValidator(scraper).validate("https://www.reddit.com/r/space")

    assert verdict.ok
    assert verdict.name == "Scraped Title"
    assert verdict.feed_url == ""
