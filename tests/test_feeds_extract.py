import threading

import pytest

from kibble.errors import ExtractionError
from kibble.fetch import FetchResult
from kibble.models import NewsSource
from kibble.scraper import extract as extract_module
from kibble.scraper import is_feed_url
from kibble.scraper.extract import Scraper
from kibble.scraper.feeds import is_xml_content_type, parse_feed


def _rss(items: int = 5) -> bytes:
    entries = []
    for index in range(1, items + 1):
        entries.append(
            f"""
            <item>
              <title>Story number {index}</title>
              <link>https://x.com/stories/{index}</link>
              <pubDate>Mon, 0{index} Sep 2025 10:00:00 GMT</pubDate>
              <description>Short teaser {index}</description>
              <content:encoded><![CDATA[<p>Full body of story {index} with <b>markup</b>.</p>]]></content:encoded>
            </item>
            """
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">'
        "<channel><title>X News</title><link>https://x.com</link>"
        + "".join(entries)
        + "</channel></rss>"
    ).encode("utf-8")


ARTICLE_HTML = b"""
<html><head><title>Example Site</title><script>var tracking = 1;</script></head>
<body>
  <article>
    <h2>A headline that is long enough to count</h2>
    <p>This is the first paragraph of the article and it carries plenty of words for extraction.</p>
    <p>This is the second paragraph of the article, also long enough to be picked up by the scraper.</p>
  </article>
</body></html>
"""


def _result(url, body, *, status=200, content_type="text/html", error=None):
    return FetchResult(url=url, status=status, content_type=content_type, body=body, error=error)


@pytest.fixture
def fetches(monkeypatch):
    responses = {}
    calls = []

    def fake_fetch(url, *, timeout, user_agent, accept=None, max_bytes=None):
        calls.append({"url": url, "accept": accept})
        return responses[url]

    monkeypatch.setattr(extract_module, "fetch_url", fake_fetch)
    return responses, calls


def test_feed_url_detection():
    assert is_feed_url("https://x.com/feed")
    assert is_feed_url("https://x.com/feed/")
    assert is_feed_url("https://x.com/news.xml?page=2")
    assert is_feed_url("https://x.com/feeds/all")
    assert is_feed_url("https://x.com/blog/rss")
    assert not is_feed_url("https://x.com/feedback")
    assert not is_feed_url("https://x.com/articles")


def test_xml_content_types():
    assert is_xml_content_type("application/rss+xml; charset=utf-8")
    assert is_xml_content_type("text/xml")
    assert not is_xml_content_type("text/html")
    assert not is_xml_content_type("")


def test_parse_feed_prefers_full_content_over_description():
    title, text = parse_feed(_rss(5))
    assert title == "X News"
    assert text.count("ARTICLE: ") == 5
    assert "ARTICLE: Story number 1\nLINK: https://x.com/stories/1\nDATE: " in text
    assert "Full body of story 3 with" in text
    assert "Short teaser" not in text
    assert "<p>" not in text


def test_parse_feed_rejects_payload_without_entries():
    with pytest.raises(ExtractionError):
        parse_feed(b"<html><body><p>not a feed</p></body></html>")


def test_scrape_feed_url_uses_feed_parser(fetches):
    responses, calls = fetches
    responses["https://x.com/feed"] = _result(
        "https://x.com/feed", _rss(5), content_type="application/rss+xml"
    )

    content = Scraper().scrape_url("https://x.com/feed", "X")

    assert content.source_name == "X"
    assert content.url == "https://x.com/feed"
    assert content.content.count("ARTICLE: ") == 5
    assert "Short teaser" not in content.content
    assert len(calls) == 1
    assert "application/rss+xml" in calls[0]["accept"]


def test_feed_name_falls_back_to_channel_title(fetches):
    responses, _ = fetches
    responses["https://x.com/rss"] = _result("https://x.com/rss", _rss(2), content_type="text/xml")

    content = Scraper().scrape_url("https://x.com/rss")

    assert content.source_name == "X News"


def test_xml_content_type_with_html_body_falls_back_to_heuristics(fetches):
    responses, calls = fetches
    responses["https://x.com/feed"] = _result("https://x.com/feed", ARTICLE_HTML, content_type="text/xml")

    content = Scraper().scrape_url("https://x.com/feed", "X")

    assert "first paragraph of the article" in content.content
    assert "tracking" not in content.content
    assert len(calls) == 1


def test_xml_content_type_on_plain_url_is_parsed_as_feed(fetches):
    responses, _ = fetches
    responses["https://x.com/latest"] = _result(
        "https://x.com/latest", _rss(3), content_type="application/xml"
    )

    content = Scraper().scrape_url("https://x.com/latest", "Latest")

    assert content.content.count("ARTICLE: ") == 3


def test_html_page_uses_title_when_no_name(fetches):
    responses, _ = fetches
    responses["https://x.com/post"] = _result("https://x.com/post", ARTICLE_HTML)

    content = Scraper().scrape_url("https://x.com/post")

    assert content.source_name == "Example Site"
    assert "HEADLINE: A headline that is long enough to count" in content.content


def test_thin_html_is_insufficient(fetches):
    responses, _ = fetches
    responses["https://x.com/thin"] = _result("https://x.com/thin", b"<html><body><p>tiny</p></body></html>")

    with pytest.raises(ExtractionError, match="insufficient content scraped from https://x.com/thin"):
        Scraper().scrape_url("https://x.com/thin")


def test_non_200_status_is_a_scrape_error(fetches):
    responses, _ = fetches
    responses["https://x.com/gone"] = _result("https://x.com/gone", b"", status=404)

    with pytest.raises(ExtractionError, match="scrape error for https://x.com/gone"):
        Scraper().scrape_url("https://x.com/gone")


def test_transport_error_is_a_scrape_error(fetches):
    responses, _ = fetches
    responses["https://x.com/down"] = _result(
        "https://x.com/down", b"", status=None, error="request failed: timed out"
    )

    with pytest.raises(ExtractionError, match="timed out"):
        Scraper().scrape_url("https://x.com/down")


def test_dead_feed_is_fetched_only_once(fetches):
    responses, calls = fetches
    responses["https://x.com/feed.xml"] = _result(
        "https://x.com/feed.xml", b"", status=None, error="request failed: timed out"
    )

    with pytest.raises(ExtractionError, match="scrape error for https://x.com/feed.xml: request failed: timed out"):
        Scraper().scrape_url("https://x.com/feed.xml")

    assert [call["url"] for call in calls] == ["https://x.com/feed.xml"]


def test_scrape_sources_reports_one_result_per_source_in_order(fetches):
    responses, _ = fetches
    responses["https://x.com/feed"] = _result("https://x.com/feed", _rss(2), content_type="text/xml")
    responses["https://y.com/thin"] = _result("https://y.com/thin", b"<p>tiny</p>")
    responses["https://z.com/post"] = _result("https://z.com/post", ARTICLE_HTML)
    sources = [
        NewsSource(id=index, news_topic_id=1, url=url, name=f"S{index}", is_manual=False,
                   is_active=True, failure_count=0, last_error="")
        for index, url in enumerate(["https://x.com/feed", "https://y.com/thin", "https://z.com/post"], 1)
    ]

    results = Scraper().scrape_sources(sources, concurrency=2, deadline_seconds=30)

    assert [result.source.id for result in results] == [1, 2, 3]
    assert results[0].content is not None and results[0].error is None
    assert results[1].content is None and "insufficient content" in results[1].error
    assert results[2].content is not None


def test_scrape_sources_deadline_marks_unfinished_sources(monkeypatch):
    scraper = Scraper()
    release = threading.Event()

    def slow_scrape(source, timeout=None):
        release.wait(5)
        raise ExtractionError("too late")

    monkeypatch.setattr(scraper, "scrape_source", slow_scrape)
    source = NewsSource(id=7, news_topic_id=1, url="https://slow.example.com", name="Slow",
                        is_manual=False, is_active=True, failure_count=0, last_error="")
    try:
        results = scraper.scrape_sources([source], concurrency=1, deadline_seconds=1)
    finally:
        release.set()

    assert len(results) == 1
    assert results[0].content is None
    assert results[0].error == "scrape deadline exceeded after 1s"
