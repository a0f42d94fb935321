from .extract import Scraper
from .feeds import is_feed_url
from .validate import SourceValidator, discover_feed_url

__all__ = ["Scraper", "SourceValidator", "discover_feed_url", "is_feed_url"]
