from __future__ import annotations

from bs4 import BeautifulSoup, NavigableString, Tag

from ..utils import collapse_whitespace

CONTENT_SELECTORS = (
    "article",
    "main",
    ".content",
    ".post",
    ".article",
    ".entry-content",
    "#content",
    "#main",
)

MIN_CONTAINER_CHARS = 100
HEADLINE_BOUNDS = (10, 200)
PARAGRAPH_BOUNDS = (50, 2000)


def extract_html_text(html: str | bytes) -> tuple[str, str]:
    """Return ``(page_title, accumulated_text)`` from an HTML document.

    Semantic containers, headlines, paragraphs and inline ``item``/``entry``
    feed fragments all contribute to one text block, in that order.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    title_tag = soup.find("title")
    title = collapse_whitespace(title_tag.get_text(" ")) if title_tag else ""

    parts: list[str] = []
    for selector in CONTENT_SELECTORS:
        for element in soup.select(selector):
            text = _text(element)
            if len(text) > MIN_CONTAINER_CHARS:
                parts.append(text + "\n\n")

    low, high = HEADLINE_BOUNDS
    for heading in soup.find_all(["h1", "h2", "h3"]):
        text = _text(heading)
        if low < len(text) < high:
            parts.append(f"HEADLINE: {text}\n")

    low, high = PARAGRAPH_BOUNDS
    for paragraph in soup.find_all("p"):
        text = _text(paragraph)
        if low < len(text) < high:
            parts.append(text + "\n")

    for fragment in soup.find_all(["item", "entry"]):
        parts.append(_format_fragment(fragment))

    return title, "".join(parts)


def _format_fragment(fragment: Tag) -> str:
    title_tag = fragment.find("title")
    item_title = _text(title_tag) if title_tag else ""
    if not item_title:
        return ""
    block = f"ARTICLE: {item_title}\n"
    link = _fragment_link(fragment)
    if link:
        block += f"LINK: {link}\n"
    desc_tag = fragment.find(["description", "summary", "content"])
    desc = _text(desc_tag) if desc_tag else ""
    if desc:
        block += desc + "\n\n"
    return block


def _fragment_link(fragment: Tag) -> str:
    link = fragment.find("link")
    if not link:
        return ""
    if link.get("href"):
        return str(link["href"]).strip()
    text = _text(link)
    if text:
        return text
    # html.parser treats <link> as void, so RSS link text ends up as the next sibling
    sibling = link.next_sibling
    if isinstance(sibling, NavigableString):
        return str(sibling).strip()
    return ""


def _text(element: Tag) -> str:
    return collapse_whitespace(element.get_text(" "))
