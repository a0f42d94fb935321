from __future__ import annotations

from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

DEFAULT_USER_AGENT = "Kibble/1.0 (AI Facts & News Dashboard; +https://github.com/thinkscotty/kibble)"


@dataclass(frozen=True)
class FetchResult:
    url: str
    status: int | None
    content_type: str
    body: bytes
    error: str | None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status == 200

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def fetch_url(
    url: str,
    *,
    timeout: float,
    user_agent: str = DEFAULT_USER_AGENT,
    accept: str | None = None,
    max_bytes: int | None = None,
) -> FetchResult:
    headers = {"User-Agent": user_agent}
    if accept:
        headers["Accept"] = accept
    try:
        request = Request(url, headers=headers)
        with urlopen(request, timeout=timeout) as response:
            status = response.getcode()
            content_type = response.headers.get("Content-Type", "") or ""
            body = response.read(max_bytes) if max_bytes else response.read()
            final_url = response.geturl() or url
        return FetchResult(final_url, status, content_type, body, None)
    except HTTPError as exc:
        content_type = exc.headers.get("Content-Type", "") if exc.headers else ""
        try:
            body = exc.read()
        except OSError:
            body = b""
        return FetchResult(url, exc.code, content_type or "", body, f"{exc} (status: {exc.code})")
    except URLError as exc:
        return FetchResult(url, None, "", b"", str(exc.reason) if exc.reason else str(exc))
    except Exception as exc:  # noqa: BLE001
        return FetchResult(url, None, "", b"", str(exc) or exc.__class__.__name__)
