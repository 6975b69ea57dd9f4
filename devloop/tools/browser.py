from __future__ import annotations
import asyncio
import re
from typing import Any, List

import requests
from bs4 import BeautifulSoup

from ..core.config import RuntimeConfig, runtime
from ..core.errors import CollaboratorError
from ..core.logger import debug, info
from .interfaces import PageContent, SearchResult

_WS = re.compile(r"\s+")
_HIDDEN_TAGS = ["script", "style", "noscript", "template", "title"]


def html_to_text(html: str) -> tuple[str, str]:
    """Return ``(title, visible_text)`` for an HTML document."""
    soup = BeautifulSoup(html or "", "html.parser")
    title = soup.title.get_text() if soup.title else ""
    for tag in soup(_HIDDEN_TAGS):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return _WS.sub(" ", title).strip(), _WS.sub(" ", text).strip()


class HttpBrowser:
    """Fetches pages with requests; searches through a SearxNG-style JSON endpoint."""

    def __init__(self, config: RuntimeConfig | None = None, session: requests.Session | None = None):
        self.config = config or runtime
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "devloop/0.1")

    def _get(self, url: str, **kwargs: Any) -> requests.Response:
        try:
            resp = self.session.get(url, timeout=self.config.browser_timeout, **kwargs)
        except requests.RequestException as e:
            raise CollaboratorError(f"GET {url} failed: {e}") from e
        if resp.status_code >= 400:
            raise CollaboratorError(f"GET {url} returned {resp.status_code}")
        return resp

    async def search(self, query: str, **opts: Any) -> List[SearchResult]:
        if not self.config.browser_search_url:
            raise CollaboratorError("No search endpoint configured (BROWSER_SEARCH_URL)")
        limit = int(opts.get("max_results", 10))
        info(f"Searching: {query}")
        resp = await asyncio.to_thread(
            self._get, self.config.browser_search_url, params={"q": query, "format": "json"}
        )
        try:
            data = resp.json()
        except ValueError as e:
            raise CollaboratorError(f"Search endpoint returned non-JSON: {e}") from e
        results = [
            SearchResult(url=r.get("url", ""), title=r.get("title", ""), snippet=r.get("content", ""))
            for r in data.get("results", [])
            if r.get("url")
        ]
        debug(f"{len(results)} results for {query!r}")
        return results[:limit]

    def close(self) -> None:
        self.session.close()

    async def visit_url(self, url: str, **opts: Any) -> PageContent:
        info(f"Visiting: {url}")
        resp = await asyncio.to_thread(self._get, url)
        title, text = html_to_text(resp.text)
        return PageContent(
            url=url,
            content=resp.text,
            text_content=text,
            title=title,
            status_code=resp.status_code,
        )
