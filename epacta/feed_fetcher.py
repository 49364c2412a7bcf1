from __future__ import annotations

import logging
from urllib.parse import quote

import requests

from epacta.models import FetchConfig


logger = logging.getLogger(__name__)


class FeedFetchError(RuntimeError):
    pass


class FeedFetcher:
    def __init__(self, config: FetchConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def candidate_urls(self, url: str) -> list[str]:
        target = url.strip()
        if target.lower().startswith("webcal://"):
            target = "https://" + target[len("webcal://") :]
        candidates = [target]
        for proxy in self.config.proxies:
            candidates.append(proxy + quote(target, safe=""))
        return candidates

    def fetch(self, url: str) -> str:
        if not url or not url.strip():
            raise FeedFetchError("Calendar URL is empty.")
        last_error: Exception | None = None
        for candidate in self.candidate_urls(url):
            try:
                response = self.session.get(
                    candidate,
                    headers={"User-Agent": self.config.user_agent, "Accept": "text/calendar, */*"},
                    timeout=self.config.timeout_seconds,
                )
                response.raise_for_status()
            except requests.RequestException as exc:
                logger.warning("Feed download via %s failed: %s", candidate, exc)
                last_error = exc
                continue
            if "charset" not in response.headers.get("Content-Type", "").lower():
                response.encoding = "utf-8"
            return response.text
        raise FeedFetchError(f"All download attempts failed for {url}: {last_error}")
