from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import requests

from hairstyle_lab.logging_utils import RunLogger

from .gemini.interfaces import ImageBlob
from .payload import decode_data_url, is_data_url, sniff_mime_type

DEFAULT_USER_AGENT = "hairstyle-lab/0.1 (+reference fetcher)"


class ReferenceFetchError(RuntimeError):
    """Raised when a reference image cannot be retrieved or is not an image."""


@dataclass
class ReferenceFetcher:
    """Materialize reference images supplied as URLs or data URLs."""

    timeout_s: float = 30.0
    max_bytes: int = 20 * 1024 * 1024
    user_agent: str = DEFAULT_USER_AGENT
    logger: Optional[RunLogger] = None

    def fetch_sync(self, url: str, *, label: str | None = None) -> ImageBlob:
        if not url or not url.strip():
            raise ReferenceFetchError("empty reference url")
        if is_data_url(url):
            try:
                return decode_data_url(url, label=label)
            except ValueError as exc:
                raise ReferenceFetchError(str(exc)) from exc
        try:
            response = requests.get(
                url,
                timeout=self.timeout_s,
                headers={"User-Agent": self.user_agent, "Accept": "image/*"},
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ReferenceFetchError(f"failed to fetch {url}: {exc}") from exc

        data = response.content or b""
        if len(data) > self.max_bytes:
            raise ReferenceFetchError(f"reference image exceeds {self.max_bytes} bytes")
        try:
            mime = sniff_mime_type(data)
        except ValueError as exc:
            raise ReferenceFetchError(f"{url} did not return an image: {exc}") from exc
        if self.logger:
            self.logger.log("FETCH", f"fetched reference {url} ({len(data)} bytes, {mime})", level="DEBUG")
        return ImageBlob(data=data, mime_type=mime, label=label)

    async def fetch(self, url: str, *, label: str | None = None) -> ImageBlob:
        return await asyncio.to_thread(self.fetch_sync, url, label=label)


__all__ = ["ReferenceFetchError", "ReferenceFetcher"]
