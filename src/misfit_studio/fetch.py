from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import urlparse

import requests
from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from .config import Settings

LOGGER = logging.getLogger(__name__)

USER_AGENT = "misfit-studio/0.1"
CHUNK_SIZE = 1024 * 1024
RETRY_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def is_remote_source(source: str) -> bool:
    return urlparse(source.strip()).scheme.lower() in {"http", "https"}


def payload_session(max_retries: int, backoff: float) -> Session:
    session = requests.Session()
    adapter = HTTPAdapter(
        max_retries=Retry(
            total=max_retries,
            backoff_factor=backoff,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=frozenset({"GET", "HEAD"}),
            respect_retry_after_header=True,
            raise_on_status=False,
        )
    )
    for scheme in ("http://", "https://"):
        session.mount(scheme, adapter)
    session.headers["User-Agent"] = USER_AGENT
    return session


class PayloadFetcher:
    """Downloads remote payload sources into the staged payload tree at build time."""

    def __init__(self, session: Session | None = None, timeout: int = 60) -> None:
        self.timeout = timeout
        self.session = session if session is not None else payload_session(5, 0.5)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayloadFetcher":
        session = payload_session(settings.http_max_retries, settings.http_backoff)
        return cls(session, settings.http_timeout)

    def download(self, url: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as response:
                response.raise_for_status()
                with partial.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
            partial.replace(dest)
        finally:
            # A failed download never leaves a half-written payload in the bundle.
            partial.unlink(missing_ok=True)
        LOGGER.info("Downloaded payload %s -> %s", url, dest)
        return dest
