import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

from ..models import (
    FetchResult,
    GalleryPayload,
    HostAdapterConfig,
    HostAlbum,
    HostImage,
    ParsedInput,
)
from ..settings import (
    DOWNLOAD_TIMEOUT_SECONDS,
    MAX_DOWNLOAD_SIZE_BYTES,
    REQUEST_TIMEOUT_SECONDS,
    USER_AGENT,
)

logger = logging.getLogger(__name__)

# Statuses an origin uses to say "this resource does not exist"
ABSENT_STATUS_CODES = frozenset({404, 410})


class BaseHostAdapter(ABC):
    """One origin site: recognizes its inputs and fetches its resources.

    Parsing methods are pure. Only ``fetch_*`` and ``download`` touch the
    network, through ``self.session``.
    """

    config: HostAdapterConfig

    # Adapters that implement fetch_gallery() set this to True
    supports_gallery: bool = False

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    @property
    @abstractmethod
    def id(self) -> str:
        """Registry id, also used as the public id / cache key prefix."""

    @property
    def provider_id(self) -> str:
        """Provider id stored on persisted records."""
        return self.id

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable host name."""

    @abstractmethod
    def match_input(self, raw: str) -> bool:
        """
        Cheap test whether the input likely belongs to this host.
        Only used to order parse attempts, never authoritative.
        """

    @abstractmethod
    def parse_input(self, raw: str) -> ParsedInput | None:
        """Parse a URL or bare id into this host's resource id space."""

    @abstractmethod
    def parse_public_id(self, public_id: str) -> ParsedInput | None:
        """Parse a public id previously issued by to_public_id()."""

    @abstractmethod
    def to_public_id(self, resource_id: str) -> str:
        """Stable public id for URLs; must not change for a given resource id."""

    def cache_key(self, resource_id: str) -> str:
        return f"{self.id}:{resource_id}"

    @abstractmethod
    def fetch_image(self, resource_id: str) -> FetchResult[HostImage]:
        pass

    @abstractmethod
    def fetch_album(self, resource_id: str) -> FetchResult[HostAlbum]:
        pass

    def fetch_gallery(self, resource_id: str) -> FetchResult[GalleryPayload]:
        raise NotImplementedError(f"{self.name} has no combined gallery lookup")

    def download(self, url: str) -> bytes | None:
        """Fetch raw bytes. Returns None on any transport failure."""
        try:
            response = self.session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()

            declared = response.headers.get("Content-Length")
            if declared and int(declared) > MAX_DOWNLOAD_SIZE_BYTES:
                logger.warning(f"Skipping {url}: declared size {int(declared) / 1024 / 1024:.2f}MB exceeds limit")
                return None

            chunks = []
            received = 0
            for chunk in response.iter_content(chunk_size=8192):
                received += len(chunk)
                if received > MAX_DOWNLOAD_SIZE_BYTES:
                    logger.warning(f"Skipping {url}: body exceeds {MAX_DOWNLOAD_SIZE_BYTES} bytes")
                    return None
                chunks.append(chunk)
            return b"".join(chunks)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Download failed for {url}: {e}")
            return None

    def _request(
        self,
        url: str,
        method: str = "GET",
        absent_statuses: frozenset[int] = ABSENT_STATUS_CODES,
        **kwargs,
    ) -> FetchResult[requests.Response]:
        """Issue a request and classify the response.

        Confirmed absence (404/410) is NOT_FOUND; transport errors and any
        other non-2xx status are UNAVAILABLE.
        """
        kwargs.setdefault("timeout", REQUEST_TIMEOUT_SECONDS)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.warning(f"[{self.id}] {method} {url} failed: {e}")
            return FetchResult.unavailable(str(e))

        if response.status_code in absent_statuses:
            return FetchResult.not_found()
        if not 200 <= response.status_code < 300:
            logger.warning(f"[{self.id}] {method} {url} returned {response.status_code}")
            return FetchResult.unavailable(f"HTTP {response.status_code}")
        return FetchResult.ok(response)


def combine_misses(*results: FetchResult) -> FetchResult:
    """Merge failed lookups: absent only if every attempt said absent."""
    errors = [r.error for r in results if not r.is_not_found]
    if errors:
        return FetchResult.unavailable("; ".join(e for e in errors if e) or "upstream error")
    return FetchResult.not_found()
