import logging
import re
from typing import Any, Callable, Optional, TypeVar
from urllib.parse import urlparse

import requests
from pydantic import ValidationError

from src.mirror.errors import ConfigurationError

from ..models import (
    FetchResult,
    GalleryPayload,
    HostAdapterConfig,
    HostAlbum,
    HostImage,
    ParsedInput,
    ResourceKind,
)
from ..settings import DEFAULT_STALE_AFTER_MS
from .base import ABSENT_STATUS_CODES, BaseHostAdapter, combine_misses

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMGUR_API_BASE = "https://api.imgur.com/3"
IMGUR_CDN_BASE = "https://i.imgur.com"

IMGUR_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]{4,10}$")

# First path segment after an optional album prefix: an optional human-readable
# slug ending in '-', then the id. Trailing segments (/embed, /comment/...) are ignored.
IMGUR_PATH_PATTERN = re.compile(
    r"^/(?:(?:a|album|gallery)/)?(?:[a-zA-Z0-9-]+-)?(?P<id>[a-zA-Z0-9]{4,10})(?=[/.]|$)"
)
# Fallback for other layouts (e.g. /r/<subreddit>/<id>): the last segment
IMGUR_LAST_SEGMENT_PATTERN = re.compile(r"/(?P<id>[a-zA-Z0-9]{4,10})(?:\.[a-zA-Z0-9]+)?/?$")
ALBUM_PATH_PREFIXES = ("/a/", "/album/", "/gallery/")

# Probed in order when the API knows nothing about an id
CDN_EXTENSIONS = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
}

# Imgur redirects missing CDN files to its "removed" placeholder
CDN_ABSENT_STATUS_CODES = ABSENT_STATUS_CODES | {301, 302}


class ImgurAdapter(BaseHostAdapter):
    """Imgur, the default provider. Public ids are bare Imgur ids for legacy URLs."""

    config = HostAdapterConfig(
        stale_after_ms=DEFAULT_STALE_AFTER_MS,
        page_cache_seconds=600,
        api_cache_seconds=300,
        raw_cache_seconds=3600,
    )
    supports_gallery = True

    def __init__(self, client_id: str, session: Optional[requests.Session] = None):
        if not client_id:
            raise ConfigurationError("IMGUR_CLIENT_ID must be set to use the Imgur adapter")
        super().__init__(session)
        self.client_id = client_id

    @property
    def id(self) -> str:
        return "imgur"

    @property
    def name(self) -> str:
        return "Imgur"

    def match_input(self, raw: str) -> bool:
        return "imgur.com" in raw or bool(IMGUR_ID_PATTERN.match(raw))

    def parse_input(self, raw: str) -> ParsedInput | None:
        raw = raw.strip()

        if "imgur.com" in raw:
            url = urlparse(raw if raw.startswith("http") else f"https://{raw}")
            match = IMGUR_PATH_PATTERN.match(url.path) or IMGUR_LAST_SEGMENT_PATTERN.search(url.path)
            if not match:
                return None
            resource_id = match.group("id")
            is_album = url.path.startswith(ALBUM_PATH_PREFIXES)
            return ParsedInput(
                provider_id=self.provider_id,
                resource_id=resource_id,
                public_id=self.to_public_id(resource_id),
                type_hint=ResourceKind.ALBUM if is_album else None,
            )

        if IMGUR_ID_PATTERN.match(raw):
            return ParsedInput(provider_id=self.provider_id, resource_id=raw, public_id=raw)

        return None

    def parse_public_id(self, public_id: str) -> ParsedInput | None:
        # Prefixed form imgur:<id> as well as legacy bare ids
        prefix = f"{self.id}:"
        if public_id.startswith(prefix) and len(public_id) > len(prefix):
            return ParsedInput(
                provider_id=self.provider_id,
                resource_id=public_id[len(prefix):],
                public_id=public_id,
            )
        if IMGUR_ID_PATTERN.match(public_id):
            return ParsedInput(provider_id=self.provider_id, resource_id=public_id, public_id=public_id)
        return None

    def to_public_id(self, resource_id: str) -> str:
        return resource_id

    def cache_key(self, resource_id: str) -> str:
        # Unprefixed so keys written before multi-host support still resolve
        return resource_id

    def fetch_image(self, resource_id: str) -> FetchResult[HostImage]:
        gallery_image = self._transformed(self._api(f"gallery/image/{resource_id}"), self._transform_image)
        if gallery_image.is_ok:
            return gallery_image

        image = self._transformed(self._api(f"image/{resource_id}"), self._transform_image)
        if image.is_ok:
            return image

        cdn = self._probe_cdn(resource_id)
        if cdn.is_ok:
            return cdn

        return combine_misses(gallery_image, image, cdn)

    def fetch_album(self, resource_id: str) -> FetchResult[HostAlbum]:
        return self._transformed(self._api(f"album/{resource_id}"), self._transform_album)

    def fetch_gallery(self, resource_id: str) -> FetchResult[GalleryPayload]:
        gallery = self._transformed(self._api(f"gallery/{resource_id}"), self._transform_gallery)
        if not gallery.is_not_found:
            return gallery

        # Hidden albums and plain uploads aren't in the public gallery
        album = self.fetch_album(resource_id)
        if album.is_ok:
            return FetchResult.ok(GalleryPayload(is_album=True, data=album.value))
        image = self.fetch_image(resource_id)
        if image.is_ok:
            return FetchResult.ok(GalleryPayload(is_album=False, data=image.value))
        return combine_misses(gallery, album, image)

    def _api(self, path: str) -> FetchResult[dict[str, Any]]:
        result = self._request(
            f"{IMGUR_API_BASE}/{path}",
            headers={"Authorization": f"Client-ID {self.client_id}"},
        )
        if not result.is_ok:
            return result

        try:
            payload = result.value.json()
        except ValueError:
            logger.warning(f"[imgur] Malformed JSON from /{path}")
            return FetchResult.unavailable("malformed JSON")

        if not isinstance(payload, dict):
            return FetchResult.unavailable("unexpected response shape")
        if not payload.get("success"):
            return FetchResult.not_found()
        if not isinstance(payload.get("data"), dict):
            return FetchResult.unavailable("response has no data")
        return FetchResult.ok(payload["data"])

    @staticmethod
    def _transformed(result: FetchResult[dict[str, Any]], transform: Callable[[dict[str, Any]], T]) -> FetchResult[T]:
        if not result.is_ok:
            return result
        try:
            return FetchResult.ok(transform(result.value))
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"[imgur] Unexpected API payload: {e}")
            return FetchResult.unavailable(f"unexpected payload: {e}")

    def _probe_cdn(self, resource_id: str) -> FetchResult[HostImage]:
        misses = []
        for ext, mime_type in CDN_EXTENSIONS.items():
            url = f"{IMGUR_CDN_BASE}/{resource_id}.{ext}"
            result = self._request(
                url,
                method="HEAD",
                absent_statuses=CDN_ABSENT_STATUS_CODES,
                allow_redirects=False,
            )
            if result.is_ok:
                return FetchResult.ok(HostImage(id=resource_id, url=url, source_url=url, mime_type=mime_type))
            misses.append(result)
        return combine_misses(*misses)

    @staticmethod
    def _transform_image(data: dict[str, Any]) -> HostImage:
        mime_type = data.get("type") or "image/jpeg"
        link = data.get("link") or f"{IMGUR_CDN_BASE}/{data['id']}.{mime_type.split('/')[-1]}"
        return HostImage(
            id=data["id"],
            url=link,
            source_url=link,
            title=data.get("title"),
            description=data.get("description"),
            mime_type=mime_type,
            width=data.get("width"),
            height=data.get("height"),
            size=data.get("size"),
            animated=data.get("animated"),
        )

    @classmethod
    def _transform_album(cls, data: dict[str, Any]) -> HostAlbum:
        images = [cls._transform_image(item) for item in data.get("images") or []]
        return HostAlbum(
            id=data["id"],
            source_url=data.get("link") or data.get("url"),
            title=data.get("title"),
            description=data.get("description"),
            images_count=data.get("images_count") or len(images),
            images=images,
        )

    @classmethod
    def _transform_gallery(cls, data: dict[str, Any]) -> GalleryPayload:
        if data.get("is_album"):
            return GalleryPayload(is_album=True, data=cls._transform_album(data))
        return GalleryPayload(is_album=False, data=cls._transform_image(data))
