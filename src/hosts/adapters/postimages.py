import logging
import re
from typing import Optional

import requests
from bs4 import BeautifulSoup

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
from .base import BaseHostAdapter

logger = logging.getLogger(__name__)

POSTIMG_BASE = "https://postimg.cc"
POSTIMG_CDN_BASE = "https://i.postimg.cc"

POSTIMG_GALLERY_PATTERN = re.compile(r"postimg\.cc/gallery/([A-Za-z0-9]+)", re.IGNORECASE)
POSTIMG_DIRECT_PATTERN = re.compile(r"i\.postimg\.cc/([^?#\s]+)", re.IGNORECASE)
POSTIMG_PAGE_PATTERN = re.compile(r"(?<![.\w])postimg\.cc/(?!gallery/)([A-Za-z0-9]+)", re.IGNORECASE)
POSTIMG_PAGE_LINK_PATTERN = re.compile(r"https?://postimg\.cc/(?!gallery/)([A-Za-z0-9]+)")
BARE_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
TITLE_SUFFIX_PATTERN = re.compile(r"\s*[–—-]\s*Postimages?$", re.IGNORECASE)

# Resource ids carry a subtype tag: "<kind>:<value>"
GALLERY = "gallery"
DIRECT = "direct"
PAGE = "page"
SUBTYPE_KINDS = {
    GALLERY: ResourceKind.ALBUM,
    DIRECT: ResourceKind.IMAGE,
    PAGE: ResourceKind.IMAGE,
}

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
}
MIME_PATTERN = re.compile(r"\.(" + "|".join(MIME_TYPES) + r")(?:$|\?)")


def guess_mime_type(url: str) -> str:
    match = MIME_PATTERN.search(url.lower())
    return MIME_TYPES[match.group(1)] if match else "application/octet-stream"


def clean_title(title: str | None) -> str | None:
    if not title:
        return None
    return TITLE_SUFFIX_PATTERN.sub("", title).strip() or None


class PostimagesAdapter(BaseHostAdapter):
    """postimg.cc pages, galleries and direct i.postimg.cc links (scraped, no API)."""

    config = HostAdapterConfig(
        stale_after_ms=DEFAULT_STALE_AFTER_MS,
        page_cache_seconds=600,
        api_cache_seconds=300,
        raw_cache_seconds=3600,
    )
    supports_gallery = True

    def __init__(self, session: Optional[requests.Session] = None):
        super().__init__(session)

    @property
    def id(self) -> str:
        return "postimages"

    @property
    def name(self) -> str:
        return "Postimages"

    def match_input(self, raw: str) -> bool:
        return "postimg.cc" in raw.lower()

    def parse_input(self, raw: str) -> ParsedInput | None:
        value = raw.strip()

        for kind, pattern in (
            (GALLERY, POSTIMG_GALLERY_PATTERN),
            (DIRECT, POSTIMG_DIRECT_PATTERN),
            (PAGE, POSTIMG_PAGE_PATTERN),
        ):
            match = pattern.search(value)
            if match:
                return self._parsed(f"{kind}:{match.group(1)}")

        # Bare ids are page ids
        if BARE_ID_PATTERN.match(value):
            return self._parsed(f"{PAGE}:{value}")

        return None

    def parse_public_id(self, public_id: str) -> ParsedInput | None:
        prefix = f"{self.id}:"
        if not public_id.startswith(prefix):
            return None
        resource_id = public_id[len(prefix):]
        kind, _, value = resource_id.partition(":")
        if kind not in SUBTYPE_KINDS or not value:
            return None
        return self._parsed(resource_id, public_id=public_id)

    def to_public_id(self, resource_id: str) -> str:
        return f"{self.id}:{resource_id}"

    def cache_key(self, resource_id: str) -> str:
        return resource_id

    def fetch_image(self, resource_id: str) -> FetchResult[HostImage]:
        kind, _, value = resource_id.partition(":")
        if kind == DIRECT and value:
            return self._resolve_direct(value)
        if kind == PAGE and value:
            return self._resolve_page(value)
        # Untagged ids are treated as page ids
        return self._resolve_page(resource_id)

    def fetch_album(self, resource_id: str) -> FetchResult[HostAlbum]:
        kind, _, value = resource_id.partition(":")
        if kind != GALLERY or not value:
            return FetchResult.not_found()
        return self._resolve_gallery(value)

    def fetch_gallery(self, resource_id: str) -> FetchResult[GalleryPayload]:
        if resource_id.startswith(f"{GALLERY}:"):
            album = self.fetch_album(resource_id)
            if not album.is_ok:
                return album
            return FetchResult.ok(GalleryPayload(is_album=True, data=album.value))

        image = self.fetch_image(resource_id)
        if not image.is_ok:
            return image
        return FetchResult.ok(GalleryPayload(is_album=False, data=image.value))

    def _parsed(self, resource_id: str, public_id: str | None = None) -> ParsedInput:
        kind = resource_id.split(":", 1)[0]
        return ParsedInput(
            provider_id=self.provider_id,
            resource_id=resource_id,
            public_id=public_id or self.to_public_id(resource_id),
            type_hint=SUBTYPE_KINDS[kind],
        )

    def _fetch_html(self, url: str) -> FetchResult[BeautifulSoup]:
        result = self._request(url)
        if not result.is_ok:
            return result
        return FetchResult.ok(BeautifulSoup(result.value.text, "html.parser"))

    def _resolve_page(self, page_id: str) -> FetchResult[HostImage]:
        page_url = f"{POSTIMG_BASE}/{page_id}"
        page = self._fetch_html(page_url)
        if not page.is_ok:
            return page

        soup = page.value
        image_url = _meta_content(soup, "og:image")
        if not image_url:
            # The page exists but doesn't look like an image page
            logger.warning(f"[postimages] No og:image on {page_url}")
            return FetchResult.unavailable("page has no og:image")

        title = _meta_content(soup, "og:title")
        if not title and soup.title and soup.title.string:
            title = soup.title.string.strip()

        return FetchResult.ok(HostImage(
            id=f"{PAGE}:{page_id}",
            url=image_url,
            source_url=page_url,
            title=clean_title(title),
            mime_type=guess_mime_type(image_url),
        ))

    def _resolve_direct(self, path: str) -> FetchResult[HostImage]:
        image_url = path if path.startswith("http") else f"{POSTIMG_CDN_BASE}/{path.lstrip('/')}"
        probe = self._request(image_url, method="HEAD", allow_redirects=True)
        if not probe.is_ok:
            return probe

        content_type = probe.value.headers.get("Content-Type", "").split(";")[0].strip()
        if not content_type.startswith(("image/", "video/")):
            content_type = guess_mime_type(image_url)
        return FetchResult.ok(HostImage(
            id=f"{DIRECT}:{path}",
            url=image_url,
            source_url=image_url,
            mime_type=content_type,
        ))

    def _resolve_gallery(self, gallery_id: str) -> FetchResult[HostAlbum]:
        gallery_url = f"{POSTIMG_BASE}/gallery/{gallery_id}"
        result = self._request(gallery_url)
        if not result.is_ok:
            return result

        html = result.value.text
        # dict.fromkeys keeps first-seen order
        page_ids = list(dict.fromkeys(POSTIMG_PAGE_LINK_PATTERN.findall(html)))

        images = []
        for page_id in page_ids:
            member = self._resolve_page(page_id)
            if member.is_ok:
                images.append(member.value)
            elif member.is_not_found:
                logger.warning(f"[postimages] Gallery member {page_id} is gone")
            else:
                # Keep the slot so positions and existing copies survive a transient failure
                logger.warning(f"[postimages] Gallery member {page_id} unavailable: {member.error}")
                page_url = f"{POSTIMG_BASE}/{page_id}"
                images.append(HostImage(id=f"{PAGE}:{page_id}", url=page_url, source_url=page_url, resolved=False))

        soup = BeautifulSoup(html, "html.parser")
        title = _meta_content(soup, "og:title") or (soup.title.string if soup.title else None)
        return FetchResult.ok(HostAlbum(
            id=f"{GALLERY}:{gallery_id}",
            source_url=gallery_url,
            title=clean_title(title),
            images_count=len(images),
            images=images,
        ))


def _meta_content(soup: BeautifulSoup, name: str) -> str | None:
    tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
    if tag and tag.get("content"):
        return tag["content"].strip()
    return None
