from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, model_validator

from src.hosts.models import ParsedInput


class _CachedRecord(BaseModel):
    cached_at: datetime  # Set once, at first ingestion
    last_checked_at: datetime  # Refreshed on every revalidation
    is_deleted: bool = False  # Tombstone; terminal for this local_id

    @model_validator(mode="after")
    def _checked_after_cached(self):
        if self.last_checked_at < self.cached_at:
            raise ValueError("last_checked_at must not precede cached_at")
        return self


class ImageRecord(_CachedRecord):
    """Database record for a mirrored image."""
    local_id: str
    url: str  # Origin URL the bytes were downloaded from
    source_url: Optional[str] = None
    provider_id: Optional[str] = None
    provider_image_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    mime_type: str = "image/jpeg"
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: Optional[int] = None


class GalleryRecord(_CachedRecord):
    """Database record for a mirrored album/gallery."""
    local_id: str
    provider_id: Optional[str] = None
    provider_gallery_id: Optional[str] = None
    source_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    image_count: int = 0


class GalleryMembership(BaseModel):
    gallery_local_id: str
    image_local_id: str
    position: int  # 0-based, origin order


class ResolveStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


@dataclass
class Resolution:
    """Outcome of resolving an identity or a local id."""
    status: ResolveStatus
    parsed: Optional[ParsedInput] = None
    gallery: Optional[GalleryRecord] = None
    images: list[ImageRecord] = field(default_factory=list)
    from_cache: bool = False  # Served without contacting the origin
    degraded: bool = False  # Stale data served because the origin was unreachable
    missing_positions: list[int] = field(default_factory=list)  # Members without fresh bytes or metadata
    positions: list[int] = field(default_factory=list)  # Gallery position of each image, when not just 0..n-1
    message: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is ResolveStatus.OK

    @property
    def image_ids(self) -> list[str]:
        return [image.local_id for image in self.images]

    @property
    def image_positions(self) -> list[int]:
        return self.positions or list(range(len(self.images)))


@dataclass
class RawContent:
    """Outcome of a byte retrieval."""
    status: ResolveStatus
    image: Optional[ImageRecord] = None
    data: Optional[bytes] = None
    content_type: Optional[str] = None
    degraded: bool = False
    message: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is ResolveStatus.OK


@dataclass
class BlobObject:
    data: bytes
    content_type: str
    metadata: dict[str, str] = field(default_factory=dict)


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime


class SweepReport(BaseModel):
    """Result of an out-of-band revalidation sweep."""
    checked: int = 0
    refreshed: int = 0
    tombstoned: int = 0
    unavailable: int = 0
