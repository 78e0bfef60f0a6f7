from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ResourceKind(str, Enum):
    IMAGE = "image"
    ALBUM = "album"


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    window_ms: int = Field(gt=0)
    max_requests: int = Field(gt=0)


class HostAdapterConfig(BaseModel):
    """Per-provider caching policy, fixed when the adapter is built."""
    model_config = ConfigDict(frozen=True)

    stale_after_ms: int = Field(ge=0, description="Age of last check before revalidating upstream")
    page_cache_seconds: int = Field(ge=0, description="Cache-Control max-age for rendered pages")
    api_cache_seconds: int = Field(ge=0, description="Cache-Control max-age for JSON responses")
    raw_cache_seconds: int = Field(ge=0, description="Cache-Control max-age for raw bytes")
    rate_limit: Optional[RateLimitConfig] = None

    @property
    def stale_after(self) -> timedelta:
        return timedelta(milliseconds=self.stale_after_ms)


class ParsedInput(BaseModel):
    """User input resolved to a canonical (provider_id, resource_id) identity."""
    model_config = ConfigDict(frozen=True)

    provider_id: str
    resource_id: str
    public_id: str
    type_hint: Optional[ResourceKind] = None


class HostImage(BaseModel):
    """Adapter output for a single origin image.

    ``id`` is a resource id of the owning adapter, so it can be handed back
    to ``fetch_image`` when the image is revalidated on its own.

    Album members the origin lists but couldn't describe right now come
    back with ``resolved=False``; only ``id`` and ``source_url`` are meaningful.
    """
    id: str
    url: str
    source_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    mime_type: str = "image/jpeg"
    width: Optional[int] = None
    height: Optional[int] = None
    size: Optional[int] = None
    animated: Optional[bool] = None
    resolved: bool = True


class HostAlbum(BaseModel):
    """Adapter output for an origin album; ``images`` keeps origin order."""
    id: str
    source_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    images_count: int = 0
    images: list[HostImage] = Field(default_factory=list)


@dataclass(frozen=True)
class GalleryPayload:
    """Combined lookup result for origins that can't tell album from image up front."""
    is_album: bool
    data: Union[HostAlbum, HostImage]


class FetchStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Outcome of an origin lookup.

    NOT_FOUND means the origin confirmed the resource is gone. UNAVAILABLE
    covers everything else that went wrong (timeouts, 5xx, garbage bodies)
    and must never be treated as a deletion.
    """
    status: FetchStatus
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: T) -> "FetchResult[T]":
        return cls(FetchStatus.OK, value=value)

    @classmethod
    def not_found(cls) -> "FetchResult[T]":
        return cls(FetchStatus.NOT_FOUND)

    @classmethod
    def unavailable(cls, error: str) -> "FetchResult[T]":
        return cls(FetchStatus.UNAVAILABLE, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status is FetchStatus.OK

    @property
    def is_not_found(self) -> bool:
        return self.status is FetchStatus.NOT_FOUND
