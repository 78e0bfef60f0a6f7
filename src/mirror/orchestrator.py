"""
Ingestion orchestrator: resolves identities against the local mirror,
revalidates stale entries upstream and fans galleries out into images.
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional, Union

import requests

from src.hosts.adapters.base import BaseHostAdapter, combine_misses
from src.hosts.models import (
    FetchResult,
    GalleryPayload,
    HostAlbum,
    HostImage,
    ParsedInput,
    RateLimitConfig,
    ResourceKind,
)
from src.hosts.registry import HostRegistry, build_registry
from src.hosts.settings import DEFAULT_RATE_LIMIT

from .blobs import BlobStore
from .database import MetadataStore
from .errors import RateLimitExceededError
from .models import (
    GalleryRecord,
    ImageRecord,
    RawContent,
    Resolution,
    ResolveStatus,
    SweepReport,
)
from .ratelimit import RateLimiter
from .settings import MirrorSettings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_local_id(prefix: str) -> str:
    """Local ids: "i_<uuid>" for images, "g_<uuid>" for galleries."""
    return f"{prefix}_{uuid.uuid4()}"


def _unchanged(record: Union[ImageRecord, GalleryRecord], fields: dict) -> bool:
    # last_checked_at always moves, so it is not part of the comparison
    return all(getattr(record, name) == value for name, value in fields.items() if name != "last_checked_at")


class _KeyedLocks:
    """One lock per identity key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]


class IngestionOrchestrator:
    """
    Serves images and galleries from the mirror, going upstream only for
    missing or stale identities.

    Origin absence tombstones the local copy. An unreachable origin never
    does: the last known copy is served with ``degraded`` set instead.
    """

    def __init__(
        self,
        registry: HostRegistry,
        store: MetadataStore,
        blobs: BlobStore,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry
        self.store = store
        self.blobs = blobs
        self.rate_limiter = rate_limiter
        self.clock = clock
        self._locks = _KeyedLocks()

    # Entry points

    def resolve(self, raw_input: str, client_id: Optional[str] = None) -> Resolution:
        """Resolve a URL or bare id from any registered host."""
        parsed = self.registry.resolve_input(raw_input)
        if parsed is None:
            self._check_rate_limit(client_id, "resolve", DEFAULT_RATE_LIMIT)
            return Resolution(ResolveStatus.NOT_FOUND, message=f"Unrecognized input: {raw_input}")
        return self._resolve_with_limit(parsed, client_id)

    def resolve_public_id(self, public_id: str, client_id: Optional[str] = None) -> Resolution:
        parsed = self.registry.parse_public_id(public_id)
        if parsed is None:
            self._check_rate_limit(client_id, "resolve", DEFAULT_RATE_LIMIT)
            return Resolution(ResolveStatus.NOT_FOUND, message=f"Unrecognized id: {public_id}")
        return self._resolve_with_limit(parsed, client_id)

    def resolve_parsed(self, parsed: ParsedInput) -> Resolution:
        adapter = self.registry.get_adapter(parsed.provider_id)
        if adapter is None:
            return Resolution(ResolveStatus.NOT_FOUND, parsed=parsed, message=f"Unknown provider: {parsed.provider_id}")

        with self._locks.hold(self.registry.cache_key(adapter, parsed.resource_id)):
            return self._resolve_locked(adapter, parsed)

    def get_image(self, local_id: str) -> Resolution:
        record = self.store.get_image(local_id)
        if record is None or record.is_deleted:
            return Resolution(ResolveStatus.NOT_FOUND, message=f"No image {local_id}")

        adapter = self._adapter_for(record.provider_id)
        if adapter is None or self._is_fresh(adapter, record, self.clock()):
            return Resolution(ResolveStatus.OK, images=[record], from_cache=True)

        with self._locks.hold(self.registry.cache_key(adapter, record.provider_image_id)):
            # Another caller may have refreshed it while we waited
            record = self.store.get_image(local_id)
            if record is None or record.is_deleted:
                return Resolution(ResolveStatus.NOT_FOUND, message=f"No image {local_id}")
            if self._is_fresh(adapter, record, self.clock()):
                return Resolution(ResolveStatus.OK, images=[record], from_cache=True)
            return self._revalidate_image(adapter, record)

    def get_gallery(self, local_id: str) -> Resolution:
        gallery = self.store.get_gallery(local_id)
        if gallery is None or gallery.is_deleted:
            return Resolution(ResolveStatus.NOT_FOUND, message=f"No gallery {local_id}")

        adapter = self._adapter_for(gallery.provider_id)
        if adapter is None or self._is_fresh(adapter, gallery, self.clock()):
            return self._serve_gallery(None, gallery, from_cache=True)

        parsed = ParsedInput(
            provider_id=gallery.provider_id,
            resource_id=gallery.provider_gallery_id,
            public_id=self.registry.to_public_id(adapter, gallery.provider_gallery_id),
            type_hint=ResourceKind.ALBUM,
        )
        return self.resolve_parsed(parsed)

    def get_raw(self, local_id: str) -> RawContent:
        """Image bytes. A missing blob or a stale row goes back to the origin."""
        record = self.store.get_image(local_id)
        if record is None or record.is_deleted:
            return RawContent(ResolveStatus.NOT_FOUND, message=f"No image {local_id}")

        adapter = self._adapter_for(record.provider_id)
        blob = self.blobs.get(local_id)
        if blob and (adapter is None or self._is_fresh(adapter, record, self.clock())):
            return RawContent(ResolveStatus.OK, image=record, data=blob.data, content_type=blob.content_type)
        if adapter is None:
            return RawContent(ResolveStatus.UPSTREAM_UNAVAILABLE, image=record, message="No adapter to refetch bytes")

        with self._locks.hold(self.registry.cache_key(adapter, record.provider_image_id)):
            resolution = self._revalidate_image(adapter, record)
            if not resolution.found:
                return RawContent(resolution.status, message=resolution.message)

            record = resolution.images[0]
            blob = self.blobs.get(record.local_id)
            if blob is None:
                return RawContent(
                    ResolveStatus.UPSTREAM_UNAVAILABLE,
                    image=record,
                    message="Image bytes could not be fetched",
                )
            return RawContent(
                ResolveStatus.OK,
                image=record,
                data=blob.data,
                content_type=blob.content_type,
                degraded=resolution.degraded,
            )

    def revalidate_stale(self, max_age: timedelta) -> SweepReport:
        """Recheck every live image not checked within max_age."""
        cutoff = self.clock() - max_age
        report = SweepReport()

        for local_id in self.store.list_stale_image_ids(cutoff):
            record = self.store.get_image(local_id)
            if record is None or record.is_deleted:
                continue
            adapter = self._adapter_for(record.provider_id)
            if adapter is None:
                logger.warning(f"Skipping {local_id}: no adapter for provider {record.provider_id}")
                continue

            report.checked += 1
            with self._locks.hold(self.registry.cache_key(adapter, record.provider_image_id)):
                resolution = self._revalidate_image(adapter, record)

            if resolution.status is ResolveStatus.NOT_FOUND:
                report.tombstoned += 1
            elif resolution.degraded:
                report.unavailable += 1
            else:
                report.refreshed += 1

        logger.info(
            f"Sweep done: {report.checked} checked, {report.refreshed} refreshed, "
            f"{report.tombstoned} tombstoned, {report.unavailable} unavailable"
        )
        return report

    # Resolution

    def _resolve_with_limit(self, parsed: ParsedInput, client_id: Optional[str]) -> Resolution:
        adapter = self.registry.get_adapter(parsed.provider_id)
        if adapter is not None:
            self._check_rate_limit(client_id, f"resolve:{adapter.id}", self.registry.get_rate_limit(adapter))
        return self.resolve_parsed(parsed)

    def _check_rate_limit(self, client_id: Optional[str], endpoint: str, config: RateLimitConfig):
        if not client_id or self.rate_limiter is None:
            return
        result = self.rate_limiter.check_limit(client_id, endpoint, config)
        if not result.allowed:
            raise RateLimitExceededError(client_id, endpoint, self.rate_limiter.retry_after(result))

    def _resolve_locked(self, adapter: BaseHostAdapter, parsed: ParsedInput) -> Resolution:
        now = self.clock()
        gallery = self.store.get_gallery_by_provider(adapter.provider_id, parsed.resource_id)
        image = None if gallery else self.store.get_image_by_provider(adapter.provider_id, parsed.resource_id)

        if gallery and self._is_fresh(adapter, gallery, now):
            return self._serve_gallery(parsed, gallery, from_cache=True)
        if image and self._is_fresh(adapter, image, now):
            return Resolution(ResolveStatus.OK, parsed=parsed, images=[image], from_cache=True)

        logger.info(f"Fetching {parsed.public_id} from {adapter.name} ({'stale' if gallery or image else 'missing'})")
        result = self._fetch_origin(adapter, parsed)

        if result.is_not_found:
            if gallery:
                self._tombstone_gallery(gallery, now)
            if image:
                self._tombstone_image(image, now)
            return Resolution(ResolveStatus.NOT_FOUND, parsed=parsed, message=f"{parsed.public_id} was removed at origin")

        if not result.is_ok:
            logger.warning(f"{adapter.name} unavailable for {parsed.public_id}: {result.error}")
            if gallery:
                return self._serve_gallery(parsed, gallery, from_cache=True, degraded=True)
            if image:
                return Resolution(ResolveStatus.OK, parsed=parsed, images=[image], from_cache=True, degraded=True)
            return Resolution(ResolveStatus.UPSTREAM_UNAVAILABLE, parsed=parsed, message=result.error)

        payload = result.value
        if payload.is_album:
            return self._ingest_album(adapter, parsed, payload.data, now)

        # The identity no longer names a gallery at the origin
        if gallery:
            self._tombstone_gallery(gallery, now)
        return self._ingest_single(adapter, parsed, payload.data, now)

    def _fetch_origin(self, adapter: BaseHostAdapter, parsed: ParsedInput) -> FetchResult[GalleryPayload]:
        if adapter.supports_gallery:
            return adapter.fetch_gallery(parsed.resource_id)

        album = None
        if parsed.type_hint is not ResourceKind.IMAGE:
            album = adapter.fetch_album(parsed.resource_id)
            if album.is_ok:
                return FetchResult.ok(GalleryPayload(is_album=True, data=album.value))
            if parsed.type_hint is ResourceKind.ALBUM:
                return album

        image = adapter.fetch_image(parsed.resource_id)
        if image.is_ok:
            return FetchResult.ok(GalleryPayload(is_album=False, data=image.value))
        return combine_misses(*(r for r in (album, image) if r is not None))

    def _revalidate_image(self, adapter: BaseHostAdapter, record: ImageRecord) -> Resolution:
        now = self.clock()
        result = adapter.fetch_image(record.provider_image_id)

        if result.is_not_found:
            self._tombstone_image(record, now)
            return Resolution(ResolveStatus.NOT_FOUND, message=f"{record.local_id} was removed at origin")
        if not result.is_ok:
            logger.warning(f"{adapter.name} unavailable for {record.local_id}: {result.error}")
            return Resolution(ResolveStatus.OK, images=[record], from_cache=True, degraded=True)

        updated, has_bytes = self._persist_image(adapter, result.value, record.provider_image_id, now)
        return Resolution(ResolveStatus.OK, images=[updated], missing_positions=[] if has_bytes else [0])

    # Ingestion

    def _ingest_single(self, adapter: BaseHostAdapter, parsed: ParsedInput, host_image: HostImage, now: datetime) -> Resolution:
        record, has_bytes = self._persist_image(adapter, host_image, parsed.resource_id, now)
        resolution = Resolution(ResolveStatus.OK, parsed=parsed, images=[record])
        if not has_bytes:
            resolution.missing_positions = [0]
            resolution.message = "Image bytes could not be downloaded"
        return resolution

    def _ingest_album(self, adapter: BaseHostAdapter, parsed: ParsedInput, album: HostAlbum, now: datetime) -> Resolution:
        # Repeated members keep their first position
        members: dict[str, HostImage] = {}
        for host_image in album.images:
            members.setdefault(host_image.id, host_image)

        fields = {
            "source_url": album.source_url,
            "title": album.title,
            "description": album.description,
            "image_count": len(members),
            "last_checked_at": now,
        }
        existing = self.store.get_gallery_by_provider(adapter.provider_id, parsed.resource_id)
        # Gallery row first: membership rows reference it
        if existing and _unchanged(existing, fields):
            self.store.touch_gallery(existing.local_id, now)
            gallery = existing.model_copy(update={"last_checked_at": now})
        elif existing:
            gallery = self.store.save_gallery(existing.model_copy(update=fields))
        else:
            gallery = self.store.save_gallery(GalleryRecord(
                local_id=new_local_id("g"),
                provider_id=adapter.provider_id,
                provider_gallery_id=parsed.resource_id,
                cached_at=now,
                **fields,
            ))
        previous_ids = set(self.store.get_gallery_image_ids(gallery.local_id))

        images = []
        missing_positions = []
        positions = []
        for position, host_image in enumerate(members.values()):
            if not host_image.resolved:
                # Listed by the origin but not describable right now: keep any copy we have
                missing_positions.append(position)
                record = self.store.get_image_by_provider(adapter.provider_id, host_image.id)
                if record is None:
                    logger.warning(f"Gallery {gallery.local_id}: member {position} ({host_image.id}) not mirrored yet")
                    continue
                self.store.add_gallery_image(gallery.local_id, record.local_id, position)
                images.append(record)
                positions.append(position)
                continue

            record, has_bytes = self._persist_image(adapter, host_image, host_image.id, now)
            self.store.add_gallery_image(gallery.local_id, record.local_id, position)
            images.append(record)
            positions.append(position)
            if not has_bytes:
                logger.warning(f"Gallery {gallery.local_id}: no bytes for member {position} ({host_image.url})")
                missing_positions.append(position)

        for dropped_id in previous_ids - {record.local_id for record in images}:
            self.store.remove_gallery_image(gallery.local_id, dropped_id)

        logger.info(f"Ingested gallery {gallery.local_id} with {len(images)} images ({len(missing_positions)} missing)")
        return Resolution(
            ResolveStatus.OK,
            parsed=parsed,
            gallery=gallery,
            images=images,
            missing_positions=missing_positions,
            positions=positions,
        )

    def _persist_image(
        self,
        adapter: BaseHostAdapter,
        host_image: HostImage,
        provider_image_id: str,
        now: datetime,
    ) -> tuple[ImageRecord, bool]:
        """Create or refresh the record for one origin image.

        Returns the stored record and whether its bytes are in the blob store.
        """
        fields = {
            "url": host_image.url,
            "source_url": host_image.source_url,
            "title": host_image.title,
            "description": host_image.description,
            "mime_type": host_image.mime_type,
            "width": host_image.width,
            "height": host_image.height,
            "size_bytes": host_image.size,
            "last_checked_at": now,
        }

        existing = self.store.get_image_by_provider(adapter.provider_id, provider_image_id)
        if existing:
            if _unchanged(existing, fields):
                self.store.touch_image(existing.local_id, now)
                record = existing.model_copy(update={"last_checked_at": now})
            else:
                record = self.store.save_image(existing.model_copy(update=fields))
            if self.blobs.exists(record.local_id):
                return record, True
            return record, self._store_bytes(adapter, record)

        record = ImageRecord(
            local_id=new_local_id("i"),
            provider_id=adapter.provider_id,
            provider_image_id=provider_image_id,
            cached_at=now,
            **fields,
        )
        has_bytes = self._store_bytes(adapter, record)
        saved = self.store.save_image(record)
        if saved.local_id != record.local_id:
            # Lost a race for this provider key; keep the winner's copy
            self.blobs.delete(record.local_id)
            return saved, self.blobs.exists(saved.local_id)
        return saved, has_bytes

    def _store_bytes(self, adapter: BaseHostAdapter, record: ImageRecord) -> bool:
        data = adapter.download(record.url)
        if data is None:
            return False
        self.blobs.put(record.local_id, data, {
            "content_type": record.mime_type,
            "provider_id": record.provider_id or "",
            "source_url": record.url,
        })
        return True

    # Tombstones

    def _tombstone_image(self, record: ImageRecord, now: datetime):
        logger.info(f"Tombstoning image {record.local_id} ({record.provider_id}:{record.provider_image_id})")
        self.store.save_image(record.model_copy(update={"is_deleted": True, "last_checked_at": now}))
        self.blobs.delete(record.local_id)

    def _tombstone_gallery(self, gallery: GalleryRecord, now: datetime):
        # Member images may belong to other galleries, so they are left alone
        logger.info(f"Tombstoning gallery {gallery.local_id} ({gallery.provider_id}:{gallery.provider_gallery_id})")
        self.store.save_gallery(gallery.model_copy(update={"is_deleted": True, "last_checked_at": now}))

    # Helpers

    def _adapter_for(self, provider_id: Optional[str]) -> Optional[BaseHostAdapter]:
        return self.registry.get_adapter(provider_id) if provider_id else None

    @staticmethod
    def _is_fresh(adapter: BaseHostAdapter, record: Union[ImageRecord, GalleryRecord], now: datetime) -> bool:
        return now - record.last_checked_at <= adapter.config.stale_after

    def _serve_gallery(
        self,
        parsed: Optional[ParsedInput],
        gallery: GalleryRecord,
        from_cache: bool,
        degraded: bool = False,
    ) -> Resolution:
        images = []
        positions = []
        for member in self.store.get_gallery_members(gallery.local_id):
            record = self.store.get_image(member.image_local_id)
            if record and not record.is_deleted:
                images.append(record)
                positions.append(member.position)
        return Resolution(
            ResolveStatus.OK,
            parsed=parsed,
            gallery=gallery,
            images=images,
            positions=positions,
            from_cache=from_cache,
            degraded=degraded,
        )


def build_orchestrator(settings: MirrorSettings, session: Optional[requests.Session] = None) -> IngestionOrchestrator:
    """Wire the built-in hosts to sqlite metadata and filesystem blobs under settings.data_dir."""
    registry = build_registry(settings.imgur_client_id, session=session)
    return IngestionOrchestrator(
        registry=registry,
        store=MetadataStore(settings.database_path),
        blobs=BlobStore(settings.blob_dir),
        rate_limiter=RateLimiter(settings.database_path),
    )
