import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import ConfigurationError, StorageUnavailableError
from .models import GalleryMembership, GalleryRecord, ImageRecord

logger = logging.getLogger(__name__)


def adapt_datetime(dt: datetime) -> str:
    # Fixed-width UTC so stored values also compare correctly as strings
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def convert_datetime(val: bytes) -> datetime:
    return datetime.fromisoformat(val.decode())


# Register adapters and converters for Python 3.12+ compatibility
sqlite3.register_adapter(datetime, adapt_datetime)
sqlite3.register_converter("TIMESTAMP", convert_datetime)
sqlite3.register_converter("timestamp", convert_datetime)


@contextmanager
def connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Short-lived connection; commits on success, maps outages to StorageUnavailableError."""
    try:
        conn = sqlite3.connect(db_path, detect_types=sqlite3.PARSE_DECLTYPES)
    except sqlite3.Error as e:
        raise StorageUnavailableError(f"Cannot open metadata store {db_path}: {e}") from e

    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        with conn:
            yield conn
    except sqlite3.IntegrityError:
        raise
    except sqlite3.DatabaseError as e:
        raise StorageUnavailableError(f"Metadata store error: {e}") from e
    finally:
        conn.close()


class MetadataStore:
    """
    Durable image/gallery metadata keyed by local id, with secondary
    lookup by (provider_id, provider resource id) among live records.
    """

    def __init__(self, db_path: Path | None):
        """Initialize SQLite, create tables if not exist."""
        if db_path is None:
            raise ConfigurationError("No metadata store configured")
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create {self.db_path.parent}: {e}") from e
        self._init_db()

    def _init_db(self):
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS images (
                    local_id TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    source_url TEXT,
                    provider_id TEXT,
                    provider_image_id TEXT,
                    title TEXT,
                    description TEXT,
                    mime_type TEXT NOT NULL,
                    width INTEGER,
                    height INTEGER,
                    size_bytes INTEGER,
                    cached_at TIMESTAMP NOT NULL,
                    last_checked_at TIMESTAMP NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0
                );
            """)
            # Tombstoned rows drop out of the index so the same origin image can be re-ingested
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_images_provider
                ON images (provider_id, provider_image_id)
                WHERE is_deleted = 0 AND provider_id IS NOT NULL;
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_images_last_checked ON images (last_checked_at);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS galleries (
                    local_id TEXT PRIMARY KEY,
                    provider_id TEXT,
                    provider_gallery_id TEXT,
                    source_url TEXT,
                    title TEXT,
                    description TEXT,
                    image_count INTEGER NOT NULL DEFAULT 0,
                    cached_at TIMESTAMP NOT NULL,
                    last_checked_at TIMESTAMP NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0
                );
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_galleries_provider
                ON galleries (provider_id, provider_gallery_id)
                WHERE is_deleted = 0 AND provider_id IS NOT NULL;
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS gallery_images (
                    gallery_id TEXT NOT NULL REFERENCES galleries (local_id) ON DELETE CASCADE,
                    image_id TEXT NOT NULL REFERENCES images (local_id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (gallery_id, image_id)
                );
            """)

    # Images

    def get_image(self, local_id: str) -> ImageRecord | None:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM images WHERE local_id = ?", (local_id,)).fetchone()
            return ImageRecord(**dict(row)) if row else None

    def get_image_by_provider(self, provider_id: str, provider_image_id: str) -> ImageRecord | None:
        """Live (not tombstoned) image for an origin identity."""
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM images WHERE provider_id = ? AND provider_image_id = ? AND is_deleted = 0",
                (provider_id, provider_image_id)
            ).fetchone()
            return ImageRecord(**dict(row)) if row else None

    def save_image(self, image: ImageRecord) -> ImageRecord:
        """
        Upsert by local_id. cached_at is never overwritten.

        If another live record already holds the same provider key (a
        concurrent ingestion won), that record is returned instead.
        """
        with connect(self.db_path) as conn:
            try:
                self._upsert(conn, "images", image.model_dump())
                return image
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT * FROM images WHERE provider_id = ? AND provider_image_id = ? AND is_deleted = 0",
                    (image.provider_id, image.provider_image_id)
                ).fetchone()
                if row is None:
                    raise
                logger.info(
                    f"Image {image.provider_id}:{image.provider_image_id} already stored as {row['local_id']}"
                )
                return ImageRecord(**dict(row))

    def delete_image(self, local_id: str):
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM images WHERE local_id = ?", (local_id,))

    def touch_image(self, local_id: str, checked_at: datetime):
        with connect(self.db_path) as conn:
            conn.execute("UPDATE images SET last_checked_at = ? WHERE local_id = ?", (checked_at, local_id))

    def list_stale_image_ids(self, cutoff: datetime) -> list[str]:
        """Live images last checked before cutoff, oldest first (for revalidation sweeps)."""
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT local_id FROM images WHERE last_checked_at < ? AND is_deleted = 0 ORDER BY last_checked_at",
                (cutoff,)
            ).fetchall()
            return [row["local_id"] for row in rows]

    # Galleries

    def get_gallery(self, local_id: str) -> GalleryRecord | None:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM galleries WHERE local_id = ?", (local_id,)).fetchone()
            return GalleryRecord(**dict(row)) if row else None

    def get_gallery_by_provider(self, provider_id: str, provider_gallery_id: str) -> GalleryRecord | None:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM galleries WHERE provider_id = ? AND provider_gallery_id = ? AND is_deleted = 0",
                (provider_id, provider_gallery_id)
            ).fetchone()
            return GalleryRecord(**dict(row)) if row else None

    def save_gallery(self, gallery: GalleryRecord) -> GalleryRecord:
        """Same upsert and convergence rules as save_image()."""
        with connect(self.db_path) as conn:
            try:
                self._upsert(conn, "galleries", gallery.model_dump())
                return gallery
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT * FROM galleries WHERE provider_id = ? AND provider_gallery_id = ? AND is_deleted = 0",
                    (gallery.provider_id, gallery.provider_gallery_id)
                ).fetchone()
                if row is None:
                    raise
                logger.info(
                    f"Gallery {gallery.provider_id}:{gallery.provider_gallery_id} already stored as {row['local_id']}"
                )
                return GalleryRecord(**dict(row))

    def delete_gallery(self, local_id: str):
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM gallery_images WHERE gallery_id = ?", (local_id,))
            conn.execute("DELETE FROM galleries WHERE local_id = ?", (local_id,))

    def touch_gallery(self, local_id: str, checked_at: datetime):
        with connect(self.db_path) as conn:
            conn.execute("UPDATE galleries SET last_checked_at = ? WHERE local_id = ?", (checked_at, local_id))

    # Gallery membership

    def get_gallery_image_ids(self, gallery_id: str) -> list[str]:
        return [m.image_local_id for m in self.get_gallery_members(gallery_id)]

    def get_gallery_members(self, gallery_id: str) -> list[GalleryMembership]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM gallery_images WHERE gallery_id = ? ORDER BY position ASC",
                (gallery_id,)
            ).fetchall()
            return [
                GalleryMembership(
                    gallery_local_id=row["gallery_id"],
                    image_local_id=row["image_id"],
                    position=row["position"]
                ) for row in rows
            ]

    def add_gallery_image(self, gallery_id: str, image_id: str, position: int):
        """Insert or move a membership row. The gallery row must already exist."""
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO gallery_images (gallery_id, image_id, position)
                VALUES (?, ?, ?)
                ON CONFLICT (gallery_id, image_id) DO UPDATE SET position = excluded.position
                """,
                (gallery_id, image_id, position)
            )

    def remove_gallery_image(self, gallery_id: str, image_id: str):
        with connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM gallery_images WHERE gallery_id = ? AND image_id = ?",
                (gallery_id, image_id)
            )

    @staticmethod
    def _upsert(conn: sqlite3.Connection, table: str, row: dict[str, Any]):
        columns = list(row)
        updates = ", ".join(
            f"{col} = excluded.{col}" for col in columns if col not in ("local_id", "cached_at")
        )
        conn.execute(
            f"""
            INSERT INTO {table} ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT (local_id) DO UPDATE SET {updates}
            """,
            [row[col] for col in columns]
        )
