"""Filesystem blob store for mirrored image bytes."""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from .errors import ConfigurationError, StorageUnavailableError
from .models import BlobObject

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class BlobStore:
    """Key/value byte storage with a JSON metadata sidecar per object."""

    def __init__(self, base_dir: Optional[Path]):
        """Initialize blob store.

        Args:
            base_dir: Directory holding the objects. Created on first write.
        """
        if base_dir is None:
            raise ConfigurationError("No blob store configured")
        self.base_dir = Path(base_dir)

    def get_object_path(self, key: str) -> Path:
        """Map an arbitrary key to a file path.

        Keys are hashed so any string (including ':' and '/') is safe on disk.
        The first two hex chars shard the directory.

        Args:
            key: Blob key (a local image id)

        Returns:
            Path to the data file
        """
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.base_dir / digest[:2] / digest

    def _metadata_path(self, key: str) -> Path:
        return self.get_object_path(key).with_suffix(".json")

    def get(self, key: str) -> Optional[BlobObject]:
        """Read an object.

        Args:
            key: Blob key

        Returns:
            BlobObject, or None if the key is absent
        """
        path = self.get_object_path(key)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageUnavailableError(f"Cannot read blob {key}: {e}") from e

        metadata: Dict[str, str] = {}
        try:
            with open(self._metadata_path(key), "r", encoding="utf-8") as f:
                metadata = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Blob {key} has no metadata sidecar")
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable metadata for blob {key}: {e}")

        return BlobObject(
            data=data,
            content_type=metadata.get("content_type", DEFAULT_CONTENT_TYPE),
            metadata=metadata,
        )

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None):
        """Write an object, replacing any previous one under the same key.

        Args:
            key: Blob key
            data: Raw bytes
            metadata: String metadata; ``content_type`` sets the object's type
        """
        path = self.get_object_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Sidecar first, so a readable data file always has its metadata
            self._write_atomic(
                self._metadata_path(key),
                json.dumps(metadata or {}, indent=2, ensure_ascii=False).encode("utf-8"),
            )
            self._write_atomic(path, data)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write blob {key}: {e}") from e

    def delete(self, key: str):
        """Remove an object. Missing keys are ignored."""
        for path in (self.get_object_path(key), self._metadata_path(key)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageUnavailableError(f"Cannot delete blob {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self.get_object_path(key).is_file()

    @staticmethod
    def _write_atomic(path: Path, data: bytes):
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
