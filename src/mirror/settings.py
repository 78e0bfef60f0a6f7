"""
Configuration settings for the mirror.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Directories
DATA_DIR = Path("data")
DATABASE_NAME = "mirror.db"
BLOB_DIR_NAME = "blobs"

# Out-of-band revalidation
DEFAULT_SWEEP_MAX_AGE_HOURS = 24


class MirrorSettings(BaseModel):
    imgur_client_id: Optional[str] = None
    data_dir: Path = DATA_DIR

    @property
    def database_path(self) -> Path:
        return self.data_dir / DATABASE_NAME

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / BLOB_DIR_NAME


def load_settings() -> MirrorSettings:
    """Read settings from the environment (and .env, if present)."""
    load_dotenv()
    return MirrorSettings(
        imgur_client_id=os.getenv("IMGUR_CLIENT_ID") or None,
        data_dir=Path(os.getenv("MIRROR_DATA_DIR") or DATA_DIR),
    )
