import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from src.mirror.database import MetadataStore
from src.mirror.errors import ConfigurationError, StorageUnavailableError
from src.mirror.models import GalleryRecord, ImageRecord

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path):
    db_path = tmp_path / "test_mirror.db"
    return MetadataStore(db_path)


def make_image(local_id="i_1", provider_image_id="AbCd12", checked=T0, **kwargs):
    return ImageRecord(
        local_id=local_id,
        url=f"https://i.imgur.com/{provider_image_id}.jpg",
        provider_id="imgur",
        provider_image_id=provider_image_id,
        cached_at=T0,
        last_checked_at=checked,
        **kwargs
    )


def make_gallery(local_id="g_1", provider_gallery_id="AbCd123"):
    return GalleryRecord(
        local_id=local_id,
        provider_id="imgur",
        provider_gallery_id=provider_gallery_id,
        title="Album",
        image_count=2,
        cached_at=T0,
        last_checked_at=T0,
    )


def test_tables_created(db):
    conn = sqlite3.connect(db.db_path)
    names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    conn.close()

    assert {"images", "galleries", "gallery_images"} <= names


def test_save_and_retrieve_image(db):
    image = make_image(title="Sunset", width=640, height=480, size_bytes=1234)

    assert db.save_image(image) == image

    fetched = db.get_image("i_1")
    assert fetched == image
    assert fetched.cached_at.tzinfo is not None
    assert db.get_image("i_missing") is None


def test_naive_datetimes_are_stored_as_utc(db):
    naive = datetime(2026, 1, 1, 12, 0)
    db.save_image(ImageRecord(local_id="i_1", url="u", cached_at=naive, last_checked_at=naive))

    assert db.get_image("i_1").cached_at == T0


def test_upsert_keeps_cached_at(db):
    db.save_image(make_image())
    later = T0 + timedelta(hours=1)

    updated = make_image(checked=later, title="New title").model_copy(update={"cached_at": later})
    db.save_image(updated)

    fetched = db.get_image("i_1")
    assert fetched.cached_at == T0
    assert fetched.last_checked_at == later
    assert fetched.title == "New title"


def test_get_by_provider_ignores_tombstones(db):
    db.save_image(make_image())
    assert db.get_image_by_provider("imgur", "AbCd12").local_id == "i_1"

    db.save_image(make_image(is_deleted=True))

    assert db.get_image_by_provider("imgur", "AbCd12") is None
    assert db.get_image("i_1").is_deleted


def test_racing_insert_returns_existing_record(db):
    db.save_image(make_image(local_id="i_first"))

    saved = db.save_image(make_image(local_id="i_second"))

    assert saved.local_id == "i_first"
    assert db.get_image("i_second") is None


def test_new_record_allowed_after_tombstone(db):
    db.save_image(make_image(local_id="i_old", is_deleted=True))

    saved = db.save_image(make_image(local_id="i_new"))

    assert saved.local_id == "i_new"
    assert db.get_image_by_provider("imgur", "AbCd12").local_id == "i_new"
    assert db.get_image("i_old").is_deleted


def test_touch_and_list_stale(db):
    db.save_image(make_image("i_1", "Img001"))
    db.save_image(make_image("i_2", "Img002", checked=T0 + timedelta(hours=2)))
    db.save_image(make_image("i_3", "Img003", is_deleted=True))

    assert db.list_stale_image_ids(T0 + timedelta(hours=1)) == ["i_1"]

    db.touch_image("i_1", T0 + timedelta(hours=3))

    assert db.list_stale_image_ids(T0 + timedelta(hours=1)) == []
    assert db.list_stale_image_ids(T0 + timedelta(hours=4)) == ["i_2", "i_1"]


def test_delete_image(db):
    db.save_image(make_image())
    db.delete_image("i_1")

    assert db.get_image("i_1") is None


def test_save_gallery_and_converge(db):
    gallery = make_gallery()
    assert db.save_gallery(gallery) == gallery
    assert db.get_gallery_by_provider("imgur", "AbCd123") == gallery

    assert db.save_gallery(make_gallery(local_id="g_2")).local_id == "g_1"

    db.touch_gallery("g_1", T0 + timedelta(minutes=5))
    assert db.get_gallery("g_1").last_checked_at == T0 + timedelta(minutes=5)


def test_gallery_membership_order(db):
    db.save_gallery(make_gallery())
    for position, (local_id, provider_id) in enumerate([("i_c", "Img003"), ("i_a", "Img001"), ("i_b", "Img002")]):
        db.save_image(make_image(local_id, provider_id))
        db.add_gallery_image("g_1", local_id, position)

    assert db.get_gallery_image_ids("g_1") == ["i_c", "i_a", "i_b"]

    # Re-adding moves the row instead of duplicating it
    db.add_gallery_image("g_1", "i_c", 5)
    members = db.get_gallery_members("g_1")
    assert [(m.image_local_id, m.position) for m in members] == [("i_a", 1), ("i_b", 2), ("i_c", 5)]

    db.remove_gallery_image("g_1", "i_a")
    assert db.get_gallery_image_ids("g_1") == ["i_b", "i_c"]


def test_membership_requires_gallery(db):
    db.save_image(make_image())

    with pytest.raises(sqlite3.IntegrityError):
        db.add_gallery_image("g_missing", "i_1", 0)


def test_delete_gallery_removes_membership(db):
    db.save_gallery(make_gallery())
    db.save_image(make_image())
    db.add_gallery_image("g_1", "i_1", 0)

    db.delete_gallery("g_1")

    assert db.get_gallery("g_1") is None
    assert db.get_gallery_image_ids("g_1") == []
    assert db.get_image("i_1") is not None


def test_requires_path():
    with pytest.raises(ConfigurationError):
        MetadataStore(None)


def test_unopenable_database(tmp_path):
    # A directory can't be opened as a database file
    with pytest.raises(StorageUnavailableError):
        MetadataStore(tmp_path)
