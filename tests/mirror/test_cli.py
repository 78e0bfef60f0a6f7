from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from src.mirror.cli import app
from src.mirror.errors import ConfigurationError, RateLimitExceededError
from src.mirror.models import GalleryRecord, ImageRecord, RawContent, Resolution, ResolveStatus, SweepReport

runner = CliRunner()

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_image(local_id, title=None):
    return ImageRecord(local_id=local_id, url=f"https://cdn/{local_id}.jpg", title=title, cached_at=T0, last_checked_at=T0)


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    with patch("src.mirror.cli.build_orchestrator", return_value=orchestrator):
        yield orchestrator


def test_resolve_gallery(orchestrator):
    gallery = GalleryRecord(local_id="g_1", title="Holiday", image_count=2, cached_at=T0, last_checked_at=T0)
    orchestrator.resolve.return_value = Resolution(
        ResolveStatus.OK,
        gallery=gallery,
        images=[make_image("i_1"), make_image("i_2")],
        missing_positions=[1],
    )

    result = runner.invoke(app, ["resolve", "https://imgur.com/a/AbCd123"])

    assert result.exit_code == 0
    assert "g_1" in result.stdout
    assert "Holiday" in result.stdout
    assert "missing" in result.stdout
    orchestrator.resolve.assert_called_once_with("https://imgur.com/a/AbCd123", client_id=None)


def test_resolve_gallery_numbers_rows_by_gallery_position(orchestrator):
    gallery = GalleryRecord(local_id="g_1", title="Holiday", image_count=3, cached_at=T0, last_checked_at=T0)
    orchestrator.resolve.return_value = Resolution(
        ResolveStatus.OK,
        gallery=gallery,
        images=[make_image("i_1"), make_image("i_3")],
        missing_positions=[1],
        positions=[0, 2],
    )

    result = runner.invoke(app, ["resolve", "https://imgur.com/a/AbCd123"])

    assert result.exit_code == 0
    rows = [line for line in result.stdout.splitlines() if "i_3" in line]
    assert "2" in rows[0]
    assert "1" not in rows[0]
    assert "stored" in rows[0]


def test_resolve_public_id_fallback(orchestrator):
    orchestrator.registry.resolve_input.return_value = None
    orchestrator.resolve_public_id.return_value = Resolution(ResolveStatus.OK, images=[make_image("i_1")])

    result = runner.invoke(app, ["resolve", "postimages:page:Abc", "--client-id", "me"])

    assert result.exit_code == 0
    orchestrator.resolve_public_id.assert_called_once_with("postimages:page:Abc", client_id="me")


def test_resolve_not_found(orchestrator):
    orchestrator.resolve.return_value = Resolution(ResolveStatus.NOT_FOUND, message="gone")

    result = runner.invoke(app, ["resolve", "AbCd12"])

    assert result.exit_code == 1
    assert "Not found" in result.stdout


def test_resolve_rate_limited(orchestrator):
    orchestrator.resolve.side_effect = RateLimitExceededError("me", "resolve:imgur", 30)

    result = runner.invoke(app, ["resolve", "AbCd12", "--client-id", "me"])

    assert result.exit_code == 1
    assert "Retry after 30 seconds" in result.stdout


def test_show_dispatches_on_local_id(orchestrator):
    orchestrator.get_image.return_value = Resolution(ResolveStatus.OK, images=[make_image("i_1", "Sunset")], from_cache=True)
    orchestrator.get_gallery.return_value = Resolution(ResolveStatus.NOT_FOUND, message="No gallery g_9")

    assert runner.invoke(app, ["show", "i_1"]).exit_code == 0
    assert runner.invoke(app, ["show", "g_9"]).exit_code == 1
    orchestrator.get_image.assert_called_once_with("i_1")
    orchestrator.get_gallery.assert_called_once_with("g_9")


def test_raw_writes_file(orchestrator, tmp_path):
    orchestrator.get_raw.return_value = RawContent(
        ResolveStatus.OK, image=make_image("i_1"), data=b"jpeg bytes", content_type="image/jpeg"
    )
    output = tmp_path / "out" / "image.jpg"

    result = runner.invoke(app, ["raw", "i_1", "--output", str(output)])

    assert result.exit_code == 0
    assert output.read_bytes() == b"jpeg bytes"


def test_raw_unavailable(orchestrator, tmp_path):
    orchestrator.get_raw.return_value = RawContent(ResolveStatus.UPSTREAM_UNAVAILABLE, message="timeout")

    result = runner.invoke(app, ["raw", "i_1", "-o", str(tmp_path / "x")])

    assert result.exit_code == 1
    assert "Upstream unavailable" in result.stdout
    assert not (tmp_path / "x").exists()


def test_sweep(orchestrator):
    orchestrator.revalidate_stale.return_value = SweepReport(checked=3, refreshed=1, tombstoned=1, unavailable=1)

    result = runner.invoke(app, ["sweep", "--max-age-hours", "2"])

    assert result.exit_code == 0
    assert "Tombstoned" in result.stdout
    assert orchestrator.revalidate_stale.call_args.args[0].total_seconds() == 7200


def test_initialization_error():
    with patch("src.mirror.cli.build_orchestrator", side_effect=ConfigurationError("IMGUR_CLIENT_ID must be set")):
        result = runner.invoke(app, ["sweep"])

    assert result.exit_code == 1
    assert "IMGUR_CLIENT_ID" in result.stdout


def test_providers_with_real_wiring(tmp_path, monkeypatch):
    monkeypatch.setenv("IMGUR_CLIENT_ID", "test-client")

    result = runner.invoke(app, ["--data-dir", str(tmp_path), "providers"])

    assert result.exit_code == 0
    assert "imgur" in result.stdout
    assert "postimages" in result.stdout
    assert (tmp_path / "mirror.db").exists()
