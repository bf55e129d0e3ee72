"""Tests for listing photo archiving."""

import pytest
from unittest.mock import MagicMock

import requests

from rental_tracker.services.images import ImageArchiver, extension_from_content_type, image_file_stem

PHOTO_1 = "https://flatfox.ch/media/thumb/1.jpg"
PHOTO_2 = "https://cdn.example.ch/photos/2?w=800"


def image_response(content=b"\xff\xd8jpeg", content_type="image/jpeg"):
    response = MagicMock()
    response.content = content
    response.headers = {"Content-Type": content_type}
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def session():
    session = MagicMock()
    session.get.return_value = image_response()
    return session


@pytest.fixture
def archiver(tmp_path, session):
    return ImageArchiver(tmp_path, session=session, max_per_listing=5, timeout=5)


class TestImageArchiver:
    def test_downloads_remote_photos(self, archiver, session, tmp_path, make_listing):
        listing = make_listing(image_urls_remote=[PHOTO_1, PHOTO_2], image_urls=[PHOTO_1, PHOTO_2])
        session.get.side_effect = [image_response(), image_response(b"png", "image/png; charset=binary")]

        assert archiver.archive([listing]) == 2

        first = f"images/{image_file_stem(PHOTO_1)}.jpg"
        second = f"images/{image_file_stem(PHOTO_2)}.png"
        assert listing.image_urls_local == [first, second]
        assert listing.image_urls_remote == [PHOTO_1, PHOTO_2]
        assert listing.image_urls == [first, second]
        assert listing.image_url == first
        assert (tmp_path / first).read_bytes() == b"\xff\xd8jpeg"
        session.get.assert_any_call(PHOTO_1, timeout=5)

    def test_existing_file_not_downloaded_again(self, archiver, session, tmp_path, make_listing):
        (tmp_path / "images").mkdir()
        (tmp_path / "images" / f"{image_file_stem(PHOTO_1)}.webp").write_bytes(b"webp")
        listing = make_listing(image_urls_remote=[PHOTO_1])

        assert archiver.archive([listing]) == 0

        session.get.assert_not_called()
        assert listing.image_url == f"images/{image_file_stem(PHOTO_1)}.webp"

    def test_shared_photo_fetched_once(self, archiver, session, make_listing):
        listings = [make_listing(id="a", image_urls_remote=[PHOTO_1]), make_listing(id="b", image_urls_remote=[PHOTO_1])]

        archiver.archive(listings)

        assert session.get.call_count == 1
        assert listings[0].image_urls_local == listings[1].image_urls_local

    def test_failed_download_keeps_remote(self, archiver, session, make_listing):
        session.get.side_effect = requests.ConnectionError("timeout")
        listing = make_listing(image_urls_remote=[PHOTO_1])

        assert archiver.archive([listing]) == 0

        assert listing.image_urls_local == []
        assert listing.image_urls == [PHOTO_1]

    def test_http_error_keeps_remote(self, archiver, session, make_listing):
        response = image_response()
        response.raise_for_status.side_effect = requests.HTTPError("404")
        session.get.return_value = response
        listing = make_listing(image_urls_remote=[PHOTO_1])

        archiver.archive([listing])

        assert listing.image_url == PHOTO_1

    def test_limit_per_listing(self, tmp_path, session, make_listing):
        archiver = ImageArchiver(tmp_path, session=session, max_per_listing=1)
        listing = make_listing(image_urls_remote=[PHOTO_1, PHOTO_2])

        archiver.archive([listing])

        assert session.get.call_count == 1
        assert len(listing.image_urls_local) == 1
        assert listing.image_urls_remote == [PHOTO_1, PHOTO_2]

    def test_listing_without_photos(self, archiver, session, make_listing):
        listing = make_listing()

        archiver.archive([listing])

        session.get.assert_not_called()
        assert listing.image_url is None

    def test_content_type_extension(self):
        assert extension_from_content_type("image/png; charset=binary") == ".png"
        assert extension_from_content_type("text/html") is None
