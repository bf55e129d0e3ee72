"""Archive the photos of displayed listings next to the profile's documents."""

import hashlib
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional
from urllib.parse import urlparse

import requests

from ..models.listing import Listing
from ..utils.text import unique_strings
from .normalizer import set_image_lists

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif")

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/avif": ".avif",
}

DEFAULT_EXTENSION = ".jpg"


def image_file_stem(url: str) -> str:
    """Stable file name for a remote image URL."""
    return hashlib.sha1(url.encode("utf-8")).hexdigest()[:24]


def extension_from_url(url: str) -> Optional[str]:
    suffix = Path(urlparse(url).path).suffix.lower()
    return suffix if suffix in IMAGE_EXTENSIONS else None


def extension_from_content_type(content_type: str) -> Optional[str]:
    return CONTENT_TYPE_EXTENSIONS.get(str(content_type or "").split(";")[0].strip().lower())


class ImageArchiver:
    """
    Download listing photos into ``<profile>/images``.

    Each remote URL is stored once under a hash of the URL, so a photo shared
    by several listings or seen again on the next scan is not fetched twice.
    Local paths are relative to the profile directory. A photo that cannot
    be downloaded is skipped and the listing keeps showing the remote URL.
    """

    def __init__(
        self,
        profile_dir: Path,
        session: Optional[requests.Session] = None,
        max_per_listing: int = 5,
        timeout: float = 20,
    ):
        self.profile_dir = Path(profile_dir)
        self.images_dir = self.profile_dir / "images"
        self.session = session or requests.Session()
        self.max_per_listing = max_per_listing
        self.timeout = timeout
        self._archived: Dict[str, str] = {}

    def archive(self, listings: Iterable[Listing]) -> int:
        """
        Localize the first ``max_per_listing`` remote photos of each listing.

        Args:
            listings: Listings currently shown on the dashboard

        Returns:
            Number of photos downloaded
        """
        downloaded = 0
        for listing in listings:
            remote = list(listing.image_urls_remote)
            localized = []
            for url in remote[: self.max_per_listing]:
                if url not in self._archived:
                    path = self._existing_file(url)
                    if path is None:
                        path = self._download(url)
                        if path is None:
                            continue
                        downloaded += 1
                    self._archived[url] = path.relative_to(self.profile_dir).as_posix()
                localized.append(self._archived[url])

            local = unique_strings(list(listing.image_urls_local) + localized)[: self.max_per_listing]
            set_image_lists(listing, local, remote)

        if downloaded:
            logger.info(f"Archived {downloaded} images into {self.images_dir}")
        return downloaded

    def _existing_file(self, url: str) -> Optional[Path]:
        stem = image_file_stem(url)
        for ext in IMAGE_EXTENSIONS:
            path = self.images_dir / f"{stem}{ext}"
            if path.exists():
                return path
        return None

    def _download(self, url: str) -> Optional[Path]:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.debug(f"Image download failed for {url}: {e}")
            return None

        ext = (
            extension_from_url(url)
            or extension_from_content_type(response.headers.get("Content-Type", ""))
            or DEFAULT_EXTENSION
        )
        path = self.images_dir / f"{image_file_stem(url)}{ext}"
        try:
            self.images_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(response.content)
        except OSError as e:
            logger.warning(f"Could not store image {url}: {e}")
            return None
        return path
