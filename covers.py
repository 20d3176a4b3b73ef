"""Localizing remote cover images into the uploads directory.

A cover URL handed to the catalog is either a reference to a file we already
serve (``/uploads/...``) or a remote image. Remote images are downloaded once
and stored locally so the catalog keeps working when the image host blocks
hot-linking or goes away. Download problems never fail the caller: the original
URL is returned and the book keeps pointing at the remote image.

Covers uploaded directly by a client are written to the same directory.
"""

import logging
import os
import re
import secrets
import time
from typing import BinaryIO, Iterable, Optional
from urllib.parse import urljoin, urlparse

import httpx

from config import settings

logger = logging.getLogger(__name__)

REMOTE_SCHEMES = ("http://", "https://")
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
DEFAULT_EXTENSION = ".jpg"
UPLOAD_CHUNK_SIZE = 64 * 1024


class CoverDownloadError(Exception):
    pass


def is_remote(url: Optional[str]) -> bool:
    return bool(url) and url.startswith(REMOTE_SCHEMES)


def _image_extension(name: Optional[str]) -> str:
    ext = os.path.splitext(name or "")[1].lower()
    return ext if ext in IMAGE_EXTENSIONS else DEFAULT_EXTENSION


def _extension_for(url: str) -> str:
    try:
        path = urlparse(url).path
    except ValueError:
        # e.g. an unbalanced "[" in the host; the download itself will fail later
        return DEFAULT_EXTENSION
    return _image_extension(path)


def safe_key(key: str) -> str:
    """Reduce ``key`` to characters that are safe in a file name."""
    return re.sub(r"[^A-Za-z0-9_-]", "_", key)[:40]


def _unique_name(ext: str, key: Optional[str] = None) -> str:
    parts = [str(int(time.time() * 1000))]
    if key:
        parts.append(safe_key(key))
    parts.append(secrets.token_hex(4))
    return "_".join(parts) + ext


def _write_atomic(chunks: Iterable[bytes], dest: str) -> None:
    """Write ``chunks`` to ``dest`` through a ``.part`` file; nothing is left behind on failure."""
    partial = dest + ".part"
    try:
        with open(partial, "wb") as fh:
            for chunk in chunks:
                fh.write(chunk)
        os.replace(partial, dest)
    except BaseException:
        if os.path.exists(partial):
            os.remove(partial)
        raise


class CoverLocalizer:
    """Downloads remote covers into ``uploads_dir`` and returns ``<url_prefix>/<file>`` references."""

    def __init__(self, uploads_dir: Optional[str] = None, url_prefix: Optional[str] = None,
                 client: Optional[httpx.Client] = None, max_redirects: Optional[int] = None,
                 timeout: Optional[float] = None, user_agent: Optional[str] = None,
                 referer: Optional[str] = None) -> None:
        self.uploads_dir = uploads_dir or settings.uploads_dir
        self.url_prefix = (url_prefix or settings.uploads_url_prefix).rstrip("/")
        self.max_redirects = settings.cover_max_redirects if max_redirects is None else max_redirects
        self.timeout = settings.cover_timeout if timeout is None else timeout
        self.user_agent = user_agent or settings.cover_user_agent
        self.referer = referer or settings.cover_referer
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=False)
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    # ------------------------- Public API ------------------------- #
    def localize(self, url: Optional[str], key: Optional[str] = None) -> Optional[str]:
        """Return a local reference for ``url``, or ``url`` itself when it is not remote or cannot be fetched.

        Every call downloads into a fresh file named ``<ms timestamp>_<key>_<random><ext>``.
        """
        if not is_remote(url):
            return url
        return self._localize_to(url, _unique_name(_extension_for(url), key))

    def localize_deterministic(self, url: Optional[str], filename: str) -> Optional[str]:
        """Like ``localize`` but with a caller-chosen file name; an existing file is reused without a request."""
        if not is_remote(url):
            return url
        if os.path.exists(os.path.join(self.uploads_dir, filename)):
            logger.info("Cover already present, skipping download: %s", filename)
            return self.reference_for(filename)
        return self._localize_to(url, filename)

    def reference_for(self, filename: str) -> str:
        return f"{self.url_prefix}/{filename}"

    def store_upload(self, fileobj: BinaryIO, original_name: Optional[str] = None) -> str:
        """Save an uploaded image under a fresh name and return its local reference."""
        filename = _unique_name(_image_extension(original_name))
        os.makedirs(self.uploads_dir, exist_ok=True)
        _write_atomic(iter(lambda: fileobj.read(UPLOAD_CHUNK_SIZE), b""), os.path.join(self.uploads_dir, filename))
        logger.info("Uploaded cover saved as %s", filename)
        return self.reference_for(filename)

    # ------------------------- Download ------------------------- #
    def _localize_to(self, url: str, filename: str) -> str:
        dest = os.path.join(self.uploads_dir, filename)
        try:
            os.makedirs(self.uploads_dir, exist_ok=True)
            final_url = self.download(url, dest)
        except (httpx.HTTPError, httpx.StreamError, httpx.InvalidURL, CoverDownloadError, OSError, ValueError) as e:
            logger.warning("Cover download failed for %s, keeping remote URL: %s", url, e)
            return url
        logger.info("Cover saved %s -> %s", final_url, filename)
        return self.reference_for(filename)

    def download(self, url: str, dest: str) -> str:
        """Fetch ``url`` into ``dest`` following at most ``max_redirects`` redirects.

        Returns the URL the image was finally served from. Raises on any failure
        and leaves no partial file behind.
        """
        current = url
        for _ in range(self.max_redirects + 1):
            with self.client.stream("GET", current, headers=self._headers(),
                                    timeout=self.timeout, follow_redirects=False) as response:
                if response.status_code in REDIRECT_STATUSES:
                    location = response.headers.get("location")
                    if not location:
                        raise CoverDownloadError(f"HTTP {response.status_code} without Location from {current}")
                    current = urljoin(current, location)
                    logger.debug("Following redirect to %s", current)
                    continue
                if response.status_code != 200:
                    raise CoverDownloadError(f"HTTP {response.status_code} from {current}")
                _write_atomic(response.iter_bytes(), dest)
                return current
        raise CoverDownloadError(f"More than {self.max_redirects} redirects from {url}")

    def _headers(self) -> dict:
        return {
            "User-Agent": self.user_agent,
            "Referer": self.referer,
            "Accept": "image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
        }

