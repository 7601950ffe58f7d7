# storage.py
# -----------------------------
# Image upload adapter (blob store)
# -----------------------------

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import unquote, urlparse

from werkzeug.utils import secure_filename

from config import Settings

logger = logging.getLogger(__name__)

IMAGE_PREFIX = "images/"


def image_key(filename: str) -> str:
    """Blob key for an uploaded file: ``images/<original filename>``.

    Only the basename is kept, so a client-supplied path cannot escape the
    images/ prefix. Two uploads with the same name overwrite each other.
    """
    name = Path(filename.replace("\\", "/")).name
    if not name:
        raise ValueError("Uploaded file has no name.")
    return IMAGE_PREFIX + name


class ImageStore(ABC):
    """Stores item photos and hands back URLs the browser can load."""

    @abstractmethod
    def upload(self, filename: str, data: bytes, content_type: str | None = None) -> str:
        """Store the bytes and return a publicly resolvable URL."""
        ...

    @abstractmethod
    def _delete(self, url: str) -> None:
        ...

    def delete(self, url: str) -> None:
        """Delete the image behind ``url``. Failures are logged, never raised."""
        if not url:
            return
        try:
            self._delete(url)
        except Exception as e:
            logger.warning("Error deleting image %s: %s", url, e)


class LocalImageStore(ImageStore):
    """Keeps images on disk, served by the app under ``/uploads/<name>``."""

    def __init__(self, upload_dir: str | Path = "uploads", base_url: str = "/uploads/") -> None:
        self._upload_dir = Path(upload_dir).expanduser()
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"

    @property
    def upload_dir(self) -> Path:
        return self._upload_dir

    def upload(self, filename: str, data: bytes, content_type: str | None = None) -> str:
        name = secure_filename(image_key(filename)[len(IMAGE_PREFIX):])
        if not name:
            raise ValueError(f"Invalid image file name: {filename!r}")
        self._upload_dir.mkdir(parents=True, exist_ok=True)
        (self._upload_dir / name).write_bytes(data)
        return self._base_url + name

    def _delete(self, url: str) -> None:
        path = urlparse(url).path
        if not path.startswith(self._base_url):
            raise ValueError(f"not a local upload URL: {url}")
        name = secure_filename(unquote(path[len(self._base_url):]))
        (self._upload_dir / name).unlink()


class FirebaseImageStore(ImageStore):
    """Firebase Storage bucket; every uploaded blob is made public."""

    def __init__(self, bucket=None, bucket_name: str = "") -> None:
        self._bucket = bucket
        self._bucket_name = bucket_name

    def _get_bucket(self):
        if self._bucket is None:
            from firebase_admin import storage

            self._bucket = storage.bucket(self._bucket_name or None)
        return self._bucket

    def upload(self, filename: str, data: bytes, content_type: str | None = None) -> str:
        blob = self._get_bucket().blob(image_key(filename))
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        blob.make_public()
        return blob.public_url

    def _delete(self, url: str) -> None:
        bucket = self._get_bucket()
        bucket.blob(blob_path_from_url(url, bucket.name)).delete()


def blob_path_from_url(url: str, bucket_name: str) -> str:
    """Recover the blob path from a public or download URL of ``bucket_name``.

    Accepts ``https://storage.googleapis.com/<bucket>/<path>`` and
    ``https://firebasestorage.googleapis.com/v0/b/<bucket>/o/<quoted path>``.
    """
    parsed = urlparse(url)
    path = parsed.path

    if parsed.netloc == "storage.googleapis.com":
        prefix = f"/{bucket_name}/"
        if path.startswith(prefix):
            return unquote(path[len(prefix):])
    elif parsed.netloc == "firebasestorage.googleapis.com":
        prefix = f"/v0/b/{bucket_name}/o/"
        if path.startswith(prefix):
            return unquote(path[len(prefix):])

    raise ValueError(f"URL does not belong to bucket {bucket_name!r}: {url}")


def create_image_store(settings: Settings) -> ImageStore:
    match settings.backend:
        case "firebase":
            from db import init_firebase

            init_firebase(settings.firebase)
            return FirebaseImageStore(bucket_name=settings.firebase.storage_bucket)
        case _:
            return LocalImageStore(settings.upload_dir)
