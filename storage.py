"""Blob storage for uploaded and generated images.

Files land under ``<root>/<bucket>/<folder>/<random>.<ext>`` and are
addressed by ``<public_base_url>/<bucket>/<folder>/<random>.<ext>``.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

import requests

from errors import ProviderError, ValidationError

log = logging.getLogger(__name__)

COMPETITOR_BUCKET = "competitor_images"
PROJECT_BUCKET = "project_images"
AD_BUCKET = "ad_images"
BUCKETS = (COMPETITOR_BUCKET, PROJECT_BUCKET, AD_BUCKET)
MAX_DOWNLOAD_BYTES = 20 * 1024 * 1024

_IMAGE_REF_PREFIXES = ("data:image/", "http://", "https://")


def is_image_reference(ref: Optional[str]) -> bool:
    """Prefix check only; the content itself is never inspected."""
    return bool(ref) and ref.strip().startswith(_IMAGE_REF_PREFIXES)


def to_data_uri(data: bytes, filename: str) -> str:
    mime = mimetypes.guess_type(filename)[0] or "image/png"
    if not mime.startswith("image/"):
        raise ValidationError(f"{filename} is not an image")
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def load_image_reference(ref: str) -> str:
    """Accept a data URI, an http(s) URL or a local file path."""
    if is_image_reference(ref):
        return ref.strip()
    path = Path(ref).expanduser()
    if not path.is_file():
        raise ValidationError(f"Image not found: {ref}")
    return to_data_uri(path.read_bytes(), path.name)


class LocalObjectStorage:
    """Stores files on local disk and hands back public URLs for them."""

    def __init__(self, root: Path, public_base_url: str = "/static/uploads") -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def upload(self, bucket: str, data: bytes, filename: str, folder: str = "") -> str:
        if bucket not in BUCKETS:
            raise ValidationError(f"Unknown bucket: {bucket}")
        ext = Path(filename).suffix.lstrip(".") or "png"
        name = f"{uuid.uuid4().hex}.{ext}"
        rel = f"{folder.strip('/')}/{name}" if folder.strip("/") else name

        target = self.root / bucket / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        log.info("Stored %d bytes in %s/%s", len(data), bucket, rel)
        return f"{self.public_base_url}/{bucket}/{rel}"

    def upload_ad_image(self, data: bytes, filename: str) -> str:
        return self.upload(AD_BUCKET, data, filename)

    def read_as_data_uri(self, url: str) -> Optional[str]:
        """Inline a file we serve ourselves; None for URLs outside this store.

        The provider cannot reach our public URLs, so uploaded images are
        sent to it as data URIs instead.
        """
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            return None
        root = self.root.resolve()
        path = (root / url[len(prefix):]).resolve()
        if root not in path.parents or not path.is_file():
            raise ValidationError(f"Uploaded image not found: {url}")
        return to_data_uri(path.read_bytes(), path.name)


def fetch_image(url: str, timeout: int = 90, max_bytes: int = MAX_DOWNLOAD_BYTES) -> bytes:
    with requests.get(url, timeout=timeout, stream=True) as resp:
        resp.raise_for_status()
        chunks = []
        size = 0
        for chunk in resp.iter_content(chunk_size=65536):
            size += len(chunk)
            if size > max_bytes:
                raise ProviderError(f"Image at {url} is larger than {max_bytes} bytes")
            chunks.append(chunk)
    return b"".join(chunks)


def save_image(url: str, path: Path, timeout: int = 90) -> Path:
    """Download a generated creative to a local file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(fetch_image(url, timeout=timeout))
    return path


def persist_creative(url: str, storage: LocalObjectStorage, filename: str = "creative.png") -> str:
    """Copy a provider-hosted creative into our own storage before it expires."""
    return storage.upload_ad_image(fetch_image(url), filename)
