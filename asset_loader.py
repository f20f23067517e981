"""Fetch and decode image assets (photos, logos, backgrounds) for card rendering."""
from __future__ import annotations

import base64
import binascii
import logging
import threading
import time
from io import BytesIO
from pathlib import Path
from typing import Dict, Optional, Union
from urllib.parse import unquote, urlparse

import fitz  # PyMuPDF
import requests
from PIL import Image, ImageFile, UnidentifiedImageError

from card_errors import AssetLoadError

ImageFile.LOAD_TRUNCATED_IMAGES = True

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 8.0
DOWNLOAD_CHUNK_SIZE = 64 * 1024
PDF_RASTER_DPI = 300


def rasterize_pdf(data: bytes, dpi: int = PDF_RASTER_DPI, page_index: int = 0) -> Image.Image:
    """Render one page of a PDF document into a Pillow image."""

    doc = fitz.open(stream=data, filetype="pdf")
    try:
        if page_index < 0 or page_index >= doc.page_count:
            raise ValueError(f"PDF page_index out of range: {page_index}")
        pix = doc[page_index].get_pixmap(dpi=dpi, alpha=False)
        return Image.open(BytesIO(pix.tobytes("png"))).convert("RGB")
    finally:
        doc.close()


def decode_image(data: bytes) -> Image.Image:
    if data[:5] == b"%PDF-":
        return rasterize_pdf(data).convert("RGBA")
    image = Image.open(BytesIO(data))
    image.load()
    return image.convert("RGBA")


class AssetLoader:
    """Loads assets by URL, path or data URI and caches the decoded images.

    A loader is shared by every card of one export job; the cache is guarded
    by a lock so concurrent renders can use it.  Failures are cached too, so
    an unreachable school logo is only requested once per job.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, base_dir: Optional[Union[str, Path]] = None):
        self.timeout = timeout
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self._cache: Dict[str, Union[Image.Image, AssetLoadError]] = {}
        self._lock = threading.Lock()

    def load(self, source: str) -> Image.Image:
        """Return an RGBA copy of the image at ``source``.

        Raises :class:`AssetLoadError` when the asset cannot be fetched or
        decoded.
        """

        key = (source or "").strip()
        if not key:
            raise AssetLoadError(source or "", "empty asset reference")

        with self._lock:
            cached = self._cache.get(key)
        if cached is None:
            try:
                cached = decode_image(self._fetch_bytes(key))
            except AssetLoadError as exc:
                cached = exc
            except (OSError, UnidentifiedImageError, Image.DecompressionBombError, ValueError, RuntimeError) as exc:
                cached = AssetLoadError(key, f"cannot decode image ({exc})")
            with self._lock:
                self._cache.setdefault(key, cached)

        if isinstance(cached, AssetLoadError):
            raise cached
        return cached.copy()

    def _fetch_bytes(self, source: str) -> bytes:
        if source.startswith("data:"):
            return self._decode_data_uri(source)

        parsed = urlparse(source)
        if parsed.scheme in {"http", "https"}:
            return self._download(source)
        if parsed.scheme == "file":
            return self._read_file(Path(unquote(parsed.path)))
        return self._read_file(Path(source))

    def _download(self, url: str) -> bytes:
        logger.debug("Fetching asset %s", url)
        # ``timeout`` bounds each socket wait; the deadline bounds the whole body.
        deadline = time.monotonic() + self.timeout
        chunks = []
        try:
            response = requests.get(url, timeout=self.timeout, stream=True)
            try:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    chunks.append(chunk)
                    if time.monotonic() > deadline:
                        raise AssetLoadError(url, f"timed out after {self.timeout:g}s")
            finally:
                response.close()
        except requests.Timeout as exc:
            raise AssetLoadError(url, f"timed out after {self.timeout:g}s") from exc
        except requests.RequestException as exc:
            raise AssetLoadError(url, str(exc)) from exc
        return b"".join(chunks)

    def _read_file(self, path: Path) -> bytes:
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        try:
            return path.read_bytes()
        except OSError as exc:
            raise AssetLoadError(str(path), exc.strerror or str(exc)) from exc

    @staticmethod
    def _decode_data_uri(source: str) -> bytes:
        header, _, payload = source.partition(",")
        if not payload:
            raise AssetLoadError(source[:32], "data URI has no payload")
        if header.endswith(";base64"):
            try:
                return base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise AssetLoadError(source[:32], "invalid base64 payload") from exc
        return unquote(payload).encode("latin-1")
