import asyncio
import base64
import binascii
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import PurePosixPath
from typing import Callable, Protocol, Sequence
from urllib.parse import unquote_to_bytes, urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from app.errors import (
    CommerceAPIError,
    ImageFetchError,
    ImageUploadError,
    UnsupportedImageFormat,
    WatermarkFailure,
)
from app.models.conversation import ImageFailure, ImageRef, UploadedImage
from app.services.business_settings import WatermarkConfig
from app.services.watermark import apply_watermark

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(?:;[^;,]*)*),(?P<payload>.*)$", re.DOTALL)
GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


class MediaHost(Protocol):
    async def upload_media(self, data: bytes, filename: str, mime_type: str) -> dict: ...


@dataclass
class IngestionResult:
    uploaded: list[UploadedImage] = field(default_factory=list)
    failures: list[ImageFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def sniff_mime(data: bytes) -> str | None:
    """Guess an image MIME type from the bytes themselves."""
    try:
        with Image.open(BytesIO(data)) as img:
            return Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError):
        return None


def decode_data_uri(data_uri: str) -> tuple[bytes, str]:
    match = DATA_URI_RE.match(data_uri.strip())
    if not match:
        raise UnsupportedImageFormat("Invalid data URI. Could not determine MIME type.")
    mime = match.group("mime").lower()
    payload = match.group("payload")
    try:
        if ";base64" in match.group("params").lower():
            data = base64.b64decode(payload, validate=True)
        else:
            data = unquote_to_bytes(payload)
    except (binascii.Error, ValueError) as exc:
        raise UnsupportedImageFormat(f"Data URI payload is not valid base64: {exc}") from exc
    return data, mime


def _resolve_mime(declared: str, data: bytes) -> str:
    declared = declared.split(";", 1)[0].strip().lower()
    if declared in GENERIC_TYPES:
        declared = sniff_mime(data) or ""
    if not declared:
        raise UnsupportedImageFormat("Could not determine the image type.")
    if not declared.startswith("image/"):
        raise UnsupportedImageFormat(f"'{declared}' is not an image type.")
    return declared


def _filename_for(ref: ImageRef, index: int, mime: str) -> str:
    ext = mimetypes.guess_extension(mime) or ".jpg"
    if ext == ".jpe":
        ext = ".jpg"
    name = ref.filename
    if not name and ref.url:
        name = PurePosixPath(urlparse(ref.url).path).name
    if not name:
        name = f"product_image_{index + 1}{ext}"
    if not PurePosixPath(name).suffix:
        name += ext
    return name


class ImageIngestionPipeline:
    """Turns image references into uploaded media records.

    Each reference succeeds or fails on its own; uploads in one batch run
    concurrently and the output keeps the input order.
    """

    def __init__(self, media_host: MediaHost, http_client: httpx.AsyncClient):
        self._media_host = media_host
        self._http = http_client

    async def ingest(
        self,
        refs: Sequence[ImageRef],
        watermark: WatermarkConfig | None = None,
        apply_watermark_requested: bool = False,
        alt_texts: Sequence[str | None] = (),
        on_uploaded: Callable[[UploadedImage], None] | None = None,
    ) -> IngestionResult:
        """Upload every ref. ``on_uploaded`` sees each image as soon as it lands,
        so a caller cut short still knows what reached the media host."""
        result = IngestionResult()
        overlay = None
        needs_upload = any(ref.media_id is None for ref in refs)
        if watermark is not None and apply_watermark_requested and needs_upload:
            try:
                overlay = await self._fetch_overlay(watermark)
            except WatermarkFailure as exc:
                logger.warning("Watermark disabled for this batch: %s", exc.message)
                result.warnings.append(exc.message)

        outcomes = await asyncio.gather(*(
            self._ingest_one(
                ref,
                index,
                watermark if overlay is not None else None,
                overlay,
                alt_texts[index] if index < len(alt_texts) else None,
                result.warnings,
                on_uploaded,
            )
            for index, ref in enumerate(refs)
        ))
        for outcome in outcomes:
            if isinstance(outcome, ImageFailure):
                result.failures.append(outcome)
            else:
                result.uploaded.append(outcome)
        return result

    async def _ingest_one(
        self,
        ref: ImageRef,
        index: int,
        watermark: WatermarkConfig | None,
        overlay: bytes | None,
        alt_text: str | None,
        warnings: list[str],
        on_uploaded: Callable[[UploadedImage], None] | None = None,
    ) -> UploadedImage | ImageFailure:
        if ref.media_id is not None:
            image = UploadedImage(
                media_id=ref.media_id, url=ref.url, alt_text=alt_text or ref.alt_text, source=ref.fingerprint(),
            )
        else:
            try:
                record = await self._store(ref, index, watermark, overlay, warnings)
                image = UploadedImage(
                    media_id=record["id"],
                    url=record.get("source_url"),
                    alt_text=alt_text or ref.alt_text,
                    source=ref.fingerprint(),
                )
            except (ImageFetchError, UnsupportedImageFormat, ImageUploadError) as exc:
                logger.warning("Image %s failed: %s", ref.describe(), exc.message)
                return ImageFailure(reference=ref, kind=exc.kind, detail=exc.message)
            except Exception as exc:
                logger.exception("Image %s failed unexpectedly", ref.describe())
                return ImageFailure(reference=ref, kind=ImageUploadError.kind, detail=f"Upload failed: {exc}")
        if on_uploaded is not None:
            on_uploaded(image)
        return image

    async def _store(
        self,
        ref: ImageRef,
        index: int,
        watermark: WatermarkConfig | None,
        overlay: bytes | None,
        warnings: list[str],
    ) -> dict:
        data, mime = await self._load(ref)
        filename = _filename_for(ref, index, mime)
        if watermark is not None and overlay is not None:
            try:
                data = await asyncio.to_thread(apply_watermark, data, overlay, watermark)
                mime = "image/jpeg"
                filename = str(PurePosixPath(filename).with_suffix(".jpg"))
            except WatermarkFailure as exc:
                logger.warning("Uploading %s without watermark: %s", ref.describe(), exc.message)
                warnings.append(exc.message)
        return await self._upload(data, filename, mime)

    async def _load(self, ref: ImageRef) -> tuple[bytes, str]:
        if ref.data is not None:
            return ref.data, _resolve_mime("", ref.data)
        if ref.data_uri is not None:
            data, mime = decode_data_uri(ref.data_uri)
            return data, _resolve_mime(mime, data)
        data, content_type = await self._fetch(ref.url or "")
        return data, _resolve_mime(content_type, data)

    async def _fetch(self, url: str) -> tuple[bytes, str]:
        try:
            response = await self._http.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"Could not fetch {url}: {exc}") from exc
        if not response.is_success:
            raise ImageFetchError(f"Could not fetch {url}: status {response.status_code}")
        return response.content, response.headers.get("content-type", "")

    async def _fetch_overlay(self, watermark: WatermarkConfig) -> bytes:
        if watermark.image_url.startswith("data:"):
            try:
                return decode_data_uri(watermark.image_url)[0]
            except UnsupportedImageFormat as exc:
                raise WatermarkFailure(f"Watermark image unreadable: {exc.message}") from exc
        try:
            data, _ = await self._fetch(watermark.image_url)
        except ImageFetchError as exc:
            raise WatermarkFailure(f"Watermark image unavailable: {exc.message}") from exc
        return data

    async def _upload(self, data: bytes, filename: str, mime: str) -> dict:
        try:
            return await self._media_host.upload_media(data, filename, mime)
        except (CommerceAPIError, httpx.HTTPError) as exc:
            raise ImageUploadError(f"Upload of {filename} failed: {exc}") from exc
