# app/services/fetch_service.py
"""Resolve a task's source (remote URL or inline data URI) into local bytes."""

import base64
import binascii
import logging
import mimetypes
import os
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import unquote, urlparse

import aiofiles
import aiofiles.os
import httpx

from app.core.errors import ProcessingError, StorageError

logger = logging.getLogger(__name__)

DATA_URI_PREFIX = "data:"
BASE64_MARKER = ";base64,"
DEFAULT_DOWNLOAD_NAME = "downloaded-image"
INLINE_NAME = "inline-image"

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class FetchedSource:
    path: str
    original_name: str
    content_type: str
    size: int
    content: bytes


def _extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".jpg"


def _media_type(header_value: Optional[str]) -> str:
    """'image/jpeg; charset=binary' -> 'image/jpeg'"""
    if not header_value:
        return ""
    return header_value.split(";", 1)[0].strip().lower()


class ContentFetcher:
    """Fetch source images and stage them in the scratch directory"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        tmp_dir: str,
        max_download_mb: int,
        allowed_types: Iterable[str],
    ):
        self.client = client
        self.tmp_dir = tmp_dir
        self.max_download_mb = max_download_mb
        self.max_bytes = max_download_mb * 1024 * 1024
        self.allowed_types = {t.lower() for t in allowed_types}

    async def fetch(self, image_url: Optional[str] = None, image_file: Optional[str] = None) -> FetchedSource:
        """Dispatch on whichever source the task was created with"""
        if image_url and image_file:
            raise ProcessingError("Either imageUrl or imageFile must be provided, but not both")
        if image_file:
            return await self.save_base64_file(image_file)
        if image_url:
            return await self.download_from_url(image_url)
        raise ProcessingError("No image source provided")

    # ------------------------------------------------------------------
    # Remote URL
    # ------------------------------------------------------------------

    async def download_from_url(self, url: str) -> FetchedSource:
        self._validate_url(url)
        try:
            async with self.client.stream("GET", url) as response:
                if not response.is_success:
                    raise ProcessingError(
                        f"Failed to download file from URL: HTTP {response.status_code} {response.reason_phrase}".rstrip()
                    )

                content_type = _media_type(response.headers.get("content-type"))
                if not content_type:
                    raise ProcessingError("Failed to download file from URL: missing content type")
                self._validate_type(content_type)

                declared = response.headers.get("content-length")
                if declared and declared.isdigit():
                    self._validate_size(int(declared))

                chunks = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    self._validate_size(received)
                    chunks.append(chunk)
                content = b"".join(chunks)
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout fetching {url}: {e}")
            raise ProcessingError(f"Timed out downloading file from URL: {url}") from e
        except httpx.HTTPError as e:
            logger.warning(f"HTTP error fetching {url}: {e}")
            raise ProcessingError(f"Network error downloading file from URL: {e}") from e

        original_name = os.path.basename(unquote(urlparse(url).path)) or DEFAULT_DOWNLOAD_NAME
        path = await self._write_scratch(original_name, content_type, content)
        logger.info(f"Downloaded {len(content)} bytes ({content_type}) from {url}")

        return FetchedSource(
            path=path,
            original_name=original_name,
            content_type=content_type,
            size=len(content),
            content=content,
        )

    # ------------------------------------------------------------------
    # Inline data URI
    # ------------------------------------------------------------------

    async def save_base64_file(self, payload: str) -> FetchedSource:
        # Reject oversized payloads from their encoded length, before decoding them
        _, sep, data = payload.partition(BASE64_MARKER)
        if sep:
            self._validate_size(len(data.rstrip("=\r\n ")) * 3 // 4)

        content_type, content = self.parse_data_uri(payload)
        self._validate_type(content_type)
        self._validate_size(len(content))

        original_name = f"{INLINE_NAME}{_extension_for(content_type)}"
        path = await self._write_scratch(original_name, content_type, content)
        logger.info(f"Decoded inline payload: {len(content)} bytes ({content_type})")

        return FetchedSource(
            path=path,
            original_name=original_name,
            content_type=content_type,
            size=len(content),
            content=content,
        )

    @staticmethod
    def parse_data_uri(payload: str):
        """Split 'data:<mime>;base64,<data>' into (mime, decoded bytes)"""
        if not payload.startswith(DATA_URI_PREFIX):
            raise ProcessingError("Invalid image data: expected a 'data:<mime>;base64,<data>' URI")

        header, sep, data = payload[len(DATA_URI_PREFIX):].partition(BASE64_MARKER)
        if not sep:
            raise ProcessingError("Invalid image data: missing ';base64,' marker")

        content_type = header.strip().lower()
        if not content_type:
            raise ProcessingError("Invalid image data: missing MIME type")

        data = re.sub(r"\s+", "", data)
        if not data:
            raise ProcessingError("Invalid image data: missing base64 payload")

        try:
            content = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProcessingError(f"Invalid image data: base64 decoding failed ({e})") from e

        if not content:
            raise ProcessingError("Invalid image data: payload is empty")

        return content_type, content

    # ------------------------------------------------------------------
    # Scratch files
    # ------------------------------------------------------------------

    async def cleanup(self, path: Optional[str]) -> None:
        """Remove a scratch file; failures are logged, never raised"""
        if not path:
            return
        try:
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.remove(path)
                logger.debug(f"Removed scratch file {path}")
        except OSError as e:
            logger.warning(f"Failed to cleanup temp file {path}: {e}")

    def generate_unique_filename(self, original_name: str, content_type: str) -> str:
        stem, ext = os.path.splitext(original_name)
        if not ext:
            ext = _extension_for(content_type)
        stem = re.sub(r"[^A-Za-z0-9.-]", "_", stem) or "image"
        timestamp = int(time.time() * 1000)
        suffix = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(6))
        return f"{stem}_{timestamp}_{suffix}{ext.lower()}"

    async def _write_scratch(self, original_name: str, content_type: str, content: bytes) -> str:
        path = os.path.join(self.tmp_dir, self.generate_unique_filename(original_name, content_type))
        try:
            os.makedirs(self.tmp_dir, exist_ok=True)
            async with aiofiles.open(path, "wb") as out_file:
                await out_file.write(content)
        except OSError as e:
            logger.error(f"Failed to write scratch file {path}: {e}")
            raise StorageError(f"Failed to save source image: {e}") from e
        return path

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _validate_url(self, url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ProcessingError("Invalid URL format")

    def _validate_type(self, content_type: str) -> None:
        if content_type not in self.allowed_types:
            raise ProcessingError(
                f"Invalid image type: {content_type}. Allowed types: {', '.join(sorted(self.allowed_types))}"
            )

    def _validate_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise ProcessingError(f"File size exceeds maximum allowed size of {self.max_download_mb}MB")
