# app/services/image_service.py
import asyncio
import hashlib
import io
import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import aiofiles
from PIL import Image

from app.core.errors import AppError, ProcessingError, StorageError

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "JPEG"
OUTPUT_EXTENSION = "jpg"
DEFAULT_WIDTHS = (1024, 800)


@dataclass
class RenderedVariant:
    resolution: str
    path: str  # public path, relative to the output root mount
    md5: str
    size: int
    width: int
    height: int


def sanitize_name(name: str) -> str:
    """Collapse every run of non-alphanumerics to '_' and trim the ends"""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_")
    return cleaned or "image"


def target_size(source: Tuple[int, int], target_width: int) -> Tuple[int, int]:
    """Size that fits target_width keeping the aspect ratio, never upscaling"""
    width, height = source
    if width <= target_width:
        return width, height
    target_height = max(1, round(target_width * height / width))
    return target_width, target_height


def _decode(content: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(content)) as candidate:
            candidate.verify()
        image = Image.open(io.BytesIO(content))
        image.load()
        return image
    except Exception as e:
        # truncated data can surface as OSError, SyntaxError or struct.error
        raise ProcessingError("Invalid image format or corrupted image file") from e


def _encode_variant(image: Image.Image, target_width: int, quality: int) -> Tuple[bytes, int, int]:
    width, height = target_size(image.size, target_width)
    resized = image if (width, height) == image.size else image.resize((width, height), Image.Resampling.LANCZOS)
    if resized.mode != "RGB":
        resized = resized.convert("RGB")

    buffer = io.BytesIO()
    resized.save(buffer, OUTPUT_FORMAT, quality=quality)
    return buffer.getvalue(), width, height


class VariantRenderer:
    """Produce resized, content-addressed JPEG copies of a source image"""

    def __init__(
        self,
        output_dir: str,
        url_prefix: str = "/output",
        widths: Sequence[int] = DEFAULT_WIDTHS,
        quality: int = 85,
    ):
        self.output_dir = output_dir
        self.url_prefix = url_prefix.rstrip("/")
        self.widths = list(widths)
        self.quality = quality

    async def render_file(self, source_path: str, base_name: str, widths: Optional[Sequence[int]] = None) -> List[RenderedVariant]:
        try:
            async with aiofiles.open(source_path, "rb") as source_file:
                content = await source_file.read()
        except OSError as e:
            raise StorageError(f"Failed to read image file: {source_path}") from e
        return await self.render(content, base_name, widths)

    async def render(self, content: bytes, base_name: str, widths: Optional[Sequence[int]] = None) -> List[RenderedVariant]:
        """
        Render one variant per width, in order.

        The source is decoded and validated before anything is written. A failure
        on a later width leaves earlier files on disk; they are content-addressed
        so a later render of the same bytes reuses the same paths.
        """
        widths = list(widths or self.widths)
        try:
            image = await asyncio.to_thread(_decode, content)
            folder = sanitize_name(base_name)
            logger.info(f"Rendering {len(widths)} variants of '{folder}' from {image.size[0]}x{image.size[1]} source")

            variants = []
            for width in widths:
                variants.append(await self._render_variant(image, folder, width))
            return variants
        except AppError:
            raise
        except Exception as e:
            raise ProcessingError(f"Failed to process image: {e}") from e

    async def _render_variant(self, image: Image.Image, folder: str, width: int) -> RenderedVariant:
        resolution = str(width)
        encoded, out_width, out_height = await asyncio.to_thread(_encode_variant, image, width, self.quality)
        md5 = hashlib.md5(encoded).hexdigest()
        filename = f"{md5}.{OUTPUT_EXTENSION}"

        resolution_dir = os.path.join(self.output_dir, folder, resolution)
        output_path = os.path.join(resolution_dir, filename)
        try:
            os.makedirs(resolution_dir, exist_ok=True)
            async with aiofiles.open(output_path, "wb") as out_file:
                await out_file.write(encoded)
        except OSError as e:
            logger.error(f"Failed to write variant {output_path}: {e}")
            raise StorageError(f"Failed to write image variant {resolution}: {e}") from e

        logger.debug(f"Wrote {output_path} ({len(encoded)} bytes, {out_width}x{out_height})")
        return RenderedVariant(
            resolution=resolution,
            path=f"{self.url_prefix}/{folder}/{resolution}/{filename}",
            md5=md5,
            size=len(encoded),
            width=out_width,
            height=out_height,
        )

    def resolve_path(self, public_path: str) -> str:
        """Map a stored public path back to its location under the output root"""
        relative = public_path
        if self.url_prefix and relative.startswith(self.url_prefix + "/"):
            relative = relative[len(self.url_prefix) + 1:]
        return os.path.join(self.output_dir, *relative.lstrip("/").split("/"))
