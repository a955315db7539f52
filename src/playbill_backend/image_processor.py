"""
Image normalization for uploaded posters and profile pictures.

Posters keep their aspect ratio inside a bounding box and are never enlarged;
profile pictures are centre-cropped to a square of a fixed size. Output is
re-encoded to the purpose's configured format so stored assets are uniform
regardless of what the client sent.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Mapping

from PIL import Image, ImageOps

from .configuration import PurposePolicy
from .errors import TranscodeError
from .models import ImagePurpose
from .validation import DECODE_ERRORS

logger = logging.getLogger(__name__)

_MIME_TYPES = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

_EXTENSIONS = {
    "jpeg": "jpg",
    "jpg": "jpg",
    "png": "png",
    "webp": "webp",
}

# Pillow encoder names
_ENCODERS = {
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
}


def mime_type_for(image_format: str) -> str:
    return _MIME_TYPES.get(image_format.lower(), "image/jpeg")


def extension_for(image_format: str) -> str:
    return _EXTENSIONS.get(image_format.lower(), "jpg")


@dataclass(frozen=True)
class ProcessedImage:
    buffer: bytes
    format: str
    width: int
    height: int
    size: int

    @property
    def mime_type(self) -> str:
        return mime_type_for(self.format)

    @property
    def extension(self) -> str:
        return extension_for(self.format)


class ImageProcessor:
    """Transcodes validated bytes according to the purpose policy table."""

    def __init__(self, policies: Mapping[ImagePurpose, PurposePolicy]) -> None:
        self.policies = policies

    def process(self, data: bytes, purpose: ImagePurpose) -> ProcessedImage:
        """
        Resize/crop and re-encode an image.

        Args:
            data: Raw image bytes that already passed validation
            purpose: Target purpose selecting the geometry and encoding

        Returns:
            ProcessedImage with the encoded bytes and their dimensions

        Raises:
            TranscodeError: If the bytes cannot be decoded or encoded
        """
        policy = self.policies[purpose]
        try:
            with Image.open(io.BytesIO(data)) as source:
                source.load()
                img = ImageOps.exif_transpose(source)
                img = self._fit(img, policy)
                buffer = self._encode(img, policy)
        except DECODE_ERRORS as exc:
            logger.error(f"Failed to process {purpose.value} image: {exc}")
            raise TranscodeError("Failed to process image. Please try a different image.") from exc

        with Image.open(io.BytesIO(buffer)) as result:
            width, height = result.size

        logger.info(f"Processed {purpose.value} image to {width}x{height} {policy.format} ({len(buffer)} bytes)")
        return ProcessedImage(
            buffer=buffer,
            format=policy.format,
            width=width,
            height=height,
            size=len(buffer),
        )

    def _fit(self, img: Image.Image, policy: PurposePolicy) -> Image.Image:
        if policy.crop_to_square:
            size = policy.square_size or min(img.size)
            return ImageOps.fit(img, (size, size), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))

        max_width = policy.max_width or img.width
        max_height = policy.max_height or img.height
        fitted = img.copy()
        # thumbnail() keeps aspect ratio and never enlarges
        fitted.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
        return fitted

    def _encode(self, img: Image.Image, policy: PurposePolicy) -> bytes:
        encoder = _ENCODERS.get(policy.format, "JPEG")
        if encoder == "JPEG" and img.mode != "RGB":
            img = img.convert("RGB")
        elif encoder in ("PNG", "WEBP") and img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA")

        output = io.BytesIO()
        save_kwargs = {"quality": policy.quality} if encoder in ("JPEG", "WEBP") else {"optimize": True}
        img.save(output, format=encoder, **save_kwargs)
        return output.getvalue()
