"""
Request and file validation.

``FieldValidator`` collects field-level errors for simple presence/format
checks. ``FileValidator`` inspects raw upload bytes against the policy of the
target purpose; it sniffs the content with Pillow and never trusts the
declared filename or content type.
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from PIL import Image, UnidentifiedImageError

from .configuration import PurposePolicy
from .models import ImagePurpose

logger = logging.getLogger(__name__)

# What Pillow raises for content it cannot parse
DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError, EOFError, struct.error)

INVALID_TYPE_REASON = "Invalid file type. Only JPEG, PNG, and WebP images are allowed."

# Multi-picture JPEGs from phone cameras; the primary image is a baseline JPEG
_FORMAT_ALIASES = {"MPO": "JPEG"}


class FieldValidator:
    """Accumulates ``{field: message}`` errors; the first error per field wins."""

    def __init__(self) -> None:
        self._errors: Dict[str, str] = {}

    @property
    def valid(self) -> bool:
        return not self._errors

    @property
    def errors(self) -> Dict[str, str]:
        return dict(self._errors)

    def add_error(self, field: str, message: str) -> None:
        self._errors.setdefault(field, message)

    def check(self, ok: bool, field: str, message: str) -> None:
        if not ok:
            self.add_error(field, message)


@dataclass(frozen=True)
class FileValidation:
    valid: bool
    mime_type: Optional[str] = None
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def reject(cls, reason: str) -> "FileValidation":
        return cls(valid=False, reason=reason)


class FileValidator:
    """
    Accept/reject verdicts for uploaded image bytes.

    Checks, in order: non-empty payload, size ceiling, a Pillow ``open`` and
    ``verify()`` pass, the sniffed MIME type against the purpose's
    allow-list, then dimension sanity. Bad content yields a rejection value;
    only infrastructure errors such as ``MemoryError`` propagate.
    """

    def __init__(
        self,
        policies: Mapping[ImagePurpose, PurposePolicy],
        min_dimension: int = 1,
        max_pixels: int = 40_000_000,
    ) -> None:
        self.policies = policies
        self.min_dimension = min_dimension
        self.max_pixels = max_pixels

    def validate(self, data: bytes, declared_filename: str, purpose: ImagePurpose) -> FileValidation:
        policy = self.policies[purpose]

        if not data:
            return FileValidation.reject("File is empty.")

        if len(data) > policy.max_bytes:
            max_mb = policy.max_bytes / (1024 * 1024)
            return FileValidation.reject(
                f"File size too large. Maximum {max_mb:g}MB allowed for {purpose.value} images."
            )

        try:
            with Image.open(io.BytesIO(data)) as img:
                image_format = (img.format or "").upper()
                image_format = _FORMAT_ALIASES.get(image_format, image_format)
                width, height = img.size
                img.verify()
        except DECODE_ERRORS as exc:
            logger.info(f"Rejected {declared_filename!r} for {purpose.value}: {exc}")
            return FileValidation.reject(INVALID_TYPE_REASON)

        mime_type = Image.MIME.get(image_format)
        if mime_type not in policy.allowed_mime_types:
            logger.info(f"Rejected {declared_filename!r} for {purpose.value}: sniffed type {mime_type or image_format!r}")
            return FileValidation.reject(INVALID_TYPE_REASON)

        if width < self.min_dimension or height < self.min_dimension:
            return FileValidation.reject(
                f"Image dimensions {width}x{height} are too small. Minimum {self.min_dimension}px per side."
            )

        if width * height > self.max_pixels:
            return FileValidation.reject(
                f"Image dimensions {width}x{height} exceed the {self.max_pixels} pixel limit."
            )

        return FileValidation(
            valid=True,
            mime_type=mime_type,
            format=image_format.lower(),
            width=width,
            height=height,
        )
