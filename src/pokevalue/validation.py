"""Checks applied to uploaded card images before a submission is created."""

from __future__ import annotations

import base64
import binascii
import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from PIL import Image, UnidentifiedImageError

from .errors import ImageTooLarge, InvalidImage

DATA_URI_RE = re.compile(r"^data:(?P<mime>image/[a-zA-Z0-9.+-]+);base64,(?P<data>.*)$", re.DOTALL)


@dataclass(slots=True)
class ValidatedImage:
    """An image payload that passed validation."""

    data_uri: str
    mime_type: str
    size_bytes: int
    width: int
    height: int


def validate_image_data_uri(
    data_uri: object,
    *,
    max_bytes: int,
    accepted_types: Iterable[str],
) -> ValidatedImage:
    """Check that ``data_uri`` is a base64 image of an accepted type under ``max_bytes``.

    Raises ``ImageTooLarge`` for oversized payloads and ``InvalidImage`` for
    anything else that is not a readable image.
    """

    if not isinstance(data_uri, str) or not data_uri:
        raise InvalidImage("Invalid imageDataUri format")
    match = DATA_URI_RE.match(data_uri)
    if not match:
        raise InvalidImage("Invalid imageDataUri format")

    # The declared type is only a label; the decoded bytes decide.
    accepted = {value.lower() for value in accepted_types}
    encoded = "".join(match.group("data").split())
    # Four base64 characters carry three bytes.
    if len(encoded) // 4 * 3 > max_bytes + 2:
        raise ImageTooLarge(f"Image data is too large (max {_megabytes(max_bytes)})")
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImage("Image data is not valid base64") from exc
    if not raw:
        raise InvalidImage("Image data is empty")
    if len(raw) > max_bytes:
        raise ImageTooLarge(f"Image data is too large (max {_megabytes(max_bytes)})")

    width, height, actual_type = _inspect(raw)
    if actual_type not in accepted:
        raise InvalidImage(f"Unsupported image type {actual_type}")
    return ValidatedImage(
        data_uri=f"data:{actual_type};base64,{encoded}",
        mime_type=actual_type,
        size_bytes=len(raw),
        width=width,
        height=height,
    )


def encode_image_file(path: Path) -> str:
    """Read an image from disk and return it as a data URI."""

    raw = path.read_bytes()
    _, _, mime_type = _inspect(raw)
    return f"data:{mime_type};base64,{base64.b64encode(raw).decode('ascii')}"


def _inspect(raw: bytes) -> tuple[int, int, str]:
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img.verify()
            size = img.size
            fmt = img.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise InvalidImage("Payload is not a readable image") from exc
    # Camera JPEGs with a Multi-Picture segment open as MPO.
    if fmt == "MPO":
        fmt = "JPEG"
    mime_type = Image.MIME.get(fmt or "", "")
    if not mime_type:
        raise InvalidImage(f"Unrecognised image format {fmt}")
    return size[0], size[1], mime_type.lower()


def _megabytes(value: int) -> str:
    return f"{value / (1024 * 1024):g}MB"
