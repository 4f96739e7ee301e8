"""
Turns an uploaded photograph into the canonical raster every later stage samples:
fixed size, grayscale, orientation-corrected, contrast-normalized, denoised, sharpened.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import base64
import cv2
import numpy as np

from .config import PreprocessConfig, logger
from .errors import DetectionFailure, ValidationError

_MIME_BY_FORMAT = {"jpeg": "image/jpeg", "png": "image/png"}


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int


def sniff_format(image_bytes: bytes) -> Optional[str]:
    if image_bytes[:3] == b"\xFF\xD8\xFF":
        return "jpeg"
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "png"
    return None


def _read_exif_orientation(image_bytes: bytes) -> Optional[int]:
    """
    Minimal JPEG EXIF orientation reader.
    Returns 1..8 or None if not found/unsupported.
    """
    if len(image_bytes) < 4 or image_bytes[0:2] != b"\xFF\xD8":
        return None

    i = 2
    length = len(image_bytes)
    while i + 4 <= length:
        if image_bytes[i] != 0xFF:
            break
        marker = image_bytes[i + 1]
        i += 2

        # Start of scan or end of image
        if marker in (0xDA, 0xD9):
            break
        if i + 2 > length:
            break
        seg_len = int.from_bytes(image_bytes[i : i + 2], "big", signed=False)
        if seg_len < 2:
            break
        seg_start = i + 2
        seg_end = i + seg_len
        if seg_end > length:
            break

        if marker == 0xE1 and seg_end - seg_start >= 10:
            header = image_bytes[seg_start : seg_start + 6]
            if header == b"Exif\x00\x00":
                return _orientation_from_tiff(image_bytes[seg_start + 6 : seg_end])

        i = seg_end

    return None


def _orientation_from_tiff(tiff: bytes) -> Optional[int]:
    if len(tiff) < 8:
        return None

    endian = tiff[0:2]
    if endian == b"II":
        byte_order = "little"
    elif endian == b"MM":
        byte_order = "big"
    else:
        return None

    if int.from_bytes(tiff[2:4], byte_order) != 0x2A:
        return None

    ifd0_offset = int.from_bytes(tiff[4:8], byte_order)
    if ifd0_offset + 2 > len(tiff):
        return None
    num_entries = int.from_bytes(tiff[ifd0_offset : ifd0_offset + 2], byte_order)
    entry_base = ifd0_offset + 2
    for n in range(num_entries):
        entry_off = entry_base + n * 12
        if entry_off + 12 > len(tiff):
            break
        tag = int.from_bytes(tiff[entry_off : entry_off + 2], byte_order)
        if tag != 0x0112:
            continue
        typ = int.from_bytes(tiff[entry_off + 2 : entry_off + 4], byte_order)
        count = int.from_bytes(tiff[entry_off + 4 : entry_off + 8], byte_order)
        value = tiff[entry_off + 8 : entry_off + 12]
        # SHORT, count 1; value sits in the first two bytes.
        if typ == 3 and count == 1:
            return int.from_bytes(value[0:2], byte_order)
        return None
    return None


def _apply_exif_orientation(image: np.ndarray, orientation: int) -> np.ndarray:
    if orientation == 2:
        return cv2.flip(image, 1)
    if orientation == 3:
        return cv2.rotate(image, cv2.ROTATE_180)
    if orientation == 4:
        return cv2.flip(image, 0)
    if orientation == 5:
        return cv2.rotate(cv2.flip(image, 1), cv2.ROTATE_90_COUNTERCLOCKWISE)
    if orientation == 6:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    if orientation == 7:
        return cv2.rotate(cv2.flip(image, 1), cv2.ROTATE_90_CLOCKWISE)
    if orientation == 8:
        return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    return image


def _decode_gray(image_bytes: bytes) -> np.ndarray:
    buffer = np.frombuffer(image_bytes, np.uint8)
    # Orientation is applied by hand below so it is never applied twice.
    image = cv2.imdecode(buffer, cv2.IMREAD_GRAYSCALE | cv2.IMREAD_IGNORE_ORIENTATION)
    if image is None:
        raise ValidationError("Image data could not be decoded. Please upload a JPEG or PNG photo.")
    orientation = _read_exif_orientation(image_bytes)
    if orientation and orientation != 1:
        image = _apply_exif_orientation(image, orientation)
        logger.debug("Applied EXIF orientation %s", orientation)
    return image


def _check_content(gray: np.ndarray) -> None:
    mean, stddev = cv2.meanStdDev(gray)
    mean_value = float(mean[0][0])
    std_value = float(stddev[0][0])

    if mean_value > 240 and std_value < 10:
        raise DetectionFailure(
            "Image appears to be blank or has insufficient content. Please upload a filled answer sheet."
        )
    if mean_value < 15 and std_value < 10:
        raise ValidationError("Image is too dark or corrupted. Please upload a clear photo of the sheet.")
    if std_value < 15:
        raise ValidationError("Image has very low contrast. Please ensure the sheet has clear markings.")


def validate_image(
    image_bytes: bytes,
    content_type: Optional[str] = None,
    config: PreprocessConfig = PreprocessConfig(),
) -> ImageMetadata:
    metadata, _gray = _inspect(image_bytes, content_type, config)
    return metadata


def _inspect(
    image_bytes: bytes, content_type: Optional[str], config: PreprocessConfig
) -> Tuple[ImageMetadata, np.ndarray]:
    if not image_bytes:
        raise ValidationError("Uploaded file is empty.")
    if len(image_bytes) > config.max_bytes:
        raise ValidationError(
            f"Image too large. Maximum {config.max_bytes} bytes, got {len(image_bytes)}."
        )
    if content_type and content_type.lower() not in config.allowed_mime_types:
        raise ValidationError(f"Invalid format. Allowed: {', '.join(config.allowed_mime_types)}. Got {content_type}.")

    fmt = sniff_format(image_bytes)
    if fmt is None or _MIME_BY_FORMAT[fmt] not in config.allowed_mime_types:
        raise ValidationError(f"Invalid format. Allowed: {', '.join(config.allowed_mime_types)}.")

    gray = _decode_gray(image_bytes)
    height, width = gray.shape[:2]
    if width < config.min_width or height < config.min_height:
        raise ValidationError(
            f"Image too small. Minimum {config.min_width}x{config.min_height} pixels. Got {width}x{height}."
        )
    return ImageMetadata(width=width, height=height, format=fmt, size=len(image_bytes)), gray


def _sharpen(gray: np.ndarray) -> np.ndarray:
    blurred = cv2.GaussianBlur(gray, (0, 0), 1.0)
    return cv2.addWeighted(gray, 1.5, blurred, -0.5, 0)


def _resize_contain(gray: np.ndarray, target_width: int, target_height: int) -> np.ndarray:
    height, width = gray.shape[:2]
    scale = min(target_width / float(width), target_height / float(height))
    new_w = max(1, min(target_width, int(round(width * scale))))
    new_h = max(1, min(target_height, int(round(height * scale))))
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_CUBIC
    resized = cv2.resize(gray, (new_w, new_h), interpolation=interpolation)

    canvas = np.full((target_height, target_width), 255, dtype=np.uint8)
    x0 = (target_width - new_w) // 2
    y0 = (target_height - new_h) // 2
    canvas[y0 : y0 + new_h, x0 : x0 + new_w] = resized
    return canvas


def preprocess_image(
    image_bytes: bytes,
    content_type: Optional[str] = None,
    config: PreprocessConfig = PreprocessConfig(),
) -> np.ndarray:
    """Validate, then normalize the upload into the canonical grayscale raster."""
    metadata, gray = _inspect(image_bytes, content_type, config)
    _check_content(gray)

    if config.enhance_contrast:
        gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)
    if config.remove_noise:
        gray = cv2.medianBlur(gray, 3)
    if config.sharpen:
        gray = _sharpen(gray)

    canonical = _resize_contain(gray, config.target_width, config.target_height)
    logger.info(
        "Preprocessed %s %dx%d -> canonical %dx%d",
        metadata.format,
        metadata.width,
        metadata.height,
        config.target_width,
        config.target_height,
    )
    return canonical


def encode_jpeg_base64(raster: np.ndarray, quality: int = 90) -> str:
    ok, encoded = cv2.imencode(".jpg", raster, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ValidationError("Canonical raster could not be encoded.")
    return base64.b64encode(encoded.tobytes()).decode("ascii")


def create_thumbnail(raster: np.ndarray, width: int = 300, height: int = 400) -> np.ndarray:
    src_h, src_w = raster.shape[:2]
    scale = max(width / float(src_w), height / float(src_h))
    resized = cv2.resize(
        raster,
        (max(width, int(round(src_w * scale))), max(height, int(round(src_h * scale)))),
        interpolation=cv2.INTER_AREA,
    )
    y0 = (resized.shape[0] - height) // 2
    x0 = (resized.shape[1] - width) // 2
    return resized[y0 : y0 + height, x0 : x0 + width]
