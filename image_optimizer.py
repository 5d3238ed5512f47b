"""Image compression for model upload (Pillow).

Images arrive as data URLs or raw upload bytes. Before they are sent to the
model they are downscaled and re-encoded as progressive JPEG until they fit a
size target that depends on the question type.
"""

from __future__ import annotations

import base64
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Tuple

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r'^data:image/[a-zA-Z0-9.+-]+;base64,')

STRATEGIES = {
    'text_extraction': {'target_kb': 1200, 'max_dimension': 1536},
    'code_analysis': {'target_kb': 1000, 'max_dimension': 1280},
    'ui_analysis': {'target_kb': 800, 'max_dimension': 1024},
    'data_analysis': {'target_kb': 1000, 'max_dimension': 1280},
    'general': {'target_kb': 600, 'max_dimension': 800},
}

MAX_ATTEMPTS = 5
START_QUALITY = 80


@dataclass
class OptimizedImage:
    data: bytes
    original_kb: float
    compressed_kb: float
    quality: int
    dimensions: Tuple[int, int]
    compression_ratio: float = field(init=False)

    def __post_init__(self):
        self.compression_ratio = (self.original_kb / self.compressed_kb) if self.compressed_kb else 1.0

    def summary(self) -> Dict:
        return {
            'original_kb': round(self.original_kb, 1),
            'compressed_kb': round(self.compressed_kb, 1),
            'compression_ratio': round(self.compression_ratio, 3),
            'quality': self.quality,
            'dimensions': {'width': self.dimensions[0], 'height': self.dimensions[1]},
        }


def data_url_to_bytes(data_url: str) -> bytes:
    """Decode a data URL (or bare base64 string) to bytes. Raises ValueError on bad input."""
    payload = _DATA_URL_RE.sub('', (data_url or '').strip(), count=1)
    try:
        return base64.b64decode(payload, validate=True)
    except (ValueError, TypeError) as e:
        raise ValueError(f'Invalid base64 image data: {e}') from e


def bytes_to_data_url(data: bytes, fmt: str = 'jpeg') -> str:
    return f"data:image/{fmt};base64,{base64.b64encode(data).decode('utf-8')}"


def size_kb(data: bytes) -> float:
    return len(data) / 1024


def calculate_optimal_dimensions(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    if width <= max_dimension and height <= max_dimension:
        return width, height
    aspect = width / height
    if width > height:
        return max_dimension, max(1, round(max_dimension / aspect))
    return max(1, round(max_dimension * aspect)), max_dimension


def _open(data: bytes) -> Image.Image:
    im = Image.open(io.BytesIO(data))
    # honour camera orientation before resizing
    return ImageOps.exif_transpose(im)


def compress(data: bytes, width: int, height: int, quality: int) -> bytes:
    with _open(data) as im:
        if im.mode not in ('RGB', 'L'):
            im = im.convert('RGB')
        if (width, height) != im.size and width <= im.size[0] and height <= im.size[1]:
            im = im.resize((width, height), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        im.save(out, format='JPEG', quality=quality, progressive=True, optimize=True)
        return out.getvalue()


def get_image_info(data: bytes) -> Dict:
    with Image.open(io.BytesIO(data)) as im:
        return {
            'size_kb': size_kb(data),
            'format': (im.format or 'unknown').lower(),
            'dimensions': {'width': im.size[0], 'height': im.size[1]},
        }


def optimize_for_ai(data: bytes, target_kb: int = 800, max_dimension: int = 1024) -> OptimizedImage:
    """Shrink `data` under `target_kb`, lowering JPEG quality by 20% per attempt.

    Images already under the target are returned untouched. After
    MAX_ATTEMPTS the last attempt is returned even if still over target.
    """
    original = size_kb(data)
    with _open(data) as im:
        w0, h0 = im.size

    if original <= target_kb:
        return OptimizedImage(data, original, original, 100, (w0, h0))

    logger.info("Optimizing image: %dKB -> target %dKB", round(original), target_kb)
    width, height = calculate_optimal_dimensions(w0, h0, max_dimension)

    quality = START_QUALITY
    out = data
    for attempt in range(MAX_ATTEMPTS):
        out = compress(data, width, height, quality)
        logger.debug("Attempt %d: quality %d -> %dKB", attempt + 1, quality, round(size_kb(out)))
        if size_kb(out) <= target_kb:
            break
        if attempt < MAX_ATTEMPTS - 1:
            quality = round(quality * 0.8)

    result = OptimizedImage(out, original, size_kb(out), quality, (width, height))
    logger.info("Image optimization complete: ratio %.2f", result.compression_ratio)
    return result


def optimize_for_question_type(data: bytes, question_type: str) -> OptimizedImage:
    strategy = STRATEGIES.get(question_type, STRATEGIES['general'])
    logger.debug("Using %s image strategy: %s", question_type, strategy)
    return optimize_for_ai(data, strategy['target_kb'], strategy['max_dimension'])
