"""
Image Processing Module - The Anonymization Engine

Irreversibly obscures face regions with four layers applied in order,
each reading the output of the previous one:

1. Heavy pixelation (block means)
2. Repeated separable Gaussian blur
3. Low-amplitude per-channel noise
4. Secondary pixelation at half the block size

Every stage returns a fresh array; the caller's raster is never mutated.
"""

import io
import math
import base64
import logging
from typing import List, NamedTuple, Optional

import numpy as np
import pillow_heif
from PIL import Image, ImageOps
from pydantic import BaseModel, ConfigDict, field_validator

from photoguard.config import AnonymizationConfig
from photoguard.face_utils import FaceRegion

# Register HEIF/HEIC opener for PIL (Apple photo support)
pillow_heif.register_heif_opener()

logger = logging.getLogger(__name__)


class ImageProcessingError(Exception):
    """Base exception for image processing errors."""
    pass


class ImageDecodingError(ImageProcessingError):
    """Exception raised when image bytes cannot be decoded."""
    pass


class RasterImage(BaseModel):
    """
    Decoded image owned by a single pipeline invocation.

    ``pixels`` is a uint8 array of shape (height, width, channels) with
    RGB or RGBA channel order.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    pixels: np.ndarray

    @field_validator("pixels")
    @classmethod
    def _check_pixels(cls, value: np.ndarray) -> np.ndarray:
        if value.dtype != np.uint8 or value.ndim != 3 or value.shape[2] not in (3, 4):
            raise ValueError("pixels must be a uint8 array of shape (height, width, 3|4)")
        return value

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def channels(self) -> int:
        return self.pixels.shape[2]

    def copy(self) -> "RasterImage":
        return RasterImage(pixels=self.pixels.copy())

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    @classmethod
    def from_pil(cls, img: Image.Image) -> "RasterImage":
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        return cls(pixels=np.array(img, dtype=np.uint8))


class PixelBox(NamedTuple):
    """Integer region inside image bounds."""
    x: int
    y: int
    width: int
    height: int


# ============================================================================
# Region geometry
# ============================================================================

def clamp_region(
    x: float, y: float, width: float, height: float,
    image_width: int, image_height: int
) -> Optional[PixelBox]:
    """
    Intersect a box with [0, image_width) x [0, image_height).

    Returns None when nothing of the box is left.
    """
    x0 = max(0, int(math.floor(x)))
    y0 = max(0, int(math.floor(y)))
    x1 = min(image_width, int(math.floor(x + width)))
    y1 = min(image_height, int(math.floor(y + height)))

    if x1 - x0 <= 0 or y1 - y0 <= 0:
        return None
    return PixelBox(x0, y0, x1 - x0, y1 - y0)


def expand_region(
    face: FaceRegion,
    padding_percent: float,
    image_width: int,
    image_height: int
) -> Optional[PixelBox]:
    """Pad a face box on every side, then clamp it to the image."""
    if face.width <= 0 or face.height <= 0:
        return None

    pad_x = face.width * (padding_percent / 100)
    pad_y = face.height * (padding_percent / 100)

    return clamp_region(
        math.floor(face.x - pad_x),
        math.floor(face.y - pad_y),
        math.ceil(face.width + pad_x * 2),
        math.ceil(face.height + pad_y * 2),
        image_width,
        image_height
    )


# ============================================================================
# Stages
# ============================================================================

def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def pixelate(region: np.ndarray, block_size: int) -> np.ndarray:
    """
    Replace every block_size x block_size block with its per-channel mean.

    Blocks on the last row/column may be smaller. Alpha is left untouched.
    """
    out = region.copy()
    h, w = region.shape[:2]
    if h == 0 or w == 0:
        return out

    block_size = max(1, int(block_size))
    rows = np.arange(0, h, block_size)
    cols = np.arange(0, w, block_size)
    row_sizes = np.diff(np.append(rows, h))
    col_sizes = np.diff(np.append(cols, w))

    rgb = region[..., :3].astype(np.float64)
    sums = np.add.reduceat(np.add.reduceat(rgb, rows, axis=0), cols, axis=1)
    counts = np.outer(row_sizes, col_sizes)[..., np.newaxis]
    means = _round_half_up(sums / counts)

    out[..., :3] = np.repeat(np.repeat(means, row_sizes, axis=0), col_sizes, axis=1)
    return out


def gaussian_kernel(radius: int) -> np.ndarray:
    """Weights exp(-i^2 / (2 sigma^2)) for i in [-radius, radius], sigma = radius / 2."""
    sigma = radius / 2
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    return np.exp(-(offsets ** 2) / (2 * sigma * sigma))


def gaussian_blur(region: np.ndarray, radius: int) -> np.ndarray:
    """
    One separable blur pass: horizontal, then vertical over the result.

    Pixels within ``radius`` of the region edge are not written by the
    corresponding direction.
    """
    out = region.copy()
    if radius <= 0:
        return out

    h, w = region.shape[:2]
    kernel = gaussian_kernel(radius)
    kernel_sum = kernel.sum()

    horizontal = region[..., :3].astype(np.float64)
    if w > 2 * radius:
        acc = np.zeros((h, w - 2 * radius, 3))
        for k in range(-radius, radius + 1):
            acc += kernel[k + radius] * horizontal[:, radius + k:w - radius + k]
        horizontal[:, radius:w - radius] = _round_half_up(acc / kernel_sum)

    if h > 2 * radius:
        acc = np.zeros((h - 2 * radius, w, 3))
        for k in range(-radius, radius + 1):
            acc += kernel[k + radius] * horizontal[radius + k:h - radius + k, :]
        horizontal[radius:h - radius, :] = _round_half_up(acc / kernel_sum)

    out[..., :3] = np.clip(horizontal, 0, 255)
    return out


def add_noise(region: np.ndarray, amplitude: int, rng: np.random.Generator) -> np.ndarray:
    """Add independent integer noise in [-amplitude, amplitude] to R, G and B."""
    out = region.copy()
    if amplitude <= 0 or region.size == 0:
        return out

    noise = rng.integers(-amplitude, amplitude + 1, size=region.shape[:2] + (3,))
    out[..., :3] = np.clip(region[..., :3].astype(np.int16) + noise, 0, 255)
    return out


# ============================================================================
# Engine
# ============================================================================

class ImageProcessor:
    """
    Core anonymization engine.

    Takes a raster and face regions, returns a new raster where every
    padded face region has gone through all four layers.

    Args:
        config: Layer parameters
        seed: Seed for the noise layer (None for fresh entropy)
    """

    def __init__(self, config: Optional[AnonymizationConfig] = None, seed: Optional[int] = None):
        self.config = config or AnonymizationConfig()
        self.rng = np.random.default_rng(seed)

    def anonymize(self, image: RasterImage, faces: List[FaceRegion]) -> RasterImage:
        """Apply all layers to every face region of a copy of ``image``."""
        if not faces:
            logger.debug("No faces to anonymize")
            return image.copy()

        pixels = image.pixels.copy()
        for face in faces:
            box = expand_region(face, self.config.padding_percent, image.width, image.height)
            if box is None:
                logger.debug(f"Skipping empty region {face.to_dict()}")
                continue

            x, y, w, h = box
            pixels[y:y + h, x:x + w] = self.anonymize_region(pixels[y:y + h, x:x + w])

        return RasterImage(pixels=pixels)

    def anonymize_region(self, region: np.ndarray) -> np.ndarray:
        """Run the four layers over one region and return the new pixels."""
        cfg = self.config

        # Layer 1: Heavy pixelation
        region = pixelate(region, cfg.pixel_size)

        # Layer 2: Multiple blur passes
        for _ in range(cfg.blur_passes):
            region = gaussian_blur(region, cfg.blur_radius)

        # Layer 3: Noise overlay
        region = add_noise(region, cfg.noise_amplitude, self.rng)

        # Layer 4: Final pixelation
        return pixelate(region, max(1, cfg.pixel_size // 2))


# ============================================================================
# Utility Functions
# ============================================================================

def load_raster(image_bytes: bytes) -> RasterImage:
    """Decode image bytes (any Pillow/HEIF format) honouring EXIF orientation."""
    try:
        img = Image.open(io.BytesIO(image_bytes))
        return RasterImage.from_pil(ImageOps.exif_transpose(img))
    except Exception as e:
        raise ImageDecodingError(f"Failed to decode image: {e}")


def encode_jpeg(image: RasterImage, quality: int = 85) -> bytes:
    """Serialize a raster as JPEG (alpha is dropped)."""
    output_buffer = io.BytesIO()
    image.to_pil().convert("RGB").save(output_buffer, format="JPEG", quality=quality)
    return output_buffer.getvalue()


def image_to_base64(image_bytes: bytes, format: str = "jpeg") -> str:
    """Convert image bytes to base64 data URL."""
    b64 = base64.b64encode(image_bytes).decode('utf-8')
    return f"data:image/{format};base64,{b64}"


def base64_to_image(data_url: str) -> bytes:
    """Convert base64 data URL to image bytes."""
    # Remove header if present
    if ',' in data_url:
        data_url = data_url.split(',')[1]
    return base64.b64decode(data_url)
