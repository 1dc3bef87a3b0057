import numpy as np
import pytest
from pydantic import ValidationError

from photoguard.config import AnonymizationConfig
from photoguard.face_utils import FaceRegion
from photoguard.image_processor import (
    ImageDecodingError, ImageProcessor, PixelBox, RasterImage,
    add_noise, clamp_region, encode_jpeg, expand_region, gaussian_blur,
    gaussian_kernel, load_raster, pixelate
)


def test_empty_face_list_returns_identical_copy(random_raster):
    processor = ImageProcessor(seed=1)
    result = processor.anonymize(random_raster, [])

    assert result.pixels.tobytes() == random_raster.pixels.tobytes()
    assert result.pixels is not random_raster.pixels


def test_anonymize_reduces_region_variance(random_raster):
    face = FaceRegion(x=60, y=60, width=60, height=60)
    result = ImageProcessor(seed=1).anonymize(random_raster, [face])

    before = random_raster.pixels[60:120, 60:120, :3].astype(float)
    after = result.pixels[60:120, 60:120, :3].astype(float)
    assert after.var() < before.var() * 0.5


def test_anonymize_does_not_mutate_input(random_raster, face):
    original = random_raster.pixels.copy()
    ImageProcessor(seed=1).anonymize(random_raster, [face])

    assert np.array_equal(random_raster.pixels, original)


def test_pixels_outside_padded_region_untouched(random_raster):
    face = FaceRegion(x=100, y=100, width=40, height=40)
    result = ImageProcessor(seed=1).anonymize(random_raster, [face])

    # 15% padding of 40px is 6px on each side: region is [94, 146)
    assert np.array_equal(result.pixels[:94], random_raster.pixels[:94])
    assert np.array_equal(result.pixels[146:], random_raster.pixels[146:])
    assert np.array_equal(result.pixels[:, :94], random_raster.pixels[:, :94])
    assert not np.array_equal(result.pixels[94:146, 94:146], random_raster.pixels[94:146, 94:146])


def test_region_outside_image_is_skipped(random_raster):
    faces = [
        FaceRegion(x=500, y=500, width=50, height=50),
        FaceRegion(x=10, y=10, width=0, height=30),
        FaceRegion(x=10, y=10, width=-20, height=30),
    ]
    result = ImageProcessor(seed=1).anonymize(random_raster, faces)

    assert np.array_equal(result.pixels, random_raster.pixels)


def test_region_partially_outside_is_clamped(random_raster):
    face = FaceRegion(x=-30, y=180, width=60, height=60)
    result = ImageProcessor(seed=1).anonymize(random_raster, [face])

    assert result.pixels.shape == random_raster.pixels.shape
    assert np.array_equal(result.pixels[:150], random_raster.pixels[:150])


def test_alpha_channel_is_preserved():
    rng = np.random.default_rng(3)
    pixels = rng.integers(0, 256, (80, 80, 4), dtype=np.uint8)
    raster = RasterImage(pixels=pixels)

    result = ImageProcessor(seed=1).anonymize(raster, [FaceRegion(x=10, y=10, width=50, height=50)])

    assert result.channels == 4
    assert np.array_equal(result.pixels[..., 3], pixels[..., 3])


def test_seeded_processors_are_reproducible(random_raster, face):
    first = ImageProcessor(seed=7).anonymize(random_raster, [face])
    second = ImageProcessor(seed=7).anonymize(random_raster, [face])

    assert np.array_equal(first.pixels, second.pixels)


def test_clamp_region_negative_origin():
    assert clamp_region(-10, -10, 20, 20, 100, 100) == PixelBox(0, 0, 10, 10)


def test_clamp_region_outside_or_empty():
    assert clamp_region(150, 150, 10, 10, 100, 100) is None
    assert clamp_region(10, 10, 0, 10, 100, 100) is None
    assert clamp_region(10, 10, -5, 10, 100, 100) is None
    assert clamp_region(90, 90, 50, 50, 100, 100) == PixelBox(90, 90, 10, 10)


def test_expand_region_adds_padding():
    face = FaceRegion(x=20, y=20, width=40, height=40)
    assert expand_region(face, 15, 100, 100) == PixelBox(14, 14, 52, 52)
    assert expand_region(face, 0, 100, 100) == PixelBox(20, 20, 40, 40)


def test_expand_region_is_clamped():
    face = FaceRegion(x=0, y=0, width=40, height=40)
    assert expand_region(face, 15, 30, 30) == PixelBox(0, 0, 30, 30)


def test_pixelate_uses_rounded_block_means():
    region = np.zeros((5, 5, 3), dtype=np.uint8)
    region[..., 0] = np.arange(25, dtype=np.uint8).reshape(5, 5)

    result = pixelate(region, 2)

    block = region[0:2, 0:2, 0].astype(float)
    assert np.all(result[0:2, 0:2, 0] == np.floor(block.mean() + 0.5))
    # Final row/column blocks are smaller
    corner = region[4:5, 4:5, 0].astype(float)
    assert result[4, 4, 0] == corner.mean()
    edge = region[4:5, 0:2, 0].astype(float)
    assert np.all(result[4, 0:2, 0] == np.floor(edge.mean() + 0.5))


def test_pixelate_half_values_round_up():
    region = np.array([[[1, 0, 0], [2, 0, 0]]], dtype=np.uint8)
    assert np.all(pixelate(region, 2)[..., 0] == 2)


def test_pixelate_empty_region():
    region = np.zeros((0, 4, 3), dtype=np.uint8)
    assert pixelate(region, 4).shape == (0, 4, 3)


def test_gaussian_kernel_shape():
    kernel = gaussian_kernel(4)
    assert len(kernel) == 9
    assert kernel[4] == 1.0
    assert np.allclose(kernel, kernel[::-1])


def test_gaussian_blur_leaves_corner_border():
    rng = np.random.default_rng(5)
    region = rng.integers(0, 256, (20, 20, 3), dtype=np.uint8)

    result = gaussian_blur(region, 4)

    assert np.array_equal(result[:4, :4], region[:4, :4])
    assert np.array_equal(result[16:, 16:], region[16:, 16:])
    assert not np.array_equal(result[4:16, 4:16], region[4:16, 4:16])


def test_gaussian_blur_keeps_uniform_region():
    region = np.full((20, 20, 3), 77, dtype=np.uint8)
    assert np.array_equal(gaussian_blur(region, 4), region)


def test_gaussian_blur_small_region_is_noop():
    rng = np.random.default_rng(5)
    region = rng.integers(0, 256, (8, 8, 3), dtype=np.uint8)
    assert np.array_equal(gaussian_blur(region, 4), region)


def test_noise_stays_in_range_and_clamps():
    rng = np.random.default_rng(9)
    mid = np.full((30, 30, 3), 128, dtype=np.uint8)
    noisy = add_noise(mid, 15, rng).astype(int)
    assert noisy.min() >= 113 and noisy.max() <= 143

    dark = np.zeros((30, 30, 3), dtype=np.uint8)
    noisy = add_noise(dark, 15, rng).astype(int)
    assert noisy.min() == 0 and noisy.max() <= 15


def test_noise_is_independent_per_channel():
    rng = np.random.default_rng(9)
    noisy = add_noise(np.full((30, 30, 3), 128, dtype=np.uint8), 15, rng)
    assert not np.array_equal(noisy[..., 0], noisy[..., 1])


def test_custom_config_is_used(random_raster, face):
    config = AnonymizationConfig(pixel_size=1, blur_passes=0, noise_amplitude=0)
    result = ImageProcessor(config, seed=1).anonymize(random_raster, [face])

    # Every layer is a no-op with these parameters
    assert np.array_equal(result.pixels, random_raster.pixels)


def test_raster_rejects_invalid_arrays():
    with pytest.raises(ValidationError):
        RasterImage(pixels=np.zeros((10, 10, 3), dtype=np.float32))
    with pytest.raises(ValidationError):
        RasterImage(pixels=np.zeros((10, 10), dtype=np.uint8))


def test_load_raster_rejects_garbage():
    with pytest.raises(ImageDecodingError):
        load_raster(b"definitely not an image")


def test_load_and_encode_jpeg(jpeg_bytes):
    raster = load_raster(jpeg_bytes)
    assert (raster.width, raster.height, raster.channels) == (120, 100, 3)

    encoded = encode_jpeg(raster, quality=85)
    assert encoded[:2] == b"\xff\xd8"
