"""
Unit tests for Pillow based image transforms.
"""

import io

import pytest
from PIL import Image

from lms_uploads.utils.image_utils import generate_thumbnail, get_image_dimensions, optimize_image


def _open(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


@pytest.mark.unit
class TestOptimizeImage:
    """Downscaling and re-encoding."""

    def test_large_image_fits_inside_bounds(self, make_image):
        optimized = optimize_image(make_image((400, 200)), max_width=100, max_height=100)

        image = _open(optimized)
        assert image.size == (100, 50)
        assert image.format == 'PNG'

    def test_small_image_is_not_enlarged(self, make_image):
        optimized = optimize_image(make_image((50, 40)), max_width=1920, max_height=1080)
        assert _open(optimized).size == (50, 40)

    def test_jpeg_stays_jpeg(self, make_image):
        optimized = optimize_image(make_image((300, 300), fmt='JPEG'), quality=60, max_width=150, max_height=150)

        image = _open(optimized)
        assert image.format == 'JPEG'
        assert image.size == (150, 150)

    def test_transparent_png_converted_to_jpeg(self, make_image):
        optimized = optimize_image(make_image((64, 64), mode='RGBA'), output_format='jpg')

        image = _open(optimized)
        assert image.format == 'JPEG'
        assert image.mode == 'RGB'

    def test_gif_is_returned_unchanged(self, make_image):
        data = make_image((64, 64), fmt='GIF')
        assert optimize_image(data, max_width=10, max_height=10) == data

    def test_undecodable_bytes_are_returned_unchanged(self):
        data = b'not an image' * 200
        assert optimize_image(data) == data


@pytest.mark.unit
class TestGenerateThumbnail:

    def test_thumbnail_is_cover_fit_jpeg(self, make_image):
        thumbnail = generate_thumbnail(make_image((400, 200)), width=100, height=100)

        image = _open(thumbnail)
        assert image.size == (100, 100)
        assert image.format == 'JPEG'

    def test_disabled_returns_none(self, make_image):
        assert generate_thumbnail(make_image(), enabled=False) is None

    def test_undecodable_bytes_return_none(self):
        assert generate_thumbnail(b'\x00' * 2048) is None


@pytest.mark.unit
class TestGetImageDimensions:

    def test_returns_size(self, make_image):
        assert get_image_dimensions(make_image((120, 80))) == (120, 80)

    def test_returns_none_for_non_images(self, pdf_bytes):
        assert get_image_dimensions(pdf_bytes) is None
