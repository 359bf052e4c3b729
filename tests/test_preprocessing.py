"""
Tests for OCR image preprocessing

Tests cover:
- Working width and adaptive threshold selection
- Enhanced chain output (PNG, binarized, resized)
- Fallback chain and original-bytes passthrough
"""

import io
from unittest.mock import patch

import pytest
from PIL import Image

from app.services.preprocessing import (
    BASIC_TARGET_WIDTH,
    adaptive_threshold,
    basic_enhance_image,
    enhance_image,
    preprocess_image,
    target_width,
)


def _image_bytes(size=(400, 200), color=(200, 200, 200), fmt="JPEG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


class TestTargetWidth:
    """Working width for recognition."""

    def test_small_image_upscaled_to_2400(self):
        assert target_width(800) == 2400

    def test_medium_image_doubled(self):
        assert target_width(1500) == 3000

    def test_large_image_capped(self):
        assert target_width(3000) == 4000


class TestAdaptiveThreshold:
    """Threshold follows mean brightness."""

    @pytest.mark.parametrize("brightness,expected", [
        (10, 100),
        (29.9, 100),
        (30, 128),
        (50, 128),
        (70, 128),
        (70.1, 160),
        (95, 160),
    ])
    def test_threshold_bands(self, brightness, expected):
        assert adaptive_threshold(brightness) == expected


class TestEnhanceImage:
    """Full enhancement chain."""

    def test_output_is_binarized_png_at_working_width(self):
        png, threshold = enhance_image(_image_bytes())

        img = Image.open(io.BytesIO(png))
        assert img.format == "PNG"
        assert img.size[0] == 2400
        assert img.size[1] == 1200
        assert set(img.getdata()) <= {0, 255}
        assert threshold in (100, 128, 160)

    def test_dark_image_uses_low_threshold(self):
        _, threshold = enhance_image(_image_bytes(color=(5, 5, 5)))
        assert threshold == 100

    def test_basic_chain_uses_fixed_width(self):
        png = basic_enhance_image(_image_bytes())
        img = Image.open(io.BytesIO(png))
        assert img.size[0] == BASIC_TARGET_WIDTH
        assert set(img.getdata()) <= {0, 255}


class TestPreprocessImage:
    """Failure policy: enhanced → basic → original."""

    def test_returns_png_for_valid_image(self):
        result = preprocess_image(_image_bytes(fmt="PNG"))
        assert result[:8] == b"\x89PNG\r\n\x1a\n"

    def test_falls_back_to_basic_chain(self):
        with patch("app.services.preprocessing.enhance_image", side_effect=ValueError("boom")):
            result = preprocess_image(_image_bytes())
        assert Image.open(io.BytesIO(result)).size[0] == BASIC_TARGET_WIDTH

    def test_returns_original_bytes_when_unreadable(self):
        garbage = b"definitely not an image"
        assert preprocess_image(garbage) == garbage

    def test_empty_input_passthrough(self):
        assert preprocess_image(b"") == b""
