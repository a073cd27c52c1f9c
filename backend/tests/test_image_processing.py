from io import BytesIO

import pytest
from PIL import Image, UnidentifiedImageError

from sheetwise.models.schemas import Region
from sheetwise.utils.image_processing import (
    EXIF_ORIENTATION,
    crop_region,
    draw_region_overlay,
    image_size,
    normalise_orientation,
    padded_box,
    region_to_pixels,
)


def test_region_to_pixels_scales_grid():
    region = Region(x=100, y=100, width=200, height=200)
    assert region_to_pixels(region, 1000, 800) == (100, 80, 200, 160)


def test_padded_box_adds_five_percent_per_side():
    region = Region(x=100, y=100, width=200, height=200)
    assert padded_box(region, 1000, 800) == (90, 72, 310, 248)


def test_padded_box_clamps_to_image():
    region = Region(x=900, y=0, width=200, height=100)
    left, top, right, bottom = padded_box(region, 1000, 800)
    assert (left, top, right) == (890, 0, 1000)
    assert bottom <= 800


def test_padded_box_outside_image_is_none():
    assert padded_box(Region(x=1200, y=100, width=100, height=100), 1000, 800) is None
    assert padded_box(Region(x=100, y=100, width=0, height=0), 1000, 800) is None


def test_crop_region_returns_jpeg_of_padded_size(make_image):
    crop = crop_region(make_image(1000, 800), Region(x=100, y=100, width=200, height=200))
    assert image_size(crop) == (220, 176)


def test_crop_region_unusable_region(make_image):
    assert crop_region(make_image(), Region(x=1500, y=1500, width=10, height=10)) is None


def test_overlay_draws_red_outline(make_image):
    marked = draw_region_overlay(make_image(1000, 800), [Region(x=100, y=100, width=200, height=200)], stroke_width=5)
    with Image.open(BytesIO(marked)) as img:
        r, g, b = img.convert("RGB").getpixel((102, 160))
        assert r > 200 and g < 80 and b < 80
        assert img.convert("RGB").getpixel((200, 160)) == pytest.approx((255, 255, 255), abs=10)


def test_normalise_orientation_rotates_exif_images():
    img = Image.new("RGB", (40, 20), "white")
    exif = img.getexif()
    exif[EXIF_ORIENTATION] = 6
    buf = BytesIO()
    img.save(buf, format="JPEG", exif=exif.tobytes())
    assert image_size(normalise_orientation(buf.getvalue())) == (20, 40)


def test_normalise_orientation_keeps_upright_bytes(make_image):
    data = make_image(40, 20)
    assert normalise_orientation(data) is data


def test_normalise_orientation_rejects_non_images():
    with pytest.raises(UnidentifiedImageError):
        normalise_orientation(b"definitely not an image")
