from __future__ import annotations

import pytest

from fotoo.core.errors import UnsupportedFormat
from fotoo.media.classifier import FormatCategory, classify, output_format


@pytest.mark.parametrize(
    ("mime_type", "key", "expected"),
    [
        ("image/heic", "u1/2024/01/01/x_IMG_0001.HEIC", FormatCategory.heic_like),
        ("image/HEIF", "photo.bin", FormatCategory.heic_like),
        ("application/octet-stream", "u1/IMG_0001.heic", FormatCategory.heic_like),
        ("", "u1/IMG_0001.HeIf", FormatCategory.heic_like),
        ("image/jpeg", "a.jpg", FormatCategory.web_image),
        ("image/JPG", "a.jpg", FormatCategory.web_image),
        ("image/png", "a.png", FormatCategory.web_image),
        ("image/webp", "a.webp", FormatCategory.web_image),
        ("video/quicktime", "clip.bin", FormatCategory.quicktime),
        ("application/octet-stream", "u1/clip.MOV", FormatCategory.quicktime),
        ("video/mp4", "clip.bin", FormatCategory.mp4),
        ("", "u1/clip.mp4", FormatCategory.mp4),
        ("application/pdf", "u1/doc.pdf", FormatCategory.unsupported),
        ("image/gif", "a.gif", FormatCategory.unsupported),
        (None, None, FormatCategory.unsupported),
    ],
)
def test_classify(mime_type, key, expected):
    assert classify(mime_type, key) is expected


def test_heic_key_wins_over_web_image_mime():
    assert classify("image/jpeg", "u1/IMG_0001.heic") is FormatCategory.heic_like


def test_web_image_mime_wins_over_video_key():
    assert classify("image/png", "u1/odd.mov") is FormatCategory.web_image


def test_extension_match_is_anchored_to_the_end():
    assert classify("", "u1/clip.mov.pdf") is FormatCategory.unsupported
    assert classify("", "u1/heic_notes.txt") is FormatCategory.unsupported


def test_output_format_for_heic_is_converted_jpeg():
    target = output_format(FormatCategory.heic_like, "image/heic", "u1/IMG_0001.HEIC")
    assert target.extension == "jpg"
    assert target.mime_type == "image/jpeg"
    assert target.needs_conversion
    assert not target.is_video


def test_output_format_for_web_image_keeps_extension_and_mime():
    target = output_format(FormatCategory.web_image, "image/PNG", "u1/2024/01/01/x_shot.png")
    assert target.extension == "png"
    assert target.mime_type == "image/png"
    assert not target.needs_conversion


def test_output_format_for_web_image_without_extension_defaults_to_jpg():
    target = output_format(FormatCategory.web_image, "image/jpeg", "u1/2024/01/01/x_shot")
    assert target.extension == "jpg"


def test_output_format_for_videos():
    mov = output_format(FormatCategory.quicktime, "video/quicktime", "a.mov")
    mp4 = output_format(FormatCategory.mp4, "video/mp4", "a.mp4")
    assert (mov.extension, mov.mime_type, mov.needs_conversion, mov.is_video) == ("mp4", "video/mp4", True, True)
    assert (mp4.extension, mp4.mime_type, mp4.needs_conversion, mp4.is_video) == ("mp4", "video/mp4", False, True)


def test_output_format_rejects_unsupported_with_mime_in_message():
    with pytest.raises(UnsupportedFormat) as excinfo:
        output_format(FormatCategory.unsupported, "application/pdf", "u1/doc.pdf")
    assert "application/pdf" in excinfo.value.message
