# image_policy.py
# PreVetScan image intake
# - the browser sends base64 (FileReader data URL, prefix optional)
# - decode, open with Pillow (decompression bomb guard), fix EXIF orientation
# - downscale to a max width and re-encode as JPEG before handing it to Gemini

from __future__ import annotations

import base64
import binascii
import io
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, ImageFile, ImageOps, UnidentifiedImageError


@dataclass(frozen=True)
class ImagePolicyConfig:
    max_width: int = 1536
    jpeg_quality: int = 88
    image_max_pixels: int = 20_000_000
    max_base64_chars: int = 14_000_000  # ~10MB payload


class ImagePolicyError(RuntimeError):
    pass


_RE_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.\-]+)?;base64,", re.IGNORECASE)


def strip_data_url(value: str) -> Tuple[str, Optional[str]]:
    """
    "data:image/png;base64,AAAA" -> ("AAAA", "image/png")
    "AAAA" -> ("AAAA", None)
    """
    s = (value or "").strip()
    m = _RE_DATA_URL.match(s)
    if not m:
        return s, None
    return s[m.end():], m.group("mime")


def decode_base64_image(value: str, *, max_chars: int) -> bytes:
    data, _ = strip_data_url(value)
    if not data:
        raise ImagePolicyError("image is empty")
    if len(data) > max_chars:
        raise ImagePolicyError("image too large")
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError):
        raise ImagePolicyError("image is not valid base64")


def _resize_to_width(img: Image.Image, max_w: int) -> Image.Image:
    w, h = img.size
    if w <= max_w:
        return img
    ratio = max_w / float(w)
    nh = max(1, int(h * ratio))
    return img.resize((max_w, nh), Image.LANCZOS)


def _encode_jpeg(img: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=int(quality), optimize=True)
    return buf.getvalue()


def _safe_open_image(raw: bytes, *, image_max_pixels: int) -> Image.Image:
    Image.MAX_IMAGE_PIXELS = int(image_max_pixels or 20_000_000)
    ImageFile.LOAD_TRUNCATED_IMAGES = False

    try:
        img = Image.open(io.BytesIO(raw))
        img = ImageOps.exif_transpose(img)
        img = img.convert("RGB")
        return img
    except Image.DecompressionBombError:
        raise ImagePolicyError("image too large (decompression bomb)")
    except UnidentifiedImageError:
        raise ImagePolicyError("invalid image")
    except Exception as e:
        raise ImagePolicyError(f"image open failed: {e}")


def prepare_image_for_ai(value: str, config: Optional[ImagePolicyConfig] = None) -> bytes:
    """Returns JPEG bytes ready to be sent inline to Gemini."""
    cfg = config or ImagePolicyConfig()
    raw = decode_base64_image(value, max_chars=cfg.max_base64_chars)
    img = _safe_open_image(raw, image_max_pixels=cfg.image_max_pixels)
    img = _resize_to_width(img, cfg.max_width)
    return _encode_jpeg(img, cfg.jpeg_quality)
