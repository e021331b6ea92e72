# report_pdf.py
# Scan report export.
# - draw the whole report onto one tall white bitmap
# - cut it into A4-proportioned bands (last band padded with white)
# - write the bands as a multi-page PDF
# Only cropping arithmetic here; no layout engine, no compression tuning.

from __future__ import annotations

import io
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont


@dataclass(frozen=True)
class ReportConfig:
    page_width: int = 1240          # A4 @ 150 dpi
    page_height: int = 1754
    margin: int = 80
    resolution: float = 150.0
    title_size: int = 44
    heading_size: int = 30
    body_size: int = 24
    line_gap: int = 10


SEVERITY_COLORS: Dict[str, Tuple[int, int, int]] = {
    "Healthy": (22, 163, 74),
    "Low": (13, 148, 136),
    "Moderate": (217, 119, 6),
    "High": (234, 88, 12),
    "Critical": (220, 38, 38),
}

_TEXT = (30, 41, 59)
_MUTED = (100, 116, 139)


def page_count(total_height: int, page_height: int) -> int:
    if page_height <= 0:
        raise ValueError("page_height must be positive")
    return max(1, math.ceil(total_height / page_height))


def paginate(img: Image.Image, page_height: int) -> List[Image.Image]:
    w, h = img.size
    pages: List[Image.Image] = []
    for i in range(page_count(h, page_height)):
        top = i * page_height
        bottom = min(top + page_height, h)
        band = img.crop((0, top, w, bottom))
        page = Image.new("RGB", (w, page_height), "white")
        page.paste(band, (0, 0))
        pages.append(page)
    return pages


def _font(size: int) -> ImageFont.ImageFont:
    return ImageFont.load_default(size=size)


def _split_long_word(draw: ImageDraw.ImageDraw, word: str, font: Any, max_width: int) -> List[str]:
    # URLs etc. wider than the text column are cut per character
    parts: List[str] = []
    cur = ""
    for ch in word:
        if cur and draw.textlength(cur + ch, font=font) > max_width:
            parts.append(cur)
            cur = ch
        else:
            cur += ch
    parts.append(cur)
    return parts


def _wrap(draw: ImageDraw.ImageDraw, text: str, font: Any, max_width: int) -> List[str]:
    words: List[str] = []
    for word in (text or "").split():
        if draw.textlength(word, font=font) > max_width:
            words.extend(_split_long_word(draw, word, font, max_width))
        else:
            words.append(word)
    if not words:
        return [""]
    lines: List[str] = []
    cur = words[0]
    for word in words[1:]:
        trial = f"{cur} {word}"
        if draw.textlength(trial, font=font) <= max_width:
            cur = trial
        else:
            lines.append(cur)
            cur = word
    lines.append(cur)
    return lines


def _report_blocks(scan: Dict[str, Any], pet: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
    """(style, text) pairs, top to bottom."""
    blocks: List[Tuple[str, str]] = [("title", "PreVetScan Health Report")]

    meta = [scan.get("category") or "", (scan.get("created_at") or "")[:10]]
    if pet and pet.get("name"):
        meta.insert(0, f"{pet['name']} ({pet.get('species') or 'Pet'})")
    blocks.append(("muted", " | ".join(m for m in meta if m)))

    blocks.append(("severity", f"Severity: {scan.get('severity') or 'Unknown'}"))
    blocks.append(("heading", scan.get("title") or ""))

    def _list(heading: str, key: str) -> None:
        items = scan.get(key) or []
        if items:
            blocks.append(("heading", heading))
            for it in items:
                blocks.append(("body", f"- {it}"))

    def _text(heading: str, key: str) -> None:
        value = scan.get(key)
        if value:
            blocks.append(("heading", heading))
            blocks.append(("body", str(value)))

    _list("Observations", "observations")
    _list("Possible causes", "possible_causes")
    _text("Urgency", "urgency")
    _text("Next steps", "next_steps")
    _list("What the vet will examine", "vet_will_examine")
    _list("Questions to ask", "questions_to_ask")
    _text("Financial forecast", "financial_forecast")
    _text("Disclaimer", "disclaimer")
    return blocks


def render_report_image(
    scan: Dict[str, Any],
    pet: Optional[Dict[str, Any]] = None,
    config: Optional[ReportConfig] = None,
) -> Image.Image:
    cfg = config or ReportConfig()
    fonts = {
        "title": _font(cfg.title_size),
        "heading": _font(cfg.heading_size),
        "severity": _font(cfg.heading_size),
        "body": _font(cfg.body_size),
        "muted": _font(cfg.body_size),
    }
    text_width = cfg.page_width - 2 * cfg.margin

    # measure on a scratch canvas first, then draw at the final height
    scratch = ImageDraw.Draw(Image.new("RGB", (1, 1)))
    lines: List[Tuple[str, str, int]] = []
    y = cfg.margin
    for style, text in _report_blocks(scan, pet):
        font = fonts[style]
        if style in ("heading", "severity"):
            y += cfg.line_gap * 2
        for line in _wrap(scratch, text, font, text_width):
            lines.append((style, line, y))
            bbox = scratch.textbbox((0, 0), line or " ", font=font)
            y += (bbox[3] - bbox[1]) + cfg.line_gap
    total_height = y + cfg.margin

    img = Image.new("RGB", (cfg.page_width, total_height), "white")
    draw = ImageDraw.Draw(img)
    severity_color = SEVERITY_COLORS.get(str(scan.get("severity")), _TEXT)
    for style, line, top in lines:
        if style == "muted":
            color = _MUTED
        elif style == "severity":
            color = severity_color
        else:
            color = _TEXT
        draw.text((cfg.margin, top), line, font=fonts[style], fill=color)
    return img


def build_report_pdf(
    scan: Dict[str, Any],
    pet: Optional[Dict[str, Any]] = None,
    config: Optional[ReportConfig] = None,
) -> bytes:
    cfg = config or ReportConfig()
    img = render_report_image(scan, pet, cfg)
    pages = paginate(img, cfg.page_height)

    buf = io.BytesIO()
    pages[0].save(
        buf,
        format="PDF",
        save_all=True,
        append_images=pages[1:],
        resolution=cfg.resolution,
    )
    return buf.getvalue()
