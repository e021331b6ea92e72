"""
Health check categories offered by the scan screen.

- The browser sends the category label (e.g. "Teeth & Gums") with every
  analysis request; the label is the canonical key.
- `focus` is appended to the analysis prompt so Gemini looks at the right
  body area. `examples` feed the financial-forecast hint.
- Older app builds sent short codes ("teeth", "eyes" ...); those are still
  accepted through ALIASES.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class HealthCategoryConfig:
    code: str            # short code (ex. "teeth")
    label: str           # label shown in the app, also the wire value
    focus: str           # what the model should inspect
    examples: List[str]  # prevention-vs-treatment cost examples


HEALTH_CATEGORIES: Dict[str, HealthCategoryConfig] = {
    "Teeth & Gums": HealthCategoryConfig(
        code="teeth",
        label="Teeth & Gums",
        focus=(
            "tartar build-up, gum recession or redness, broken or discolored teeth, "
            "oral masses and signs of periodontal disease"
        ),
        examples=[
            "Cleaning teeth now ($0-$300) prevents extraction surgery later ($1200+).",
        ],
    ),
    "Eyes": HealthCategoryConfig(
        code="eyes",
        label="Eyes",
        focus=(
            "cloudiness, discharge, redness, squinting, third-eyelid protrusion "
            "and asymmetry between the eyes"
        ),
        examples=[
            "Treating conjunctivitis early ($100-$250) avoids corneal ulcer care ($800+).",
        ],
    ),
    "Skin & Coat": HealthCategoryConfig(
        code="skin",
        label="Skin & Coat",
        focus=(
            "hair loss, hot spots, rashes, lumps, parasites, dandruff "
            "and coat condition"
        ),
        examples=[
            "A flea treatment now ($20-$60) prevents dermatitis workups later ($400+).",
        ],
    ),
    "Gait & Movement": HealthCategoryConfig(
        code="gait",
        label="Gait & Movement",
        focus=(
            "limping, uneven weight bearing, joint swelling, posture "
            "and muscle wasting"
        ),
        examples=[
            "Weight management and joint supplements ($30/month) can delay ligament surgery ($3000+).",
        ],
    ),
    "General": HealthCategoryConfig(
        code="general",
        label="General",
        focus="overall body condition, posture, visible wounds and anything unusual",
        examples=[
            "An early wellness visit ($60-$120) costs less than an emergency visit ($500+).",
        ],
    ),
}


# short codes / legacy values
ALIASES: Dict[str, str] = {
    "teeth": "Teeth & Gums",
    "dental": "Teeth & Gums",
    "eyes": "Eyes",
    "skin": "Skin & Coat",
    "coat": "Skin & Coat",
    "gait": "Gait & Movement",
    "movement": "Gait & Movement",
    "general": "General",
    "other": "General",
}


def resolve_category(value: Optional[str]) -> Optional[HealthCategoryConfig]:
    s = (value or "").strip()
    if not s:
        return None
    if s in HEALTH_CATEGORIES:
        return HEALTH_CATEGORIES[s]
    canonical = ALIASES.get(s.lower())
    if canonical:
        return HEALTH_CATEGORIES[canonical]
    return None
