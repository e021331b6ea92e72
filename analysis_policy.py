"""
analysis_policy.py

Photo triage with Gemini (structured JSON output).

Flow:
1) build the fixed instruction template for the category
2) send image + instruction with a JSON response schema
3) parse the text (tolerate ```json fences / leading chatter)
4) normalize into the shape the app renders (every key present)

The route layer owns credits, Turnstile and persistence. This module only
talks to the model and never touches the database.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import google.generativeai as genai

from health_categories import HealthCategoryConfig

logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    pass


SEVERITIES: List[str] = ["Healthy", "Low", "Moderate", "High", "Critical"]

DEFAULT_DISCLAIMER = (
    "This assessment was generated by an AI from a single photo. "
    "It is not a diagnosis and does not replace an examination by a licensed veterinarian."
)

_LIST_FIELDS = ["observations", "possibleCauses", "vetWillExamine", "questionsToAsk"]
_TEXT_FIELDS = ["title", "urgency", "nextSteps", "financialForecast", "disclaimer"]


# -----------------------------
# Response schema (Gemini JSON mode)
# -----------------------------
ANALYSIS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "severity": {
            "type": "string",
            "enum": SEVERITIES,
            "description": "The estimated severity of the issue observed.",
        },
        "title": {
            "type": "string",
            "description": "A short, clinical summary of the visual finding.",
        },
        "observations": {
            "type": "array",
            "items": {"type": "string"},
            "description": "List of specific visual indicators found in the image.",
        },
        "possibleCauses": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Plausible causes, most likely first.",
        },
        "vetWillExamine": {
            "type": "array",
            "items": {"type": "string"},
            "description": "What a veterinarian is likely to check during a visit.",
        },
        "questionsToAsk": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Questions the owner should ask the vet.",
        },
        "urgency": {
            "type": "string",
            "description": "How soon the pet should be seen (e.g. 'Within 48 hours').",
        },
        "nextSteps": {
            "type": "string",
            "description": "Actionable advice for the pet owner.",
        },
        "financialForecast": {
            "type": "string",
            "description": "Cost of acting now compared to waiting until it gets worse.",
        },
        "disclaimer": {
            "type": "string",
            "description": "A mandatory disclaimer stating this is AI advice.",
        },
    },
    "required": [
        "severity",
        "title",
        "observations",
        "possibleCauses",
        "vetWillExamine",
        "questionsToAsk",
        "urgency",
        "nextSteps",
        "financialForecast",
        "disclaimer",
    ],
}


def build_analysis_prompt(category: HealthCategoryConfig) -> str:
    example = category.examples[0] if category.examples else ""
    return f"""
You are an expert veterinary AI assistant.
Analyze this image of a pet's {category.label}.
Pay particular attention to: {category.focus}.
Identify any potential health issues, abnormalities, or signs of disease.

CRITICAL: act as a financial forecaster for the pet owner.
Identify how catching this specific issue at this specific stage saves money compared to waiting until it gets worse.
Example: "{example}"

Also list the possible causes, what the vet will examine, and questions the owner should ask at the visit.
State the urgency plainly (e.g. "Monitor at home", "Within 48 hours", "Emergency - go now").

Be precise, empathetic, but realistic.
If the image is unclear or not of a pet, state that in the observations and mark severity as Low or Healthy.
""".strip()


def _extract_json_obj(text: str) -> Optional[Dict[str, Any]]:
    s = (text or "").strip()
    if not s:
        return None

    s = re.sub(r"```(?:json)?", "", s, flags=re.IGNORECASE).strip()
    s = s.replace("```", "").strip()

    try:
        obj = json.loads(s)
        return obj if isinstance(obj, dict) else None
    except json.JSONDecodeError:
        pass

    first = s.find("{")
    last = s.rfind("}")
    if first >= 0 and last > first:
        try:
            obj = json.loads(s[first:last + 1])
            return obj if isinstance(obj, dict) else None
        except json.JSONDecodeError:
            return None

    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for v in value:
        s = str(v).strip() if v is not None else ""
        if s:
            out.append(s)
    return out


def normalize_analysis(data: Dict[str, Any]) -> Dict[str, Any]:
    """Every key present, lists are lists of strings, severity is one of SEVERITIES."""
    severity = str(data.get("severity") or "").strip().capitalize()
    if severity not in SEVERITIES:
        severity = "Moderate"

    out: Dict[str, Any] = {"severity": severity}
    for key in _LIST_FIELDS:
        out[key] = _as_str_list(data.get(key))
    for key in _TEXT_FIELDS:
        v = data.get(key)
        out[key] = str(v).strip() if v is not None else ""

    # older prompt revisions returned "recommendation" instead of "nextSteps"
    if not out["nextSteps"] and data.get("recommendation"):
        out["nextSteps"] = str(data["recommendation"]).strip()
    if not out["disclaimer"]:
        out["disclaimer"] = DEFAULT_DISCLAIMER
    if not out["title"]:
        out["title"] = "Visual health check"
    return out


def parse_analysis_text(text: str) -> Dict[str, Any]:
    obj = _extract_json_obj(text)
    if obj is None:
        raise AnalysisError("AI response was not valid JSON")
    return normalize_analysis(obj)


def run_gemini_analysis(
    image_jpeg: bytes,
    category: HealthCategoryConfig,
    *,
    api_key: str,
    model_name: str,
) -> Dict[str, Any]:
    """
    One call, no retry. Any provider error is raised as AnalysisError.
    """
    if not api_key:
        raise AnalysisError("GEMINI_API_KEY is not configured")

    prompt = build_analysis_prompt(category)

    try:
        genai.configure(api_key=api_key)
        model = genai.GenerativeModel(model_name)
        resp = model.generate_content(
            [
                {"mime_type": "image/jpeg", "data": image_jpeg},
                prompt,
            ],
            generation_config={
                "response_mime_type": "application/json",
                "response_schema": ANALYSIS_SCHEMA,
                "temperature": 0.2,
            },
        )
    except Exception as e:
        raise AnalysisError(f"Gemini call failed: {e}") from e

    try:
        text = resp.text
    except ValueError:
        # blocked / empty candidate: .text raises instead of returning ""
        text = None
    if not text and getattr(resp, "candidates", None):
        parts = resp.candidates[0].content.parts
        text = "".join(getattr(p, "text", "") for p in parts)

    if not text:
        raise AnalysisError("No response from AI")

    logger.info("[Analyze] Gemini returned %d chars (model=%s)", len(text), model_name)
    return parse_analysis_text(text)
