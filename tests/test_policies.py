"""
analysis / image / turnstile / report helpers.
"""

import base64
import io
import json
from types import SimpleNamespace

import httpx
import pytest
from PIL import Image, ImageDraw

import analysis_policy
from analysis_policy import (
    ANALYSIS_SCHEMA,
    AnalysisError,
    DEFAULT_DISCLAIMER,
    build_analysis_prompt,
    normalize_analysis,
    parse_analysis_text,
    run_gemini_analysis,
)
from conftest import SAMPLE_ANALYSIS, make_image_b64
from health_categories import HEALTH_CATEGORIES, resolve_category
from image_policy import ImagePolicyConfig, ImagePolicyError, prepare_image_for_ai, strip_data_url
from report_pdf import ReportConfig, _font, _wrap, build_report_pdf, page_count, paginate, render_report_image
from turnstile_policy import TurnstileError, verify_turnstile_token


# ------------------------------------------------
# categories
# ------------------------------------------------
def test_resolve_category():
    assert resolve_category("Skin & Coat").code == "skin"
    assert resolve_category("TEETH").label == "Teeth & Gums"
    assert resolve_category(" other ").label == "General"
    assert resolve_category("tail") is None
    assert resolve_category(None) is None


# ------------------------------------------------
# analysis
# ------------------------------------------------
def test_prompt_mentions_category_and_forecast():
    prompt = build_analysis_prompt(HEALTH_CATEGORIES["Eyes"])
    assert "pet's Eyes" in prompt
    assert "financial forecaster" in prompt
    assert "cloudiness" in prompt


def test_parse_fenced_json():
    text = "Here you go:\n```json\n" + json.dumps(SAMPLE_ANALYSIS) + "\n```"
    out = parse_analysis_text(text)
    assert out["title"] == SAMPLE_ANALYSIS["title"]
    assert out["observations"] == SAMPLE_ANALYSIS["observations"]


def test_parse_rejects_non_json():
    with pytest.raises(AnalysisError):
        parse_analysis_text("The image shows a happy dog.")


def test_normalize_fills_defaults():
    out = normalize_analysis({"severity": "severe", "recommendation": "See a vet.", "observations": "one"})
    assert out["severity"] == "Moderate"
    assert out["nextSteps"] == "See a vet."
    assert out["observations"] == ["one"]
    assert out["possibleCauses"] == []
    assert out["disclaimer"] == DEFAULT_DISCLAIMER
    assert out["title"]


def test_normalize_keeps_known_severity_case_insensitive():
    assert normalize_analysis({"severity": "critical"})["severity"] == "Critical"


def test_run_gemini_analysis_sends_image_and_schema(monkeypatch):
    seen = {}

    class FakeModel:
        def __init__(self, model_name):
            seen["model_name"] = model_name

        def generate_content(self, contents, generation_config=None):
            seen["contents"] = contents
            seen["generation_config"] = generation_config
            return SimpleNamespace(text=json.dumps(SAMPLE_ANALYSIS), candidates=[])

    monkeypatch.setattr(analysis_policy.genai, "configure", lambda api_key: None)
    monkeypatch.setattr(analysis_policy.genai, "GenerativeModel", FakeModel)

    out = run_gemini_analysis(b"jpeg", HEALTH_CATEGORIES["Teeth & Gums"], api_key="k", model_name="m")

    assert out["severity"] == "Moderate"
    assert seen["model_name"] == "m"
    assert seen["contents"][0] == {"mime_type": "image/jpeg", "data": b"jpeg"}
    assert seen["generation_config"]["response_mime_type"] == "application/json"
    assert seen["generation_config"]["response_schema"] is ANALYSIS_SCHEMA


def test_run_gemini_analysis_wraps_provider_errors(monkeypatch):
    class FakeModel:
        def __init__(self, model_name):
            pass

        def generate_content(self, contents, generation_config=None):
            raise RuntimeError("503 overloaded")

    monkeypatch.setattr(analysis_policy.genai, "configure", lambda api_key: None)
    monkeypatch.setattr(analysis_policy.genai, "GenerativeModel", FakeModel)

    with pytest.raises(AnalysisError):
        run_gemini_analysis(b"jpeg", HEALTH_CATEGORIES["Eyes"], api_key="k", model_name="m")


def test_run_gemini_analysis_without_key():
    with pytest.raises(AnalysisError):
        run_gemini_analysis(b"jpeg", HEALTH_CATEGORIES["Eyes"], api_key="", model_name="m")


# ------------------------------------------------
# image intake
# ------------------------------------------------
def test_strip_data_url():
    assert strip_data_url("data:image/png;base64,QUJD") == ("QUJD", "image/png")
    assert strip_data_url("QUJD") == ("QUJD", None)


def test_prepare_image_downscales_and_reencodes():
    raw = prepare_image_for_ai(make_image_b64(size=(3000, 1500)), ImagePolicyConfig(max_width=1000))
    img = Image.open(io.BytesIO(raw))
    assert img.format == "JPEG"
    assert img.size == (1000, 500)


def test_prepare_image_keeps_small_images():
    raw = prepare_image_for_ai(make_image_b64(size=(320, 200), fmt="JPEG"))
    assert Image.open(io.BytesIO(raw)).size == (320, 200)


@pytest.mark.parametrize("value", ["", base64.b64encode(b"plain text").decode(), "data:image/png;base64,"])
def test_prepare_image_rejects_non_images(value):
    with pytest.raises(ImagePolicyError):
        prepare_image_for_ai(value)


def test_prepare_image_rejects_oversized_payload():
    with pytest.raises(ImagePolicyError):
        prepare_image_for_ai(make_image_b64(), ImagePolicyConfig(max_base64_chars=10))


# ------------------------------------------------
# turnstile
# ------------------------------------------------
def _http(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_turnstile_success_posts_secret_and_token():
    seen = {}

    def handler(request):
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"success": True})

    ok = verify_turnstile_token(
        "tok", secret_key="sec", remote_ip="1.2.3.4", verify_url="https://verify.test/", http_client=_http(handler)
    )
    assert ok is True
    assert "secret=sec" in seen["body"]
    assert "response=tok" in seen["body"]
    assert "remoteip=1.2.3.4" in seen["body"]


def test_turnstile_rejection():
    def handler(request):
        return httpx.Response(200, json={"success": False, "error-codes": ["invalid-input-response"]})

    assert verify_turnstile_token("tok", secret_key="sec", http_client=_http(handler)) is False


def test_turnstile_http_failure_raises():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(TurnstileError):
        verify_turnstile_token("tok", secret_key="sec", http_client=_http(handler))


def test_turnstile_needs_secret_and_token():
    with pytest.raises(TurnstileError):
        verify_turnstile_token("tok", secret_key="")
    assert verify_turnstile_token("", secret_key="sec") is False


# ------------------------------------------------
# report pdf
# ------------------------------------------------
@pytest.mark.parametrize(
    "height, page, expected",
    [(1, 100, 1), (100, 100, 1), (101, 100, 2), (250, 100, 3), (0, 100, 1)],
)
def test_page_count(height, page, expected):
    assert page_count(height, page) == expected


def test_paginate_slices_into_full_pages():
    img = Image.new("RGB", (200, 250), "black")
    pages = paginate(img, 100)
    assert len(pages) == 3
    assert all(p.size == (200, 100) for p in pages)
    # last band: 50 px of content, padded with white
    assert pages[2].getpixel((10, 10)) == (0, 0, 0)
    assert pages[2].getpixel((10, 90)) == (255, 255, 255)


def test_wrap_breaks_words_wider_than_the_column():
    draw = ImageDraw.Draw(Image.new("RGB", (1, 1)))
    font = _font(24)
    url = "https://vet.example.com/booking?clinic=" + "a" * 200

    lines = _wrap(draw, f"Book online at {url} today", font, 300)

    assert len(lines) > 2
    assert all(draw.textlength(line, font=font) <= 300 for line in lines)
    assert "".join(lines).replace(" ", "") == f"Bookonlineat{url}today"


SCAN_ID = "3f2b8c1e-7a4d-4e5f-9b6a-1c2d3e4f5a6b"


def _scan(n_observations=3):
    return {
        "category": "Skin & Coat",
        "severity": "High",
        "title": "Hot spot on left flank",
        "observations": [f"Observation number {i} with some extra words to wrap" for i in range(n_observations)],
        "possible_causes": ["Flea allergy"],
        "urgency": "Within 48 hours",
        "next_steps": "Keep the area dry and book a visit.",
        "financial_forecast": "Treating now ($150) avoids a skin infection workup ($600+).",
        "disclaimer": "AI generated.",
        "created_at": "2026-02-14T09:00:00+00:00",
    }


def test_report_pdf_is_a_pdf():
    pdf = build_report_pdf(_scan(), {"name": "Biscuit", "species": "Dog"})
    assert pdf.startswith(b"%PDF")


def test_long_report_spans_several_pages():
    cfg = ReportConfig()
    img = render_report_image(_scan(n_observations=120), None, cfg)
    assert img.size[0] == cfg.page_width
    assert img.size[1] > cfg.page_height
    assert len(paginate(img, cfg.page_height)) == page_count(img.size[1], cfg.page_height)


def test_report_endpoint(client, db, alice_headers):
    db.scans.append({**_scan(), "id": SCAN_ID, "user_id": "user-alice", "pet_id": None})

    r = client.get(f"/api/scans/{SCAN_ID}/report.pdf", headers=alice_headers)
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert "prevetscan_Skin___Coat_2026-02-14.pdf" in r.headers["content-disposition"]
    assert r.content.startswith(b"%PDF")


def test_report_endpoint_foreign_scan(client, db, bob_headers):
    db.scans.append({**_scan(), "id": SCAN_ID, "user_id": "user-alice", "pet_id": None})
    assert client.get(f"/api/scans/{SCAN_ID}/report.pdf", headers=bob_headers).status_code == 404
