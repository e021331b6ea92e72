"""
chat_policy.py

"Second opinion" chat relayed from Gemini's streaming chat.

- history comes from the browser as Gemini-style contents
  ([{role, parts: [{text}]}]) and is passed through after shape coercion
- reasoning mode ("Deep Reasoning" toggle) swaps in the reasoning model
  with a larger output budget
- open_chat_stream() starts the upstream call eagerly so a provider failure
  surfaces before any byte is sent to the browser
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

import google.generativeai as genai

logger = logging.getLogger(__name__)


class ChatError(RuntimeError):
    pass


SYSTEM_INSTRUCTION = """You are 'PreVetScan' AI.

CORE MISSION: You are an UNBIASED Second Opinion.
Unlike insurance companies, you have no financial incentive to deny claims or upsell treatments.

CAPABILITIES:
1. Symptom Triage: Analyze photos of pets to assess urgency.
2. QUOTE AUDITING: If the user uploads a vet bill or estimate, analyze line items. Flag vague charges, compare costs to regional averages.
3. Prevention ROI: Always highlight the cost of inaction.

If asked about treatment options, mention:
1. The conservative/preventative path.
2. The standard veterinary path.
3. The rough estimated costs of both.

ALWAYS clarify that you are an AI and not a replacement for a real doctor."""

DEFAULT_IMAGE_PROMPT = "Analyze this image."


@dataclass(frozen=True)
class ChatModelConfig:
    model_name: str
    max_output_tokens: int
    temperature: float


def select_chat_config(
    use_deep_thinking: bool,
    *,
    model_name: str,
    reasoning_model_name: str,
) -> ChatModelConfig:
    if use_deep_thinking:
        return ChatModelConfig(model_name=reasoning_model_name, max_output_tokens=8192, temperature=0.4)
    return ChatModelConfig(model_name=model_name, max_output_tokens=2048, temperature=0.7)


def normalize_history(history: Any) -> List[Dict[str, Any]]:
    if not isinstance(history, list):
        return []

    out: List[Dict[str, Any]] = []
    for item in history:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        if role not in ("user", "model"):
            role = "user"

        texts: List[str] = []
        parts = item.get("parts")
        if isinstance(parts, list):
            for p in parts:
                if isinstance(p, dict) and isinstance(p.get("text"), str):
                    texts.append(p["text"])
                elif isinstance(p, str):
                    texts.append(p)
        elif isinstance(item.get("text"), str):
            texts.append(item["text"])

        texts = [t for t in texts if t.strip()]
        if not texts:
            continue
        out.append({"role": role, "parts": [{"text": t} for t in texts]})
    return out


def build_message_payload(message: str, image_jpeg: Optional[bytes]) -> List[Any]:
    text = (message or "").strip() or DEFAULT_IMAGE_PROMPT
    payload: List[Any] = [text]
    if image_jpeg:
        payload.append({"mime_type": "image/jpeg", "data": image_jpeg})
    return payload


def _chunk_text(chunk: Any) -> str:
    try:
        return chunk.text or ""
    except ValueError:
        # chunk without text parts (safety / finish metadata only)
        return ""


def open_chat_stream(
    history: List[Dict[str, Any]],
    message: str,
    image_jpeg: Optional[bytes],
    config: ChatModelConfig,
    *,
    api_key: str,
) -> Iterable[Any]:
    if not api_key:
        raise ChatError("GEMINI_API_KEY is not configured")

    try:
        genai.configure(api_key=api_key)
        model = genai.GenerativeModel(
            config.model_name,
            system_instruction=SYSTEM_INSTRUCTION,
            generation_config={
                "max_output_tokens": config.max_output_tokens,
                "temperature": config.temperature,
            },
        )
        chat = model.start_chat(history=history)
        return chat.send_message(build_message_payload(message, image_jpeg), stream=True)
    except Exception as e:
        raise ChatError(f"Gemini chat failed: {e}") from e


def relay_text(upstream: Iterable[Any]) -> Iterator[str]:
    """
    Yields each upstream fragment as soon as it arrives, in order.
    Ends when upstream ends (possibly without yielding anything).
    """
    count = 0
    try:
        for chunk in upstream:
            text = _chunk_text(chunk)
            if not text:
                continue
            count += 1
            yield text
    except Exception:
        logger.exception("[Chat] upstream stream failed after %d chunks", count)
        raise
    logger.info("[Chat] stream closed after %d chunks", count)
