# turnstile_policy.py
# Cloudflare Turnstile server-side verification (siteverify).
# The widget token from the browser is single use; one POST, no retry.

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class TurnstileError(RuntimeError):
    pass


def verify_turnstile_token(
    token: str,
    *,
    secret_key: str,
    remote_ip: Optional[str] = None,
    verify_url: str = DEFAULT_VERIFY_URL,
    http_client: Optional[httpx.Client] = None,
) -> bool:
    """
    True if Cloudflare accepts the token.
    Raises TurnstileError when the check itself cannot be performed.
    """
    if not secret_key:
        raise TurnstileError("TURNSTILE_SECRET_KEY is not configured")
    if not token:
        return False

    form: Dict[str, Any] = {"secret": secret_key, "response": token}
    if remote_ip:
        form["remoteip"] = remote_ip

    try:
        if http_client is not None:
            r = http_client.post(verify_url, data=form)
        else:
            r = httpx.post(verify_url, data=form)
        r.raise_for_status()
        body = r.json()
    except (httpx.HTTPError, ValueError) as e:
        raise TurnstileError(f"siteverify failed: {e}") from e

    ok = bool(body.get("success"))
    if not ok:
        logger.info("[Turnstile] rejected: %s", body.get("error-codes") or [])
    return ok
