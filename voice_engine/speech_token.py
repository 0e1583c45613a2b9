"""Fetch the short-lived streaming credential from the token endpoint."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from voice_engine.errors import TokenError

log = logging.getLogger("voice_engine.speech_token")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"Failed to get API key ({response.status_code})"


async def fetch_speech_token(
    endpoint: str,
    timeout: float = 10.0,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """POST to the token endpoint and return its ``apiKey``.

    Raises TokenError on transport failure, a non-2xx status, or a
    response without a key.  Never retries.
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=timeout)
    try:
        response = await client.post(endpoint, headers={"Content-Type": "application/json"})
    except httpx.HTTPError as exc:
        log.error("event=token_fetch_failed endpoint=%s error=%s", endpoint, exc)
        raise TokenError(f"Failed to get API key ({exc.__class__.__name__})") from exc
    finally:
        if owns_client:
            await client.aclose()

    if not response.is_success:
        message = _error_message(response)
        log.error("event=token_rejected status=%d message=%s", response.status_code, message)
        raise TokenError(message, status_code=response.status_code)

    try:
        body = response.json()
    except ValueError as exc:
        raise TokenError("Token endpoint returned invalid JSON", status_code=response.status_code) from exc

    api_key = body.get("apiKey") if isinstance(body, dict) else None
    if not api_key:
        log.error("event=token_missing status=%d", response.status_code)
        raise TokenError("Token endpoint returned no API key", status_code=response.status_code)

    log.info("event=token_fetched status=%d", response.status_code)
    return str(api_key)
