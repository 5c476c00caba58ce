import json
from typing import Any

import httpx

from .errors import UpstreamError

BAD_GATEWAY_STATUS = 502
GATEWAY_TIMEOUT_STATUS = 504
MAX_ERROR_TEXT_CHARS = 500


def build_client(*, timeout: float = 60.0, idle_timeout: float = 60.0) -> httpx.AsyncClient:
    # The read timeout bounds the idle gap between upstream stream reads.
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, read=idle_timeout),
    )


def _parse_error_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None


def upstream_error_from_response(response: httpx.Response) -> UpstreamError:
    """Build an :class:`UpstreamError` from an already-read error response."""
    status = response.status_code
    payload = _parse_error_body(response.content)
    message: str | None = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    elif payload is None:
        text = response.text.strip()
        if text:
            payload = text[:MAX_ERROR_TEXT_CHARS]
            message = payload
    if message is None:
        reason = response.reason_phrase
        message = f"Provider API error: {reason}" if reason else f"Provider API error: {status}"
    return UpstreamError(message, status_code=status, body=payload)


def upstream_error_from_transport(exc: httpx.HTTPError) -> UpstreamError:
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError(
            f"Provider request timed out: {exc}" if str(exc) else "Provider request timed out",
            status_code=GATEWAY_TIMEOUT_STATUS,
        )
    return UpstreamError(str(exc) or "provider error", status_code=BAD_GATEWAY_STATUS)


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    body: dict[str, Any],
) -> Any:
    try:
        response = await client.post(url, headers=headers, json=body)
    except httpx.HTTPError as exc:
        raise upstream_error_from_transport(exc) from exc
    if response.is_error:
        raise upstream_error_from_response(response)
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError(
            "Provider returned a malformed response", status_code=BAD_GATEWAY_STATUS
        ) from exc
