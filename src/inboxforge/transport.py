"""Summary: Minimal JSON-over-HTTP transport for platform APIs.

Importance: Avoids new dependencies while supporting Graph, TikTok, and SendGrid calls.
Alternatives: Use requests, httpx, or provider SDKs.
"""

from __future__ import annotations

import json
import logging
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from inboxforge.errors import UpstreamTransientError


logger = logging.getLogger(__name__)


def request_json(
    method: str,
    url: str,
    timeout: int,
    params: dict[str, str] | None = None,
    form: dict[str, str] | None = None,
    json_body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Summary: Send a request and parse the JSON response.

    Importance: Turns HTTP failures and in-body platform errors into UpstreamTransientError.
    Alternatives: Let urllib exceptions propagate to every caller.
    """

    if params:
        url = f"{url}?{urllib.parse.urlencode(params)}"
    request_headers = dict(headers or {})
    data = None
    if form is not None:
        data = urllib.parse.urlencode(form).encode("utf-8")
        request_headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
    elif json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        request_headers.setdefault("Content-Type", "application/json")
    request = urllib.request.Request(url, data=data, headers=request_headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        raise UpstreamTransientError(
            _error_message(error_body) or str(exc.reason), status_code=exc.code
        ) from exc
    except urllib.error.URLError as exc:
        raise UpstreamTransientError(f"Upstream unreachable: {exc.reason}") from exc
    except TimeoutError as exc:
        raise UpstreamTransientError("Upstream request timed out") from exc
    except UnicodeDecodeError as exc:
        raise UpstreamTransientError("Upstream returned a non-UTF-8 response") from exc
    except OSError as exc:
        raise UpstreamTransientError(f"Upstream connection failed: {exc}") from exc
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise UpstreamTransientError("Upstream returned a non-JSON response") from exc
    if isinstance(payload, dict) and payload.get("error") and not _is_empty_error(payload["error"]):
        raise UpstreamTransientError(_error_message(raw) or "Upstream reported an error")
    return payload if isinstance(payload, dict) else {"data": payload}


def _is_empty_error(error: Any) -> bool:
    # TikTok wraps every response in an error object whose code is "ok" on success.
    return isinstance(error, dict) and error.get("code") in ("ok", 0, "0")


def _error_message(body: str) -> str | None:
    """Extract the human-readable message from a platform error body."""

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("error_user_msg") or error.get("code")
        return str(message) if message else None
    if isinstance(error, str):
        return payload.get("error_description") or error
    errors = payload.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("message")
    return payload.get("message")
