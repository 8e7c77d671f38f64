from datetime import datetime, timezone

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import PlatformError, PlatformTimeout, PlatformUnavailable
from ..utils.logger import debug

TRANSIENT_STATUS = (429, 502, 503, 504)
AUTH_STATUS = (401, 403)


class TransientHTTPError(Exception):
    def __init__(self, status: int, text: str):
        super().__init__(f"HTTP {status}: {text[:200]}")
        self.status = status


def json_headers(token: str | None = None) -> dict:
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


@retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=6),
    retry=(retry_if_exception_type((TransientHTTPError, requests.ConnectionError))
           & retry_if_not_exception_type(requests.Timeout)),
)
def _send(platform: str, method: str, url: str, **kwargs):
    r = requests.request(method, url, **kwargs)
    if 200 <= r.status_code < 300:
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            raise PlatformError(platform, f"{method} {url} returned non-JSON body", r.status_code)
    if r.status_code in TRANSIENT_STATUS:
        raise TransientHTTPError(r.status_code, r.text)
    if r.status_code in AUTH_STATUS:
        raise PlatformUnavailable(platform, f"credentials rejected on {method} {url}", r.status_code)
    if r.status_code >= 500:
        raise PlatformUnavailable(platform, f"{method} {url} failed: {r.text[:200]}", r.status_code)
    raise PlatformError(platform, f"{method} {url} failed: {r.text[:200]}", r.status_code)


def request_json(platform: str, method: str, url: str, *, timeout: float, **kwargs):
    """Send one request with bounded timeout; map transport failures to platform errors."""
    debug(f"[http] {platform} {method} {url} {kwargs.get('params') or ''}")
    try:
        return _send(platform, method, url, timeout=timeout, **kwargs)
    except TransientHTTPError as e:
        raise PlatformUnavailable(platform, f"{method} {url} kept failing: {e}", e.status) from e
    except requests.Timeout as e:
        raise PlatformTimeout(platform, f"{method} {url} timed out after {timeout}s") from e
    except requests.ConnectionError as e:
        raise PlatformUnavailable(platform, f"cannot reach {url}: {e}") from e
    except requests.RequestException as e:
        raise PlatformUnavailable(platform, f"{method} {url} failed in transport: {e}") from e


def unwrap_list(payload) -> list:
    """Accept both bare JSON arrays and ``{"data": [...]}`` envelopes."""
    if isinstance(payload, dict):
        payload = payload.get("data", [])
    return payload if isinstance(payload, list) else []


def parse_timestamp(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
