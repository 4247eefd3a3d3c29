"""Upstream access for the dashboard proxy.

Everything the ``/api/proxy/data`` route needs lives here: the settings read
from the environment, the single upstream call, and the stub payload served
when that call fails.
"""
import json
import math
import os
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2 import id_token as google_id_token

DEFAULT_UPSTREAM_URL = "http://localhost:3000"
DEFAULT_UPSTREAM_TIMEOUT = 5.0
DEFAULT_RATE_LIMIT = "120 per minute"
DEFAULT_DASHBOARD_TITLE = "Space Dashboard"
CHUNK_SIZE = 8192

STUB_SOURCE = "frontend_stub"
UNAVAILABLE = "Upstream service unavailable"


# ----------------------
# Configuration
# ----------------------
def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration, read once at startup."""

    upstream_url: str = DEFAULT_UPSTREAM_URL
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    upstream_audience: Optional[str] = None
    frontend_origin: str = "*"
    rate_limit: str = DEFAULT_RATE_LIMIT
    rate_limit_enabled: bool = True
    dashboard_title: str = DEFAULT_DASHBOARD_TITLE
    log_level: str = "INFO"

    def __post_init__(self):
        if not (math.isfinite(self.upstream_timeout) and self.upstream_timeout > 0):
            raise ValueError(f"upstream_timeout must be a positive number of seconds, got {self.upstream_timeout}")
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "upstream_url", self.upstream_url.rstrip("/"))

    @property
    def data_url(self) -> str:
        return f"{self.upstream_url}/api/data"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        upstream_url = (
            env.get("UPSTREAM_URL")
            or env.get("RUST_SERVICE_URL")
            or DEFAULT_UPSTREAM_URL
        )
        raw_timeout = env.get("UPSTREAM_TIMEOUT", "")
        try:
            timeout = float(raw_timeout) if raw_timeout.strip() else DEFAULT_UPSTREAM_TIMEOUT
        except ValueError:
            raise ValueError(f"UPSTREAM_TIMEOUT must be a number of seconds, got {raw_timeout!r}")

        return cls(
            upstream_url=upstream_url,
            upstream_timeout=timeout,
            upstream_audience=env.get("UPSTREAM_AUDIENCE") or None,
            frontend_origin=env.get("FRONTEND_ORIGIN", "*"),
            rate_limit=env.get("RATE_LIMIT", DEFAULT_RATE_LIMIT),
            rate_limit_enabled=_env_flag(env.get("RATE_LIMIT_ENABLED"), True),
            dashboard_title=env.get("DASHBOARD_TITLE", DEFAULT_DASHBOARD_TITLE),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


# ----------------------
# Errors
# ----------------------
class UpstreamUnavailable(Exception):
    """The upstream call failed in a way the client should never see.

    ``reason`` is safe to show to the browser; ``detail`` is for the log.
    """

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.detail = detail


# ----------------------
# Helpers
# ----------------------
def build_stub(reason: str) -> List[Dict[str, Any]]:
    """Fallback payload: a single synthetic record carrying the failure reason."""
    fetched_at = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return [{
        "id": 0,
        "source": STUB_SOURCE,
        "data": {"error": reason},
        "fetched_at": fetched_at.replace("+00:00", "Z"),
    }]


def get_id_token_for_upstream(audience: str) -> str:
    """Get Google ID token for upstream authentication."""
    req = GoogleRequest()
    return google_id_token.fetch_id_token(req, audience)


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def _download(url: str, headers: Dict[str, str], timeout: float, deadline: float):
    """Stream the response, giving up once ``deadline`` has passed."""
    resp = requests.get(url, headers=headers, timeout=timeout, stream=True)
    with resp:
        if not 200 <= resp.status_code < 300:
            return resp.status_code, resp.reason, b""
        chunks = []
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if time.monotonic() > deadline:
                raise requests.ReadTimeout(f"body not received within {timeout:g}s")
            chunks.append(chunk)
        return resp.status_code, resp.reason, b"".join(chunks)


def fetch_upstream(settings: Settings) -> bytes:
    """GET ``{upstream_url}/api/data`` once and return the raw JSON body.

    The whole exchange, body included, is bounded by ``upstream_timeout``.
    Raises UpstreamUnavailable for anything other than a 2xx JSON response.
    """
    headers = {"Accept": "application/json"}
    if settings.upstream_audience:
        try:
            token = get_id_token_for_upstream(settings.upstream_audience)
        except GoogleAuthError as e:
            raise UpstreamUnavailable(f"{UNAVAILABLE}: could not authenticate", str(e)) from e
        headers["Authorization"] = f"Bearer {token}"

    timeout = settings.upstream_timeout
    timed_out = f"{UNAVAILABLE}: timed out after {timeout:g}s"
    deadline = time.monotonic() + timeout

    # the worker is not joined: a stalled read must not hold the request past the deadline
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="upstream")
    future = executor.submit(_download, settings.data_url, headers, timeout, deadline)
    executor.shutdown(wait=False)

    try:
        status, reason, body = future.result(timeout=timeout)
    except FutureTimeoutError as e:
        raise UpstreamUnavailable(timed_out, f"no complete response within {timeout:g}s") from e
    # ConnectTimeout is also a ConnectionError, so Timeout goes first
    except requests.Timeout as e:
        raise UpstreamUnavailable(timed_out, str(e)) from e
    except requests.ConnectionError as e:
        raise UpstreamUnavailable(f"{UNAVAILABLE}: connection failed", str(e)) from e
    except requests.RequestException as e:
        raise UpstreamUnavailable(f"{UNAVAILABLE}: request failed", str(e)) from e

    if not 200 <= status < 300:
        raise UpstreamUnavailable(f"{UNAVAILABLE}: HTTP {status}", reason or "")

    try:
        json.loads(body, parse_constant=_reject_constant)
    except ValueError as e:
        raise UpstreamUnavailable(f"{UNAVAILABLE}: response was not valid JSON", str(e)) from e

    return body
