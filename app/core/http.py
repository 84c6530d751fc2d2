import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from .config import settings

_DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
_sportmonks_clients: dict[str, httpx.AsyncClient] = {}


def _http_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=20, max_keepalive_connections=10)


def _sportmonks_base(api: str) -> str:
    bases = {
        "football": settings.sportmonks_football_base_url,
        "core": settings.sportmonks_core_base_url,
        "odds": settings.sportmonks_odds_base_url,
    }
    if api not in bases:
        raise ValueError(f"Unknown Sportmonks API {api!r}")
    return (bases[api] or "").rstrip("/")


def sportmonks_client(api: str = "football") -> httpx.AsyncClient:
    """Shared client per Sportmonks API family (football, core, odds)."""
    client = _sportmonks_clients.get(api)
    if client is None or client.is_closed:
        headers = {"Accept": "application/json"}
        if (settings.sportmonks_auth_mode or "").strip().lower() == "header":
            headers["Authorization"] = settings.sportmonks_api_token
        client = httpx.AsyncClient(
            base_url=_sportmonks_base(api),
            headers=headers,
            timeout=httpx.Timeout(settings.sportmonks_timeout_seconds),
            limits=_http_limits(),
        )
        _sportmonks_clients[api] = client
    return client


async def init_http_clients() -> None:
    if not settings.provider_configured:
        return
    for api in ("football", "core", "odds"):
        sportmonks_client(api)


async def close_http_clients() -> None:
    for client in list(_sportmonks_clients.values()):
        if not client.is_closed:
            await client.aclose()
    _sportmonks_clients.clear()


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _backoff_delay(attempt: int, base: float, cap: float, retry_after: float | None) -> float:
    delay = min(cap, base * (2 ** attempt))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    retries: int = 3,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    retry_statuses: set[int] | None = None,
    retry_exceptions: tuple[type[BaseException], ...] = (httpx.RequestError,),
    _sleep=asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    statuses = retry_statuses or _DEFAULT_RETRY_STATUSES
    for attempt in range(retries + 1):
        try:
            response = await client.request(method, url, params=params, **kwargs)
        except retry_exceptions:
            if attempt >= retries:
                raise
            await _sleep(_backoff_delay(attempt, backoff_base, backoff_max, None))
            continue

        if response.status_code in statuses:
            if attempt >= retries:
                return response
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            await response.aclose()
            await _sleep(_backoff_delay(attempt, backoff_base, backoff_max, retry_after))
            continue
        return response

    raise RuntimeError("request_with_retries: exhausted retries")
