"""
GitHub billing usage client.

Fetches the authenticated login and its billing usage line items, and
classifies every failure into a ``UsageSourceError`` subclass.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from usage_guard.config.loader import DEFAULT_GITHUB_BASE_URL
from usage_guard.storage.models import BillingLineItem, BillingUsageReport, Period
from .errors import (
    DecodingError,
    ForbiddenError,
    HTTPStatusError,
    InvalidURLError,
    MissingTokenError,
    RateLimitedError,
    TransportError,
    UnauthorizedError,
    UnexpectedResponseError,
)

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2022-11-28"


class GitHubBillingClient:
    """Async client for the GitHub enhanced billing usage endpoints.

    Usage::

        async with GitHubBillingClient() as client:
            report = await client.fetch_usage(token, Period.current())
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GITHUB_BASE_URL,
        timeout: float = 30.0,
        api_version: str = DEFAULT_API_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: GitHub API base URL (override for GitHub Enterprise Server)
            timeout: Per-request timeout in seconds
            api_version: Value of the ``X-GitHub-Api-Version`` header
            transport: Optional httpx transport, used by tests
            clock: Returns the current UTC time; used to resolve ``Retry-After``
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": api_version,
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubBillingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Public API ───────────────────────────────────────────────

    async def fetch_usage(self, token: str, period: Period) -> BillingUsageReport:
        """Fetch the authenticated login and its usage items for ``period``."""
        login = await self.fetch_login(token)
        items = await self.fetch_usage_items(login, period, token)
        return BillingUsageReport(login=login, items=items)

    async def fetch_login(self, token: str) -> str:
        """GET /user and return the login.

        Raises:
            DecodingError: If the response carries no login
        """
        payload = await self._get_json("/user", token)
        login = payload.get("login") if isinstance(payload, dict) else None
        if not isinstance(login, str) or not login.strip():
            raise DecodingError("GitHub did not return a login for the authenticated user.")
        return login.strip()

    async def fetch_usage_items(
        self,
        login: str,
        period: Period,
        token: str,
    ) -> Tuple[BillingLineItem, ...]:
        """GET /users/{login}/settings/billing/usage for one period."""
        path = f"/users/{quote(login, safe='')}/settings/billing/usage"
        payload = await self._get_json(
            path,
            token,
            params={"year": str(period.year), "month": str(period.month)},
        )
        if not isinstance(payload, dict):
            raise DecodingError("usage response is not a JSON object")

        raw_items = payload.get("usageItems")
        if raw_items is None:
            return ()
        if not isinstance(raw_items, list):
            raise DecodingError("'usageItems' is not a list")

        items = tuple(_parse_line_item(raw, index) for index, raw in enumerate(raw_items))
        logger.debug("Fetched %d usage items for %s (%s)", len(items), login, period.key)
        return items

    # ── Internal helpers ─────────────────────────────────────────

    async def _get_json(
        self,
        path: str,
        token: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        if not token or not token.strip():
            raise MissingTokenError()

        headers = {"Authorization": f"Bearer {token.strip()}"}
        try:
            resp = await self._client.get(path, params=params, headers=headers)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol):
            raise InvalidURLError(f"{self._base_url}{path}")
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__)

        self._raise_for_status(resp)

        try:
            return resp.json()
        except ValueError as e:
            raise DecodingError(str(e))

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if 200 <= resp.status_code < 300:
            return
        if resp.status_code < 200:
            raise UnexpectedResponseError(f"Unexpected HTTP status {resp.status_code}.")

        request_id = resp.headers.get("x-github-request-id")
        message, documentation_url = _parse_error_body(resp)

        now = self._clock()
        retry_after = parse_retry_after(resp.headers.get("retry-after"), now)
        reset_at = parse_rate_limit_reset(resp.headers.get("x-ratelimit-reset"))
        # Retry-After wins over the rate-limit reset header.
        effective_reset = now + timedelta(seconds=retry_after) if retry_after is not None else reset_at

        if resp.status_code == 429:
            raise RateLimitedError(effective_reset, message, request_id)
        if resp.status_code == 401:
            raise UnauthorizedError(message, request_id)
        if resp.status_code == 403:
            if resp.headers.get("x-ratelimit-remaining") == "0":
                raise RateLimitedError(effective_reset, message, request_id)
            raise ForbiddenError(message, request_id)
        if retry_after is not None:
            raise RateLimitedError(effective_reset, message, request_id)

        raise HTTPStatusError(resp.status_code, message, request_id, documentation_url)


def parse_retry_after(value: Optional[str], now: datetime) -> Optional[float]:
    """Parse a ``Retry-After`` header (delay-seconds or HTTP-date) into seconds from ``now``."""
    if value is None or not value.strip():
        return None
    value = value.strip()
    try:
        seconds = float(value)
        return max(0.0, seconds) if math.isfinite(seconds) else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now).total_seconds())


def parse_rate_limit_reset(value: Optional[str]) -> Optional[datetime]:
    """Parse ``x-ratelimit-reset`` (epoch seconds) into an aware datetime."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value.strip()), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def _parse_error_body(resp: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
    if not resp.content:
        return None, None
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip() or None, None
    if isinstance(body, dict):
        message = body.get("message")
        docs = body.get("documentation_url")
        return (
            message if isinstance(message, str) else None,
            docs if isinstance(docs, str) else None,
        )
    return resp.text.strip() or None, None


def _parse_line_item(raw: Any, index: int) -> BillingLineItem:
    if not isinstance(raw, dict):
        raise DecodingError(f"usage item {index} is not an object")
    product = raw.get("product")
    # The live API names the unit price 'pricePerUnit'.
    unit_price = raw.get("unitPrice", raw.get("pricePerUnit"))
    return BillingLineItem(
        product=product if isinstance(product, str) else None,
        quantity=_optional_number(raw.get("quantity"), "quantity", index),
        net_amount=_optional_number(raw.get("netAmount"), "netAmount", index),
        unit_price=_optional_number(unit_price, "unitPrice", index),
        discount_amount=_optional_number(raw.get("discountAmount"), "discountAmount", index),
    )


def _optional_number(value: Any, name: str, index: int) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodingError(f"usage item {index} field '{name}' is not a number")
    return float(value)
