"""Structured exceptions raised by usage sources."""

from datetime import datetime
from typing import Optional


class UsageSourceError(Exception):
    """Base exception for all usage fetch failures."""

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        self.message = message
        self.request_id = request_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.request_id:
            return f"{self.message} Request ID: {self.request_id}"
        return self.message


class MissingTokenError(UsageSourceError):
    """No usable token was supplied."""

    def __init__(self) -> None:
        super().__init__("Missing GitHub token.")


class InvalidURLError(UsageSourceError):
    """The request URL could not be built."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Invalid URL: {url}")


class TransportError(UsageSourceError):
    """The request never produced an HTTP response."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Network error: {detail}")


class FetchTimeoutError(UsageSourceError):
    """The fetch did not finish before its deadline."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Usage fetch timed out after {timeout_seconds:g} seconds.")


class HTTPStatusError(UsageSourceError):
    """Non-2xx response without a more specific classification."""

    def __init__(
        self,
        status_code: int,
        body: Optional[str] = None,
        request_id: Optional[str] = None,
        documentation_url: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.documentation_url = documentation_url
        message = f"GitHub API error (HTTP {status_code})."
        if body:
            message = f"{message} {body}"
        if documentation_url:
            message = f"{message} Docs: {documentation_url}"
        super().__init__(message, request_id)


class RateLimitedError(UsageSourceError):
    """429, or 403 with an exhausted rate-limit quota."""

    def __init__(
        self,
        reset_at: Optional[datetime] = None,
        message: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> None:
        self.reset_at = reset_at
        self.detail = message
        parts = ["GitHub API rate limited."]
        if message:
            parts.append(message)
        if reset_at is not None:
            parts.append(f"Resets at: {reset_at.isoformat()}")
        super().__init__(" ".join(parts), request_id)


class DecodingError(UsageSourceError):
    """Response body did not have the expected shape."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to decode response: {detail}")


class UnauthorizedError(UsageSourceError):
    """401 Unauthorized - missing or invalid token."""

    def __init__(self, message: Optional[str] = None, request_id: Optional[str] = None) -> None:
        text = "Unauthorized (HTTP 401)."
        if message:
            text = f"{text} {message}"
        super().__init__(text, request_id)


class ForbiddenError(UsageSourceError):
    """403 Forbidden - token lacks the required permission."""

    def __init__(self, message: Optional[str] = None, request_id: Optional[str] = None) -> None:
        text = "Forbidden (HTTP 403)."
        if message:
            text = f"{text} {message}"
        super().__init__(text, request_id)


class UnexpectedResponseError(UsageSourceError):
    """Response was not a usable HTTP response."""

    def __init__(self, detail: str = "Unexpected response from GitHub.") -> None:
        super().__init__(detail)
