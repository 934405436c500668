"""GitHub Gist API client.

Thin authenticated client over the single-document store: each gist is a
document holding named files. Transient failures are retried here and only
here; everything else is raised straight to the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..exceptions import ApiError, AuthError, NetworkError, RateLimitError
from ..utils.datetime import ensure_aware, from_timestamp, parse_iso


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.github.com"
USER_AGENT = "Shelf-Bookmark-Manager/1.0"
PAGE_SIZE = 100


@dataclass
class GistFile:
    """One named content blob inside a gist."""

    filename: str
    content: Optional[str] = None
    size: int = 0
    raw_url: Optional[str] = None
    truncated: bool = False

    @classmethod
    def from_api(cls, filename: str, data: Dict[str, Any]) -> "GistFile":
        return cls(
            filename=data.get("filename", filename),
            content=data.get("content"),
            size=int(data.get("size") or 0),
            raw_url=data.get("raw_url"),
            truncated=bool(data.get("truncated", False)),
        )


@dataclass
class GistDocument:
    """Handle for a gist; ``files`` content is only present on full fetches."""

    id: str
    description: str = ""
    files: Dict[str, GistFile] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    html_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def size(self) -> int:
        return sum(f.size for f in self.files.values())

    def content_of(self, filename: str) -> Optional[str]:
        gist_file = self.files.get(filename)
        return gist_file.content if gist_file else None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GistDocument":
        def parse_time(value: Optional[str]) -> Optional[datetime]:
            if not value:
                return None
            try:
                return parse_iso(value)
            except ValueError:
                return None

        files = {
            name: GistFile.from_api(name, info or {})
            for name, info in (data.get("files") or {}).items()
        }
        return cls(
            id=str(data["id"]),
            description=data.get("description") or "",
            files=files,
            created_at=parse_time(data.get("created_at")),
            updated_at=parse_time(data.get("updated_at")),
            html_url=data.get("html_url"),
            raw=data,
        )


@dataclass
class RateLimitStatus:
    """Most recently observed server quota."""

    limit: int
    remaining: int
    reset_at: datetime
    used: int = 0


class GistClient:
    """Async GitHub Gist API client with retry and rate-limit handling."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 30.0,
                 max_retries: int = 3, retry_delay: float = 1.0,
                 rate_limit_buffer: int = 10, max_rate_limit_wait: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.time):
        """Initialize the client.

        Args:
            base_url: API root
            timeout: Per-request timeout in seconds
            max_retries: Total attempts for transient failures
            retry_delay: Base delay for exponential backoff, in seconds
            rate_limit_buffer: Requests to keep in reserve before waiting for reset
            max_rate_limit_wait: Longest proactive wait; longer waits raise instead
            transport: Optional httpx transport (tests pass a MockTransport)
            sleep: Awaitable sleep, injectable for tests
            clock: Seconds-since-epoch clock, injectable for tests
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.rate_limit_buffer = rate_limit_buffer
        self.max_rate_limit_wait = max_rate_limit_wait
        self._sleep = sleep
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._rate_limit: Optional[RateLimitStatus] = None
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    # Authentication

    def authenticate(self, token: str, expires_at: Optional[datetime] = None):
        """Use ``token`` as the bearer credential for subsequent requests."""
        if not token:
            raise AuthError("Empty GitHub token")
        self._token = token
        self._token_expires_at = ensure_aware(expires_at)

    def is_authenticated(self) -> bool:
        if not self._token:
            return False
        if self._token_expires_at and from_timestamp(self._clock()) >= self._token_expires_at:
            logger.info("GitHub token expired, clearing it")
            self.logout()
            return False
        return True

    def logout(self):
        self._token = None
        self._token_expires_at = None

    # Rate limiting

    def get_rate_limit_status(self) -> Optional[RateLimitStatus]:
        return self._rate_limit

    def _update_rate_limit(self, headers: httpx.Headers):
        limit = headers.get("X-RateLimit-Limit")
        remaining = headers.get("X-RateLimit-Remaining")
        reset = headers.get("X-RateLimit-Reset")
        if not (limit and remaining and reset):
            return
        try:
            self._rate_limit = RateLimitStatus(
                limit=int(limit),
                remaining=int(remaining),
                reset_at=from_timestamp(int(reset)),
                used=int(headers.get("X-RateLimit-Used") or 0),
            )
        except ValueError:
            logger.debug(f"Ignoring malformed rate limit headers: {limit}/{remaining}/{reset}")

    async def _wait_for_rate_limit(self):
        """Sleep until reset when the remaining quota is inside the buffer."""
        status = self._rate_limit
        if status is None or status.remaining > self.rate_limit_buffer:
            return

        wait = status.reset_at.timestamp() - self._clock()
        if wait <= 0:
            return
        wait += 1.0

        if self.max_rate_limit_wait is not None and wait > self.max_rate_limit_wait:
            raise RateLimitError(
                f"Rate limit nearly exhausted ({status.remaining} left). "
                f"Resets at {status.reset_at.strftime('%H:%M:%S')} UTC",
                reset_at=status.reset_at,
            )

        logger.warning(f"Rate limit approaching. Waiting {round(wait)}s until reset.")
        await self._sleep(wait)

    # Requests

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }

    async def _request(self, method: str, endpoint: str, json_data: Optional[Dict] = None,
                       params: Optional[Dict] = None) -> httpx.Response:
        """Make an authenticated request, retrying transient failures.

        Raises:
            AuthError: If not authenticated or the token is rejected
            RateLimitError: If the quota is exhausted
            ApiError: For any other 4xx response
            NetworkError: If transport errors or 5xx responses exhaust the retries
        """
        if not self.is_authenticated():
            raise AuthError("Not authenticated with GitHub")

        await self._wait_for_rate_limit()

        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self.client.request(
                    method, url, headers=self._headers(), json=json_data, params=params
                )
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    await self._backoff(attempt, f"{method} {endpoint} failed: {e}")
                    continue
                logger.error(f"All {self.max_retries} attempts failed for {method} {endpoint}")
                raise NetworkError(f"Network error: {e}") from e

            self._update_rate_limit(response.headers)

            if response.is_success:
                return response

            if response.status_code >= 500:
                if attempt < self.max_retries:
                    await self._backoff(attempt, f"{method} {endpoint} returned {response.status_code}")
                    continue
                logger.error(f"All {self.max_retries} attempts failed for {method} {endpoint}")
                raise NetworkError(
                    f"GitHub API error {response.status_code}: {self._error_message(response)}",
                    status_code=response.status_code,
                )

            self._raise_for_client_error(response)

        # Unreachable: the loop either returns or raises
        raise NetworkError(f"{method} {endpoint} failed")

    async def _backoff(self, attempt: int, reason: str):
        delay = self.retry_delay * (2 ** (attempt - 1))
        logger.warning(f"Attempt {attempt} failed, retrying in {delay}s: {reason}")
        await self._sleep(delay)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return response.reason_phrase

    def _raise_for_client_error(self, response: httpx.Response):
        status = response.status_code
        message = self._error_message(response)

        if status == 401:
            logger.error("GitHub rejected the token; clearing it")
            self.logout()
            raise AuthError("Authentication failed. Please re-authenticate.")

        remaining = response.headers.get("X-RateLimit-Remaining")
        if status in (403, 429) and ("rate limit" in message.lower() or remaining == "0"):
            reset = response.headers.get("X-RateLimit-Reset")
            reset_at = from_timestamp(int(reset)) if reset and reset.isdigit() else None
            when = f" Resets at {reset_at.strftime('%H:%M:%S')} UTC" if reset_at else ""
            raise RateLimitError(f"Rate limit exceeded.{when}", reset_at=reset_at)

        try:
            body = response.json()
        except ValueError:
            body = response.text
        raise ApiError(message or f"GitHub API error: {status}", status_code=status, response=body)

    # Documents

    async def get_user(self) -> Dict[str, Any]:
        """Get the authenticated user's profile."""
        response = await self._request("GET", "/user")
        return response.json()

    async def list_documents(self) -> List[GistDocument]:
        """List every gist of the authenticated user (file content omitted)."""
        documents = []
        page = 1
        while True:
            response = await self._request("GET", "/gists", params={"per_page": PAGE_SIZE, "page": page})
            batch = response.json()
            documents.extend(GistDocument.from_api(item) for item in batch)
            if len(batch) < PAGE_SIZE:
                return documents
            page += 1

    async def find_document(self, matcher: Callable[[GistDocument], bool]) -> Optional[GistDocument]:
        """Return the first gist accepted by ``matcher``, or None."""
        for document in await self.list_documents():
            if matcher(document):
                return document
        return None

    async def get_document(self, document_id: str) -> GistDocument:
        """Fetch a gist with the full content of every file."""
        response = await self._request("GET", f"/gists/{document_id}")
        document = GistDocument.from_api(response.json())
        for gist_file in document.files.values():
            if gist_file.truncated and gist_file.raw_url:
                logger.debug(f"Fetching truncated file {gist_file.filename} from raw URL")
                raw = await self._request("GET", gist_file.raw_url)
                gist_file.content = raw.text
                gist_file.truncated = False
        return document

    async def create_document(self, description: str, files: Dict[str, str],
                              public: bool = False) -> GistDocument:
        """Create a gist from ``{filename: content}``."""
        payload = {
            "description": description,
            "public": public,
            "files": {name: {"content": content} for name, content in files.items()},
        }
        response = await self._request("POST", "/gists", json_data=payload)
        return GistDocument.from_api(response.json())

    async def update_document(self, document_id: str, files: Dict[str, str],
                              description: Optional[str] = None) -> GistDocument:
        """Overwrite the named files of a gist; other files are left alone."""
        payload: Dict[str, Any] = {
            "files": {name: {"content": content} for name, content in files.items()},
        }
        if description is not None:
            payload["description"] = description
        response = await self._request("PATCH", f"/gists/{document_id}", json_data=payload)
        return GistDocument.from_api(response.json())

    async def delete_document(self, document_id: str):
        await self._request("DELETE", f"/gists/{document_id}")
