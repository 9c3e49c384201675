"""Workspace (Notion-compatible) API client with error translation and 429 retry."""

from typing import TYPE_CHECKING, Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from portal_sync.config import Settings, get_settings
from portal_sync.core.exceptions import (
    WorkspaceAPIError,
    WorkspaceAuthError,
    WorkspaceConnectionError,
    WorkspaceNotFoundError,
    WorkspaceRateLimitError,
    WorkspaceServerError,
    WorkspaceTimeoutError,
    WorkspaceValidationError,
)
from portal_sync.core.logging import get_logger

if TYPE_CHECKING:
    from portal_sync.infrastructure.queue.rate_limiter import RateLimiter

logger = get_logger(__name__)


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text or response.reason_phrase


class WorkspaceClient:
    """Async client for the workspace page/block API.

    Wraps httpx.AsyncClient with:
    - Translation of HTTP failures into the Workspace* error taxonomy
    - Bounded retry of 429 responses honoring Retry-After
    - Optional rate limiter consulted before every HTTP request
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        max_rate_limit_retries: int = 3,
        rate_limit_max_wait: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
        rate_limiter: "RateLimiter | None" = None,
    ):
        """Initialize workspace client.

        Args:
            api_key: Integration token. If not provided, uses settings.
            base_url: API root URL. If not provided, uses settings.
            api_version: Value for the Notion-Version header.
            timeout: Per-request timeout in seconds.
            max_rate_limit_retries: Attempts made for a request answered with 429.
            rate_limit_max_wait: Upper bound on a single 429 back-off sleep.
            transport: Optional httpx transport (tests use MockTransport).
            rate_limiter: Budget shared with the sync dispatcher; each request
                (including 429 retries) takes one unit.
        """
        settings = settings or get_settings()
        self._max_rate_limit_retries = max(max_rate_limit_retries, 1)
        self._rate_limit_max_wait = rate_limit_max_wait
        self._rate_limiter = rate_limiter
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.workspace_api_url,
            timeout=timeout or settings.workspace_request_timeout_seconds,
            headers={
                "Authorization": f"Bearer {api_key or settings.workspace_api_key}",
                "Notion-Version": api_version or settings.workspace_api_version,
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "WorkspaceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(retry_after, self._rate_limit_max_wait)
        backoff = wait_exponential(multiplier=1, min=1, max=self._rate_limit_max_wait)
        return backoff(retry_state)

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(WorkspaceRateLimitError),
            stop=stop_after_attempt(self._max_rate_limit_retries),
            wait=self._wait,
            reraise=True,
        ):
            with attempt:
                return await self._send(method, path, json)
        raise WorkspaceAPIError(f"No attempt made for {method} {path}")

    async def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a single API call.

        Raises:
            WorkspaceRateLimitError: On 429 (triggers retry)
            WorkspaceAuthError: On 401/403
            WorkspaceNotFoundError: On 404
            WorkspaceServerError: On 409 conflicts and 5xx
            WorkspaceValidationError: On any other 4xx
            WorkspaceTimeoutError: On request timeout
            WorkspaceConnectionError: On transport failures
        """
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()
        logger.debug("Calling workspace API", method=method, path=path)
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            logger.warning("Workspace request timed out", method=method, path=path)
            raise WorkspaceTimeoutError(f"Request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            logger.warning(
                "Workspace transport error", method=method, path=path, error=str(e)
            )
            raise WorkspaceConnectionError(f"Connection failed: {e}") from e

        status = response.status_code
        if status < 400:
            if not response.content:
                return {}
            return response.json()

        message = _error_message(response)
        details = {"method": method, "path": path, "status": status}

        if status == 429:
            retry_after = _parse_retry_after(response)
            logger.warning(
                "Rate limit hit, will retry", path=path, retry_after=retry_after
            )
            raise WorkspaceRateLimitError(
                f"Rate limit exceeded: {message}", details, status, retry_after
            )
        if status in (401, 403):
            logger.error("Authentication failed", path=path, status=status)
            raise WorkspaceAuthError(message, details, status)
        if status == 404:
            raise WorkspaceNotFoundError(message, details, status)
        if status == 409 or status >= 500:
            logger.warning("Workspace server error", path=path, status=status)
            raise WorkspaceServerError(message, details, status)
        raise WorkspaceValidationError(message, details, status)

    # --- pages ---

    async def create_page(
        self,
        parent: dict[str, Any],
        properties: dict[str, Any],
        children: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Create a page under a database or another page.

        Returns:
            The created page object (``id`` holds the external id)
        """
        body: dict[str, Any] = {"parent": parent, "properties": properties}
        if children:
            body["children"] = children
        page = await self._request("POST", "/pages", body)
        logger.info("Workspace page created", page_id=page.get("id"))
        return page

    async def update_page(
        self,
        page_id: str,
        properties: dict[str, Any],
    ) -> dict[str, Any]:
        return await self._request("PATCH", f"/pages/{page_id}", {"properties": properties})

    async def archive_page(self, page_id: str) -> dict[str, Any]:
        """Archive (soft-delete) a page."""
        page = await self._request("PATCH", f"/pages/{page_id}", {"archived": True})
        logger.info("Workspace page archived", page_id=page_id)
        return page

    # --- blocks ---

    async def append_block(
        self,
        parent_id: str,
        children: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Append blocks to a page or block.

        Returns:
            The API list response; ``results`` holds the created blocks
        """
        return await self._request(
            "PATCH", f"/blocks/{parent_id}/children", {"children": children}
        )

    async def update_block(self, block_id: str, block: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/blocks/{block_id}", block)

    async def delete_block(self, block_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/blocks/{block_id}")
