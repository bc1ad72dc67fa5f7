"""
API Client for the Ivanti REST/OData endpoints
Async HTTP client used by identity resolution and the authorization probe
"""

import httpx
import logging
from typing import Any, Dict, Optional

from sr_assistant.core.errors import AuthorizationFailed, ToolUnavailable

logger = logging.getLogger(__name__)

# Statuses that mean "try again later" rather than "this will never work"
TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}
AUTH_FAILURE_STATUSES = {401, 403}


class APIClient:
    """Async HTTP client for the Ivanti tenant, authenticated with a REST API key"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"rest_api_key={api_key}"
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def get(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """Make GET request and return the decoded JSON body"""
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"GET {url}")

        try:
            response = await self.client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise ToolUnavailable(f"Timed out calling {endpoint}") from e
        except httpx.RequestError as e:
            raise ToolUnavailable(f"Request error calling {endpoint}: {e}") from e

        self._raise_for_status(endpoint, response)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ToolUnavailable(
                f"Non-JSON response from {endpoint}", retryable=False, status_code=response.status_code
            ) from e

    @staticmethod
    def _raise_for_status(endpoint: str, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in AUTH_FAILURE_STATUSES:
            raise AuthorizationFailed(f"{endpoint} returned HTTP {status}", status_code=status)
        raise ToolUnavailable(
            f"{endpoint} returned HTTP {status}: {response.text[:200]}",
            retryable=status in TRANSIENT_STATUSES,
            status_code=status,
        )

    async def close(self):
        """Close client connection"""
        await self.client.aclose()

    async def __aenter__(self) -> "APIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
