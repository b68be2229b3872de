import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

import aiohttp

from .exceptions import (
    ApiError,
    NodeUnavailableError,
    TransientNetworkError,
    UnauthorizedError,
)
from .loadbalancing import Node

logger = logging.getLogger(__name__)


class HttpTransport:
    """
    Low-level HTTP access to one node, turning HTTP outcomes into the
    client's error taxonomy.
    """

    def __init__(self, timeout: float = 30, session: Optional[aiohttp.ClientSession] = None,
                 default_headers: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self._http_session = session
        self._owns_session = session is None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

    async def close(self):
        if self._http_session and self._owns_session:
            await self._http_session.close()
        self._http_session = None

    async def request(
        self,
        node: Node,
        method: str,
        path: str,
        data: Optional[Any] = None,
        params: Optional[Dict] = None,
        headers: Optional[Dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Execute a single HTTP request against ``node``"""
        if self._http_session is None:
            await self.start()

        url = node.url_for(path)
        request_headers = {
            "X-Request-ID": str(uuid.uuid4()),
            "Content-Type": "application/json",
            **self.default_headers,
            **(headers or {}),
        }

        try:
            async with self._http_session.request(
                method=method.upper(),
                url=url,
                json=data,
                params=params,
                headers=request_headers,
                timeout=aiohttp.ClientTimeout(total=timeout or self.timeout),
            ) as response:
                if 200 <= response.status < 300:
                    if response.status == 204:
                        return None
                    return await response.json()
                await self._handle_error_response(response, node)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Request to {url} timed out") from e
        except aiohttp.ClientConnectionError as e:
            raise NodeUnavailableError(node.base_url, reason=str(e)) from e

    async def _handle_error_response(self, response, node: Node):
        message = await self._error_message(response)
        status = response.status
        logger.debug("Node %s answered %d: %s", node.base_url, status, message)

        if status == 401:
            raise UnauthorizedError(message)
        if status == 429:
            raise TransientNetworkError(f"Rate limited by {node.base_url}: {message}", error_code=status)
        if status >= 500:
            raise NodeUnavailableError(node.base_url, reason=f"Node returned {status}: {message}", error_code=status)
        raise ApiError(status, message)

    async def _error_message(self, response) -> str:
        """Extract the message of a structured error body, falling back to raw text"""
        try:
            error_data = await response.json(content_type=None)
            if isinstance(error_data, dict) and "message" in error_data:
                return str(error_data["message"])
        except (aiohttp.ContentTypeError, ValueError):
            pass
        return await response.text()
