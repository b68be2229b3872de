import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

Refresher = Callable[[], Union[str, Awaitable[str]]]


class AuthSession:
    """
    Session state shared by every call of a client. Requests are stamped
    with the current token; ``refresh()`` obtains a new one.
    """

    def __init__(self, refresher: Refresher, session_token: Optional[str] = None,
                 header_name: str = "sessionToken"):
        self._refresher = refresher
        self._session_token = session_token
        self.header_name = header_name
        self.refresh_count = 0
        self._lock = asyncio.Lock()

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    async def refresh(self) -> str:
        """Run the refresher; concurrent callers share one refresh"""
        seen = self.refresh_count
        async with self._lock:
            if self.refresh_count != seen:
                return self._session_token

            result = self._refresher()
            if inspect.isawaitable(result):
                result = await result
            self._session_token = result
            self.refresh_count += 1
            logger.info("Session refreshed (refresh #%d)", self.refresh_count)
            return self._session_token

    async def ensure(self) -> str:
        if self._session_token is None:
            return await self.refresh()
        return self._session_token

    def headers(self) -> Dict[str, str]:
        if self._session_token is None:
            return {}
        return {self.header_name: self._session_token}
