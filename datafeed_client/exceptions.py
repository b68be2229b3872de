import asyncio
from enum import Enum

import aiohttp


class ErrorKind(str, Enum):
    TRANSIENT_NETWORK = "transient_network"
    UNAUTHORIZED = "unauthorized"
    NODE_UNAVAILABLE = "node_unavailable"
    NODE_POOL_EXHAUSTED = "node_pool_exhausted"
    RETRY_EVENT = "retry_event"
    NON_RECOVERABLE = "non_recoverable"


class DatafeedClientError(Exception):
    """Base exception for DatafeedClient errors"""
    kind = ErrorKind.NON_RECOVERABLE

    def __init__(self, message: str, error_code: int = None):
        self.error_code = error_code
        super().__init__(message)


class TransientNetworkError(DatafeedClientError):
    """Request failed for a reason expected to go away on its own (timeouts, 429)"""
    kind = ErrorKind.TRANSIENT_NETWORK


class UnauthorizedError(DatafeedClientError):
    """Session token was rejected, a session refresh is needed"""
    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Session is unauthorized", error_code: int = 401):
        super().__init__(message, error_code=error_code)


class NodeUnavailableError(DatafeedClientError):
    """A backend node could not serve the request (connection failure, 5xx)"""
    kind = ErrorKind.NODE_UNAVAILABLE

    def __init__(self, node_url: str, reason: str = None, error_code: int = None):
        self.node_url = node_url
        self.reason = reason
        error_message = f"Node '{node_url}' is unavailable"
        if reason:
            error_message += f": {reason}"
        super().__init__(error_message, error_code=error_code)


class NodePoolExhaustedError(DatafeedClientError):
    """Every node of the pool failed within one logical call"""
    kind = ErrorKind.NODE_POOL_EXHAUSTED

    def __init__(self, operation_name: str, tried_nodes: list = None):
        self.operation_name = operation_name
        self.tried_nodes = list(tried_nodes or [])
        super().__init__(
            f"No node left to serve '{operation_name}' (tried: {', '.join(self.tried_nodes) or 'none'})"
        )


class RetryEventError(DatafeedClientError):
    """
    Raised by a matcher, hook or handler to ask for the current event to be
    re-queued on the datafeed instead of being treated as processed.
    """
    kind = ErrorKind.RETRY_EVENT

    def __init__(self, message: str = "Event processing must be retried"):
        super().__init__(message)


class ApiError(DatafeedClientError):
    """Non retryable HTTP error answered by a node"""

    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"API error {status}: {message}", error_code=status)


class FeedNotFoundError(ApiError):
    """The datafeed id is unknown or expired on the server side"""

    def __init__(self, feed_id: str, status: int = 400):
        self.feed_id = feed_id
        super().__init__(status, f"Datafeed '{feed_id}' not found")


class MaxRetriesExceededError(DatafeedClientError):
    """Maximum retry attempts or retry deadline exceeded"""

    def __init__(self, operation_name: str, attempts: int, elapsed: float):
        self.operation_name = operation_name
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(
            f"Retries exhausted for {operation_name} after {attempts} attempt(s) in {elapsed:.3f}s"
        )


class InvalidConfigurationError(DatafeedClientError):
    """Invalid DatafeedClient configuration"""
    def __init__(self, config_key: str, config_value: str, message: str = None):
        self.config_key = config_key
        self.config_value = config_value
        error_message = message or f"Invalid configuration for key '{config_key}' with value '{config_value}'"
        super().__init__(error_message)


class DuplicateActivityError(DatafeedClientError):
    """An activity with the same matcher is already registered"""
    def __init__(self, activity_name: str):
        self.activity_name = activity_name
        super().__init__(f"Activity '{activity_name}' is already registered")


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception raised while talking to a node to an ErrorKind"""
    if isinstance(error, DatafeedClientError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientPayloadError)):
        return ErrorKind.TRANSIENT_NETWORK
    if isinstance(error, aiohttp.ClientConnectionError):
        return ErrorKind.NODE_UNAVAILABLE
    return ErrorKind.NON_RECOVERABLE


def is_unauthorized(error: BaseException) -> bool:
    return classify_error(error) == ErrorKind.UNAUTHORIZED


def is_node_failure(error: BaseException) -> bool:
    return classify_error(error) in (
        ErrorKind.NODE_UNAVAILABLE,
        ErrorKind.NODE_POOL_EXHAUSTED,
        ErrorKind.TRANSIENT_NETWORK,
    )
