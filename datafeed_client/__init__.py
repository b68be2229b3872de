"""
Datafeed Client Library

Consumes a long-polled event feed across a pool of agent nodes and
dispatches its events to registered activities, with retry-with-recovery,
node failover and re-queueing of events whose processing must be retried.
"""

from .client import DatafeedClient
from .config import DatafeedClientConfig, FeedIdStoreConfig, load_config
from .activity import (
    ActivityContext,
    ActivityDescriptor,
    ActivityDispatcher,
    ActivityInfo,
    ActivityType,
    FormReply,
    SlashCommand,
)
from .auth import AuthSession
from .datafeed import (
    DatafeedLoop,
    DatafeedVersion,
    FeedAckPolicy,
    FeedApi,
    FeedState,
    ResendWindowPolicy,
    SelectiveAckPolicy,
)
from .events import EventBatch, EventKind, FeedEvent, Initiator
from .listener import RealTimeEventListener
from .loadbalancing import (
    LoadBalancedClient,
    LoadBalancingMode,
    Node,
    NodePool,
    RandomRotationStrategy,
    RotationStrategy,
    RoundRobinRotationStrategy,
)
from .metrics import MetricsCollector
from .repository import FeedIdRepository, InMemoryFeedIdRepository, RedisFeedIdRepository
from .retry import RetryConfig, RetryHandler, RetryRule
from .transport import HttpTransport
from .exceptions import (
    ErrorKind,
    DatafeedClientError,
    TransientNetworkError,
    UnauthorizedError,
    NodeUnavailableError,
    NodePoolExhaustedError,
    RetryEventError,
    ApiError,
    FeedNotFoundError,
    MaxRetriesExceededError,
    InvalidConfigurationError,
    DuplicateActivityError,
    classify_error,
)

__version__ = "0.1.0"

__all__ = [
    # Main client
    "DatafeedClient",
    "DatafeedClientConfig",
    "FeedIdStoreConfig",
    "load_config",

    # Activities
    "ActivityContext",
    "ActivityDescriptor",
    "ActivityDispatcher",
    "ActivityInfo",
    "ActivityType",
    "FormReply",
    "SlashCommand",

    # Datafeed
    "AuthSession",
    "DatafeedLoop",
    "DatafeedVersion",
    "FeedAckPolicy",
    "FeedApi",
    "FeedState",
    "ResendWindowPolicy",
    "SelectiveAckPolicy",
    "EventBatch",
    "EventKind",
    "FeedEvent",
    "Initiator",
    "RealTimeEventListener",
    "FeedIdRepository",
    "InMemoryFeedIdRepository",
    "RedisFeedIdRepository",

    # Components
    "LoadBalancedClient",
    "LoadBalancingMode",
    "Node",
    "NodePool",
    "RandomRotationStrategy",
    "RotationStrategy",
    "RoundRobinRotationStrategy",
    "MetricsCollector",
    "RetryConfig",
    "RetryHandler",
    "RetryRule",
    "HttpTransport",

    # Exceptions
    "ErrorKind",
    "DatafeedClientError",
    "TransientNetworkError",
    "UnauthorizedError",
    "NodeUnavailableError",
    "NodePoolExhaustedError",
    "RetryEventError",
    "ApiError",
    "FeedNotFoundError",
    "MaxRetriesExceededError",
    "InvalidConfigurationError",
    "DuplicateActivityError",
    "classify_error",
]
