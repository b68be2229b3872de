import logging
from typing import Any, Callable, Dict, Optional

from .activity import ActivityDescriptor, ActivityDispatcher
from .auth import AuthSession, Refresher
from .config import DatafeedClientConfig
from .datafeed import DatafeedLoop, FeedApi
from .exceptions import is_unauthorized
from .loadbalancing import LoadBalancedClient, NodePool
from .metrics import MetricsCollector
from .repository import FeedIdRepository, InMemoryFeedIdRepository, RedisFeedIdRepository
from .retry import RetryHandler, RetryRule
from .transport import HttpTransport

logger = logging.getLogger(__name__)


class DatafeedClient:
    """
    Entry point wiring the load-balanced clients, the retry handler, the
    datafeed loop and the activity dispatcher together.
    """

    def __init__(
        self,
        config: DatafeedClientConfig,
        refresher: Refresher,
        transport: Optional[HttpTransport] = None,
        repository: Optional[FeedIdRepository] = None,
        metrics: Optional[MetricsCollector] = None,
        on_fatal: Optional[Callable[[BaseException], Any]] = None,
    ):
        self.config = config
        self.metrics = metrics or MetricsCollector(config.client_name)
        self.auth = AuthSession(refresher)
        self.transport = transport or HttpTransport(timeout=config.request_timeout_seconds)
        self.retry_handler = RetryHandler(config.retry, metrics=self.metrics)

        # Stateless calls rotate on every call, the datafeed keeps its node
        self.api_client = LoadBalancedClient.from_mode(
            NodePool(config.nodes, cooldown_seconds=config.node_cooldown_seconds),
            config.policy,
            seed=config.seed,
            metrics=self.metrics,
        )
        self.datafeed_client = LoadBalancedClient.from_mode(
            NodePool(config.nodes, cooldown_seconds=config.node_cooldown_seconds),
            config.policy,
            seed=config.seed,
            sticky=True,
            metrics=self.metrics,
        )

        self.dispatcher = ActivityDispatcher(
            bot_user_id=config.bot_user_id,
            bot_display_name=config.bot_display_name,
            metrics=self.metrics,
        )
        self.datafeed = DatafeedLoop(
            FeedApi(
                self.datafeed_client,
                self.transport,
                self.auth,
                version=config.version,
                poll_timeout_seconds=config.poll_timeout_seconds,
            ),
            self.retry_handler,
            repository=repository or self._build_repository(),
            rotate_after_failures=config.rotate_after_failures,
            on_fatal=on_fatal,
            metrics=self.metrics,
        )
        self.datafeed.subscribe(self.dispatcher)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Open the HTTP session and start polling the datafeed"""
        await self.transport.start()
        await self.datafeed.start()

    async def close(self):
        """Stop the datafeed loop and release resources"""
        await self.datafeed.stop()
        await self.transport.close()

    def register(self, matcher, handler=None, **kwargs) -> ActivityDescriptor:
        """Register an activity, see ``ActivityDispatcher.register``"""
        return self.dispatcher.register(matcher, handler, **kwargs)

    def subscribe(self, listener):
        self.datafeed.subscribe(listener)

    def unsubscribe(self, listener):
        self.datafeed.unsubscribe(listener)

    async def call(
        self,
        method: str,
        path: str,
        data: Optional[Any] = None,
        params: Optional[Dict] = None,
        headers: Optional[Dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Stateless API call: balanced across nodes, retried on transient
        failures and re-authenticated on 401.
        """
        retry_handler = self.retry_handler.add_rule(
            RetryRule(is_unauthorized, self.auth.refresh, name="refresh-session")
        )
        return await retry_handler.execute_with_retry(self._execute_request, f"{method.upper()} {path}",
                                                      method, path, data, params, headers, timeout)

    async def _execute_request(self, method, path, data, params, headers, timeout) -> Any:
        await self.auth.ensure()
        return await self.api_client.call(
            self.transport.request,
            method,
            path,
            data=data,
            params=params,
            headers={**self.auth.headers(), **(headers or {})},
            timeout=timeout,
            operation_name=f"{method.upper()} {path}",
        )

    # Convenience methods
    async def get(self, path: str, params: Optional[Dict] = None, **kwargs) -> Any:
        return await self.call("GET", path, params=params, **kwargs)

    async def post(self, path: str, data: Optional[Any] = None, **kwargs) -> Any:
        return await self.call("POST", path, data=data, **kwargs)

    def get_metrics(self) -> Dict[str, Any]:
        """Get client metrics"""
        return self.metrics.get_metrics()

    def _build_repository(self) -> FeedIdRepository:
        store = self.config.feed_id_store
        if store.redis_url:
            return RedisFeedIdRepository(store.redis_url, key=store.key, ttl_seconds=store.ttl_seconds)
        return InMemoryFeedIdRepository()
