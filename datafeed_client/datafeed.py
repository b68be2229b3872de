"""
Datafeed long-polling loop.

The loop reads batches of events through a sticky load-balanced client,
hands every event to its listeners and then settles the batch with its
``FeedAckPolicy``:

- ``ResendWindowPolicy`` (datafeed v1): on the first re-queue request the rest
  of the batch is skipped and the ack id is kept, so the whole window is
  redelivered on the next read.
- ``SelectiveAckPolicy`` (datafeed v2): the batch is processed to the end, the
  ack id moves on and only the failed events are posted back to the feed.
"""
import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .auth import AuthSession
from .events import EventBatch, FeedEvent
from .exceptions import (
    ApiError,
    DatafeedClientError,
    FeedNotFoundError,
    RetryEventError,
    is_node_failure,
    is_unauthorized,
)
from .loadbalancing import LoadBalancedClient
from .repository import FeedIdRepository, InMemoryFeedIdRepository
from .retry import RetryHandler, RetryRule
from .transport import HttpTransport

logger = logging.getLogger(__name__)

# Extra client-side time on top of the server-side long-poll wait
READ_TIMEOUT_MARGIN_SECONDS = 10.0


class DatafeedVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"

    @classmethod
    def of(cls, version: Optional[str]) -> "DatafeedVersion":
        if version is not None and str(version).lower() == "v2":
            return cls.V2
        return cls.V1


class FeedState(str, Enum):
    CREATED = "CREATED"
    SUBSCRIBED = "SUBSCRIBED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


class FeedApi:
    """Datafeed endpoints, reached through the (sticky) load-balanced client"""

    BASE_PATHS = {
        DatafeedVersion.V1: "/agent/v4/datafeed",
        DatafeedVersion.V2: "/agent/v5/datafeeds",
    }

    def __init__(self, client: LoadBalancedClient, transport: HttpTransport, auth: AuthSession,
                 version: DatafeedVersion = DatafeedVersion.V1, poll_timeout_seconds: float = 30.0):
        self.client = client
        self.transport = transport
        self.auth = auth
        self.version = version
        self.poll_timeout_seconds = poll_timeout_seconds
        self.base_path = self.BASE_PATHS[version]

    async def create_feed(self) -> str:
        path = self.base_path + "/create" if self.version == DatafeedVersion.V1 else self.base_path
        response = await self._request("POST", path, operation_name="createDatafeed")
        return response["id"]

    async def read_feed(self, feed_id: str, ack_id: Optional[str]) -> EventBatch:
        try:
            response = await self._request(
                "POST",
                f"{self.base_path}/{feed_id}/read",
                data={"ackId": ack_id or ""},
                timeout=self.poll_timeout_seconds + READ_TIMEOUT_MARGIN_SECONDS,
                operation_name="readDatafeed",
            )
        except ApiError as e:
            if e.status in (400, 404):
                raise FeedNotFoundError(feed_id, e.status) from e
            raise
        return EventBatch.from_wire(response)

    async def requeue_events(self, feed_id: str, event_ids: List[str]):
        if self.version != DatafeedVersion.V2:
            raise ApiError(405, "Event requeue is only available on datafeed v2")
        await self._request(
            "POST",
            f"{self.base_path}/{feed_id}/requeue",
            data={"eventIds": list(event_ids)},
            operation_name="requeueEvents",
        )

    async def _request(self, method: str, path: str, data: Any = None, timeout: float = None,
                       operation_name: str = None) -> Any:
        await self.auth.ensure()
        return await self.client.call(
            self.transport.request,
            method,
            path,
            data=data,
            headers=self.auth.headers(),
            timeout=timeout,
            operation_name=operation_name,
        )


Requeue = Callable[[List[str]], Awaitable[Any]]


class FeedAckPolicy(ABC):
    """Decides how a batch holding re-queue requests is acknowledged"""

    version: DatafeedVersion
    # Skip the rest of a batch once one of its events asked to be re-queued
    stop_on_requeue: bool = False

    @abstractmethod
    async def settle(self, requeue: Requeue, current_ack: Optional[str], batch: EventBatch,
                     requeued: List[FeedEvent]) -> Optional[str]:
        """Return the ack id to send with the next read"""


class ResendWindowPolicy(FeedAckPolicy):
    version = DatafeedVersion.V1
    stop_on_requeue = True

    async def settle(self, requeue: Requeue, current_ack: Optional[str], batch: EventBatch,
                     requeued: List[FeedEvent]) -> Optional[str]:
        if requeued:
            logger.info("Keeping ack id, %d event(s) of the batch will be redelivered", len(batch.events))
            return current_ack
        return batch.ack_id or current_ack


class SelectiveAckPolicy(FeedAckPolicy):
    version = DatafeedVersion.V2

    async def settle(self, requeue: Requeue, current_ack: Optional[str], batch: EventBatch,
                     requeued: List[FeedEvent]) -> Optional[str]:
        if requeued:
            try:
                await requeue([event.id for event in requeued])
            except DatafeedClientError as e:
                logger.warning("Could not requeue events, the whole batch will be redelivered: %s", e)
                return current_ack
            logger.info("Requeued %d event(s) on the datafeed", len(requeued))
        return batch.ack_id or current_ack


def ack_policy_for(version: DatafeedVersion) -> FeedAckPolicy:
    if version == DatafeedVersion.V2:
        return SelectiveAckPolicy()
    return ResendWindowPolicy()


class DatafeedLoop:
    """
    Polls one datafeed and pushes its events to the subscribed listeners.

    Listeners are awaited one event at a time, so a slow listener delays the
    next read.
    """

    def __init__(
        self,
        api: FeedApi,
        retry_handler: RetryHandler,
        ack_policy: Optional[FeedAckPolicy] = None,
        repository: Optional[FeedIdRepository] = None,
        rotate_after_failures: int = 3,
        on_fatal: Optional[Callable[[BaseException], Any]] = None,
        metrics=None,
    ):
        self.api = api
        self.ack_policy = ack_policy or ack_policy_for(api.version)
        self.repository = repository or InMemoryFeedIdRepository()
        self.rotate_after_failures = rotate_after_failures
        self.on_fatal = on_fatal
        self.metrics = metrics
        self.fatal_error: Optional[BaseException] = None

        self._retry = retry_handler.with_rules(
            RetryRule(is_unauthorized, self.api.auth.refresh, name="refresh-session"),
            RetryRule(lambda e: isinstance(e, FeedNotFoundError), self._forget_feed, name="recreate-datafeed"),
            RetryRule(is_node_failure, self._on_node_failure, name="node-failure"),
        )
        self._listeners: List[Any] = []
        self._state = FeedState.CREATED
        self._feed_id: Optional[str] = None
        self._ack_id: Optional[str] = None
        self._node_failures = 0
        self._stop_requested = False
        self._interruptible = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def feed_id(self) -> Optional[str]:
        return self._feed_id

    def subscribe(self, listener):
        """Add a listener, i.e. any object with an ``async on_event(event)`` method"""
        self._listeners.append(listener)

    def unsubscribe(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> asyncio.Task:
        """Start polling in a background task"""
        self._begin()
        self._task = asyncio.create_task(self._run_loop())
        return self._task

    async def run(self):
        """Poll in the current task until stopped; raises the fatal error, if any"""
        self._begin()
        self._task = asyncio.current_task()
        await self._run_loop()
        if self.fatal_error is not None:
            raise self.fatal_error

    async def wait(self):
        """Wait for a loop started with ``start()``; raises the fatal error, if any"""
        if self._task is not None and self._task is not asyncio.current_task():
            await self._task
        if self.fatal_error is not None:
            raise self.fatal_error

    async def stop(self):
        """
        Stop polling. An in-flight read or backoff wait is interrupted, a batch
        being dispatched is completed first.
        """
        if self._state in (FeedState.CREATED, FeedState.STOPPED):
            return
        self._stop_requested = True
        self._state = FeedState.STOPPING
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        if self._interruptible:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _begin(self):
        if self._state in (FeedState.SUBSCRIBED, FeedState.STOPPING):
            raise RuntimeError("The datafeed loop is already running")
        self._state = FeedState.SUBSCRIBED
        self._stop_requested = False
        self.fatal_error = None
        self._feed_id = self._feed_id or self.repository.read()
        if self.metrics is not None:
            self.metrics.record_loop_state(True)
        logger.info("Datafeed loop (%s) started", self.api.version.value)

    async def _run_loop(self):
        try:
            while not self._stop_requested:
                await self._poll_cycle()
        except asyncio.CancelledError:
            if not self._stop_requested:
                raise
            # the cancellation came from stop(), the task itself carries on
            task = asyncio.current_task()
            if task is not None and hasattr(task, "uncancel"):
                task.uncancel()
        except Exception as e:
            self.fatal_error = e
            logger.error("Datafeed loop stopped on unrecoverable error: %s", e, exc_info=True)
            await self._notify_fatal(e)
        finally:
            self._shutdown()

    async def _poll_cycle(self):
        started = time.monotonic()
        self._interruptible = True
        try:
            batch = await self._retry.execute_with_retry(self._read_once, "readDatafeed")
        except Exception:
            if self.metrics is not None:
                self.metrics.record_poll_failure()
            raise
        finally:
            self._interruptible = False

        self._node_failures = 0
        if self.metrics is not None:
            self.metrics.record_poll(time.monotonic() - started, len(batch.events))

        await self._process(batch)

    async def _read_once(self) -> EventBatch:
        if self._feed_id is None:
            self._feed_id = await self.api.create_feed()
            self._ack_id = None
            self.repository.write(self._feed_id)
            logger.info("Created datafeed %s", self._feed_id)
        return await self.api.read_feed(self._feed_id, self._ack_id)

    async def _process(self, batch: EventBatch):
        requeued: List[FeedEvent] = []
        for event in batch.events:
            try:
                await self._deliver(event)
            except RetryEventError as e:
                logger.info("Event %s (%s) will be redelivered: %s", event.id, event.kind.value, e)
                requeued.append(event)
                if self.ack_policy.stop_on_requeue:
                    break

        self._ack_id = await self.ack_policy.settle(self._requeue, self._ack_id, batch, requeued)
        if requeued and self.metrics is not None:
            self.metrics.record_requeue(len(requeued))

    async def _deliver(self, event: FeedEvent):
        retry_error: Optional[RetryEventError] = None
        for listener in list(self._listeners):
            try:
                await listener.on_event(event)
            except RetryEventError as e:
                retry_error = e
            except Exception:
                logger.warning("Listener %s failed on event %s", type(listener).__name__, event.id, exc_info=True)
        if retry_error is not None:
            raise retry_error

    async def _requeue(self, event_ids: List[str]):
        await self._retry.execute_with_retry(self.api.requeue_events, "requeueEvents", self._feed_id, event_ids)

    def _forget_feed(self):
        logger.warning("Datafeed %s is gone, a new one will be created", self._feed_id)
        self._feed_id = None
        self._ack_id = None
        self.repository.clear()

    def _on_node_failure(self):
        self._node_failures += 1
        if self._node_failures >= self.rotate_after_failures:
            self._node_failures = 0
            self.api.client.rotate()

    async def _notify_fatal(self, error: BaseException):
        if self.on_fatal is None:
            return
        try:
            result = self.on_fatal(error)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Fatal error callback failed")

    def _shutdown(self):
        self._state = FeedState.STOPPED
        self._interruptible = False
        self.api.client.release()
        if self.metrics is not None:
            self.metrics.record_loop_state(False)
        logger.info("Datafeed loop stopped")
