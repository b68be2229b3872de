"""
Node pool and load-balanced dispatch of calls across backend nodes.

Two disciplines are supported by the same client:

- per-call rotation: every call asks the strategy for a node (stateless APIs)
- sticky rotation: the selected node is kept until ``rotate()`` is called or
  the node fails (datafeed long polling, which needs node affinity)
"""
import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel, Field

from .exceptions import ErrorKind, InvalidConfigurationError, NodePoolExhaustedError, classify_error

logger = logging.getLogger(__name__)


class LoadBalancingMode(str, Enum):
    RANDOM = "RANDOM"
    ROUND_ROBIN = "ROUND_ROBIN"
    STICKY = "STICKY"


class Node(BaseModel):
    base_url: str
    healthy: bool = True
    last_failure: Optional[float] = Field(default=None, description="time.monotonic() of the last failure")

    def url_for(self, path: str) -> str:
        if not path.startswith('/'):
            path = '/' + path
        return f"{self.base_url.rstrip('/')}{path}"


class NodePool:
    """The set of nodes a client balances over, with their liveness"""

    def __init__(self, nodes: Iterable[Union[Node, str]], cooldown_seconds: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self._nodes: List[Node] = []
        for node in nodes:
            if isinstance(node, str):
                node = Node(base_url=node)
            if any(n.base_url == node.base_url for n in self._nodes):
                continue
            self._nodes.append(node)
        if not self._nodes:
            raise InvalidConfigurationError("nodes", "[]", "A node pool needs at least one node")
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes)

    def __len__(self):
        return len(self._nodes)

    def get(self, base_url: str) -> Optional[Node]:
        return next((n for n in self._nodes if n.base_url == base_url), None)

    def is_available(self, node: Node) -> bool:
        """Healthy, or unhealthy for longer than the cooldown"""
        if node.healthy:
            return True
        return node.last_failure is None or self._clock() - node.last_failure >= self.cooldown_seconds

    def available(self, exclude: Iterable[str] = ()) -> List[Node]:
        excluded = set(exclude)
        return [n for n in self._nodes if n.base_url not in excluded and self.is_available(n)]

    def mark_unhealthy(self, node: Node) -> bool:
        """
        Record a failure of ``node``. Returns True only for the caller that
        performed the healthy -> unhealthy transition.
        """
        now = self._clock()
        transitioned = node.healthy
        node.healthy = False
        node.last_failure = now
        if transitioned:
            logger.warning("Node %s marked unhealthy", node.base_url)
        return transitioned

    def mark_healthy(self, node: Node) -> bool:
        if node.healthy:
            return False
        node.healthy = True
        logger.info("Node %s is healthy again", node.base_url)
        return True


class RotationStrategy(ABC):
    """Chooses the next node among the eligible ones"""

    @abstractmethod
    def select(self, nodes: Sequence[Node], eligible: Sequence[Node]) -> Optional[Node]:
        ...


class RandomRotationStrategy(RotationStrategy):
    """Uniform choice on every selection; pass a seed for reproducible sequences"""

    def __init__(self, seed: Optional[int] = None, rng: random.Random = None):
        self._rng = rng or random.Random(seed)

    def select(self, nodes: Sequence[Node], eligible: Sequence[Node]) -> Optional[Node]:
        if not eligible:
            return None
        return self._rng.choice(list(eligible))


class RoundRobinRotationStrategy(RotationStrategy):
    """Walks the pool in declaration order, skipping ineligible nodes"""

    def __init__(self):
        self._cursor = -1

    def select(self, nodes: Sequence[Node], eligible: Sequence[Node]) -> Optional[Node]:
        eligible_urls = {n.base_url for n in eligible}
        size = len(nodes)
        for step in range(1, size + 1):
            index = (self._cursor + step) % size
            if nodes[index].base_url in eligible_urls:
                self._cursor = index
                return nodes[index]
        return None


def strategy_for(mode: LoadBalancingMode, seed: Optional[int] = None) -> RotationStrategy:
    if mode == LoadBalancingMode.RANDOM:
        return RandomRotationStrategy(seed=seed)
    return RoundRobinRotationStrategy()


class LoadBalancedClient:
    """
    Routes a logical call to one node of the pool and fails over to the
    other nodes on node-level failures.
    """

    def __init__(self, pool: NodePool, strategy: RotationStrategy, sticky: bool = False, metrics=None):
        self.pool = pool
        self.strategy = strategy
        self.sticky = sticky
        self.metrics = metrics
        self._current: Optional[Node] = None
        self._rotated_from: Optional[str] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_mode(cls, pool: NodePool, mode: LoadBalancingMode, seed: Optional[int] = None,
                  sticky: bool = None, metrics=None) -> "LoadBalancedClient":
        if sticky is None:
            sticky = mode == LoadBalancingMode.STICKY
        return cls(pool, strategy_for(mode, seed), sticky=sticky, metrics=metrics)

    @property
    def current_node(self) -> Optional[Node]:
        return self._current

    def rotate(self):
        """Force the selection of another node on the next call"""
        if self._current is not None:
            self._rotated_from = self._current.base_url
            logger.info("Rotating away from node %s", self._current.base_url)
        self._current = None
        if self.metrics is not None:
            self.metrics.record_rotation()

    def release(self):
        """Forget any node affinity"""
        self._current = None
        self._rotated_from = None

    async def call(self, operation: Callable, *args, operation_name: str = None, **kwargs) -> Any:
        """
        Await ``operation(node, *args, **kwargs)`` on the selected node.

        A node-level failure marks the node unhealthy and replays the call on
        the next node; each node is tried at most once per logical call.
        """
        operation_name = operation_name or getattr(operation, "__name__", "call")
        tried: List[str] = []
        last_error: Optional[BaseException] = None

        while True:
            node = await self._select(exclude=tried)
            if node is None:
                raise NodePoolExhaustedError(operation_name, tried) from last_error

            try:
                result = await operation(node, *args, **kwargs)
            except Exception as e:
                if classify_error(e) != ErrorKind.NODE_UNAVAILABLE:
                    raise
                last_error = e
                tried.append(node.base_url)
                await self._on_node_failure(node, operation_name, e)
                continue

            self.pool.mark_healthy(node)
            return result

    async def _select(self, exclude: List[str]) -> Optional[Node]:
        async with self._lock:
            current = self._current
            if (self.sticky and current is not None and current.base_url not in exclude
                    and self.pool.is_available(current)):
                return current

            eligible = self.pool.available(exclude)
            if self._rotated_from is not None:
                others = [n for n in eligible if n.base_url != self._rotated_from]
                eligible = others or eligible
                self._rotated_from = None

            node = self.strategy.select(self.pool.nodes, eligible)
            self._current = node
            if node is not None:
                logger.debug("Selected node %s", node.base_url)
            return node

    async def _on_node_failure(self, node: Node, operation_name: str, error: BaseException):
        self.pool.mark_unhealthy(node)
        async with self._lock:
            if self._current is node:
                self._current = None
        if self.metrics is not None:
            self.metrics.record_node_failure(node.base_url)
        logger.warning("Call %s failed on node %s: %s", operation_name, node.base_url, error)
