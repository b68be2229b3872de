import asyncio
import itertools
from typing import Any, Dict, List, Optional

import pytest

from datafeed_client.exceptions import ApiError, NodeUnavailableError, UnauthorizedError
from datafeed_client.retry import RetryConfig


def message_sent(event_id: str, text: str, user_id: int = 1001, stream_id: str = "stream-1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": "MESSAGESENT",
        "timestamp": 1700000000000,
        "initiator": {"user": {"userId": user_id, "displayName": "Jane Doe", "username": "jane"}},
        "payload": {
            "messageSent": {
                "message": {
                    "messageId": f"msg-{event_id}",
                    "stream": {"streamId": stream_id, "streamType": "ROOM"},
                    "message": f'<div data-format="PresentationML" data-version="2.0">{text}</div>',
                }
            }
        },
    }


def user_joined(event_id: str, user_id: int = 1001, affected_user_id: int = 2002) -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": "USERJOINEDROOM",
        "initiator": {"user": {"userId": user_id}},
        "payload": {
            "userJoinedRoom": {
                "stream": {"streamId": "stream-1"},
                "affectedUserId": affected_user_id,
            }
        },
    }


class FakeFeedServer:
    """
    In-memory datafeed behaving like the agent: the last delivered window is
    redelivered until its ack id comes back, requeued events are appended to
    the queue again.
    """

    def __init__(self, events: Optional[List[Dict[str, Any]]] = None, batch_size: int = 100):
        self.queue: List[Dict[str, Any]] = list(events or [])
        self.batch_size = batch_size
        self.down: set = set()
        self.unauthorized_reads = 0
        self.missing_feed_reads = 0
        self.reads: List[Dict[str, Any]] = []
        self.requeued: List[str] = []
        self.created = 0
        self._ids = itertools.count(1)
        self._window: List[Dict[str, Any]] = []
        self._window_ack: Optional[str] = None
        self._known: Dict[str, Dict[str, Any]] = {}

    def push(self, *events):
        self.queue.extend(events)

    def delivered_ids(self) -> List[List[str]]:
        return [read["event_ids"] for read in self.reads if read["event_ids"]]

    async def start(self):
        pass

    async def close(self):
        pass

    async def request(self, node, method, path, data=None, params=None, headers=None, timeout=None):
        await asyncio.sleep(0)
        if node.base_url in self.down:
            raise NodeUnavailableError(node.base_url, reason="Connection refused")

        if path.endswith("/create") or (method == "POST" and path.endswith("/datafeeds")):
            self.created += 1
            return {"id": f"feed-{self.created}"}
        if path.endswith("/read"):
            return await self._read(node, data or {})
        if path.endswith("/requeue"):
            for event_id in data["eventIds"]:
                self.requeued.append(event_id)
                self.queue.append(self._known[event_id])
            return None
        raise ApiError(404, f"No route for {method} {path}")

    async def _read(self, node, data):
        if self.unauthorized_reads:
            self.unauthorized_reads -= 1
            raise UnauthorizedError()
        if self.missing_feed_reads:
            self.missing_feed_reads -= 1
            raise ApiError(400, "Unknown datafeed")

        ack_id = data.get("ackId") or None
        if self._window and ack_id == self._window_ack:
            self._window = []

        if not self._window:
            self._window = self.queue[:self.batch_size]
            self.queue = self.queue[self.batch_size:]
            self._window_ack = f"ack-{next(self._ids)}"

        if not self._window:
            # long poll with nothing to deliver
            await asyncio.sleep(0.01)

        for event in self._window:
            self._known[event["id"]] = event
        self.reads.append({
            "node": node.base_url,
            "ack_id": ack_id,
            "event_ids": [e["id"] for e in self._window],
        })
        return {"ackId": self._window_ack, "events": list(self._window)}


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fast_retry():
    return RetryConfig(max_attempts=3, initial_interval_ms=1, multiplier=2, max_interval_ms=5)


@pytest.fixture
def feed_server():
    return FakeFeedServer()
