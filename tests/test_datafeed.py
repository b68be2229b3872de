import asyncio
from collections import Counter
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeFeedServer, message_sent, wait_until

from datafeed_client.auth import AuthSession
from datafeed_client.datafeed import (
    DatafeedLoop,
    DatafeedVersion,
    FeedApi,
    FeedState,
    ResendWindowPolicy,
    SelectiveAckPolicy,
)
from datafeed_client.events import EventBatch
from datafeed_client.exceptions import (
    ApiError,
    MaxRetriesExceededError,
    RetryEventError,
    TransientNetworkError,
)
from datafeed_client.loadbalancing import LoadBalancedClient, LoadBalancingMode, NodePool
from datafeed_client.repository import InMemoryFeedIdRepository
from datafeed_client.retry import RetryConfig, RetryHandler

NODES = ["http://agent-a", "http://agent-b"]


def make_loop(server, version=DatafeedVersion.V1, retry=None, nodes=NODES, **kwargs) -> DatafeedLoop:
    client = LoadBalancedClient.from_mode(NodePool(nodes), LoadBalancingMode.ROUND_ROBIN, sticky=True)
    api = FeedApi(client, server, AuthSession(lambda: "session-token"), version=version, poll_timeout_seconds=1)
    retry = retry or RetryConfig(max_attempts=3, initial_interval_ms=1, max_interval_ms=5)
    return DatafeedLoop(api, RetryHandler(retry), **kwargs)


class CountingListener:
    """Counts deliveries per event id and fails the given ids once with RetryEventError"""

    def __init__(self, fail_once=()):
        self.calls = Counter()
        self._fail_once = set(fail_once)

    async def on_event(self, event):
        self.calls[event.id] += 1
        if event.id in self._fail_once:
            self._fail_once.discard(event.id)
            raise RetryEventError(f"{event.id} not ready")


def three_messages():
    return [message_sent("e1", "one"), message_sent("e2", "two"), message_sent("e3", "three")]


@pytest.mark.asyncio
async def test_v1_retry_event_redelivers_whole_window():
    server = FakeFeedServer(three_messages())
    listener = CountingListener(fail_once=["e2"])
    loop = make_loop(server, DatafeedVersion.V1)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: len(server.reads) >= 3)
    await loop.stop()

    assert listener.calls == {"e1": 2, "e2": 2, "e3": 1}
    assert server.delivered_ids()[:2] == [["e1", "e2", "e3"], ["e1", "e2", "e3"]]
    assert server.reads[1]["ack_id"] is None
    assert server.reads[2]["ack_id"] == "ack-1"
    assert server.requeued == []


@pytest.mark.asyncio
async def test_v2_retry_event_requeues_only_failed_event():
    server = FakeFeedServer(three_messages())
    listener = CountingListener(fail_once=["e2"])
    loop = make_loop(server, DatafeedVersion.V2)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: listener.calls["e2"] == 2)
    await loop.stop()

    assert listener.calls == {"e1": 1, "e2": 2, "e3": 1}
    assert server.requeued == ["e2"]
    assert server.delivered_ids()[:2] == [["e1", "e2", "e3"], ["e2"]]
    assert server.reads[1]["ack_id"] == "ack-1"


@pytest.mark.asyncio
async def test_listener_failures_do_not_block_the_batch():
    server = FakeFeedServer(three_messages())
    broken = MagicMock()
    broken.on_event = AsyncMock(side_effect=RuntimeError("boom"))
    listener = CountingListener()
    loop = make_loop(server)
    loop.subscribe(broken)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: len(server.reads) >= 2)
    await loop.stop()

    assert listener.calls == {"e1": 1, "e2": 1, "e3": 1}
    assert server.reads[1]["ack_id"] == "ack-1"


@pytest.mark.asyncio
async def test_unauthorized_read_refreshes_session():
    server = FakeFeedServer([message_sent("e1", "hello")])
    server.unauthorized_reads = 1
    listener = CountingListener()
    loop = make_loop(server)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: listener.calls["e1"] == 1)
    await loop.stop()

    # first token plus one refresh after the 401
    assert loop.api.auth.refresh_count == 2
    assert server.created == 1


@pytest.mark.asyncio
async def test_unknown_feed_is_recreated():
    server = FakeFeedServer([message_sent("e1", "hello")])
    server.missing_feed_reads = 1
    repository = InMemoryFeedIdRepository()
    listener = CountingListener()
    loop = make_loop(server, repository=repository)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: listener.calls["e1"] == 1)
    await loop.stop()

    assert server.created == 2
    assert loop.feed_id == "feed-2"
    assert repository.read() == "feed-2"


@pytest.mark.asyncio
async def test_stored_feed_id_is_resumed():
    server = FakeFeedServer([message_sent("e1", "hello")])
    listener = CountingListener()
    loop = make_loop(server, repository=InMemoryFeedIdRepository("feed-7"))
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: listener.calls["e1"] == 1)
    await loop.stop()

    assert server.created == 0
    assert loop.feed_id == "feed-7"


@pytest.mark.asyncio
async def test_unreachable_node_fails_over():
    server = FakeFeedServer([message_sent("e1", "hello")])
    server.down.add("http://agent-a")
    listener = CountingListener()
    loop = make_loop(server)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: listener.calls["e1"] == 1)
    await loop.stop()

    assert {read["node"] for read in server.reads} == {"http://agent-b"}


class TimingOutServer(FakeFeedServer):
    def __init__(self, slow_nodes, events=None):
        super().__init__(events)
        self.slow_nodes = set(slow_nodes)
        self.timeouts = []

    async def request(self, node, method, path, **kwargs):
        if path.endswith("/read") and node.base_url in self.slow_nodes:
            self.timeouts.append(node.base_url)
            raise TransientNetworkError(f"Read on {node.base_url} timed out")
        return await super().request(node, method, path, **kwargs)


@pytest.mark.asyncio
async def test_rotates_after_consecutive_read_failures():
    server = TimingOutServer(["http://agent-a"], [message_sent("e1", "hello")])
    listener = CountingListener()
    loop = make_loop(server, retry=RetryConfig(max_attempts=5, initial_interval_ms=1, max_interval_ms=5),
                     rotate_after_failures=2)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: listener.calls["e1"] == 1)
    await loop.stop()

    assert server.timeouts == ["http://agent-a", "http://agent-a"]
    assert server.reads[0]["node"] == "http://agent-b"


@pytest.mark.asyncio
async def test_exhausted_retries_stop_the_loop():
    server = FakeFeedServer()
    server.down.update(NODES)
    on_fatal = AsyncMock()
    loop = make_loop(server, on_fatal=on_fatal)

    await loop.start()
    with pytest.raises(MaxRetriesExceededError):
        await loop.wait()

    assert loop.state == FeedState.STOPPED
    on_fatal.assert_awaited_once()
    assert isinstance(on_fatal.await_args.args[0], MaxRetriesExceededError)


@pytest.mark.asyncio
async def test_run_raises_non_recoverable_error():
    server = FakeFeedServer()
    server.request = AsyncMock(side_effect=ApiError(403, "Forbidden"))
    on_fatal = MagicMock()
    loop = make_loop(server, on_fatal=on_fatal)

    with pytest.raises(ApiError):
        await loop.run()

    server.request.assert_awaited_once()
    on_fatal.assert_called_once()
    assert loop.state == FeedState.STOPPED


class BlockingServer(FakeFeedServer):
    def __init__(self):
        super().__init__()
        self.reading = asyncio.Event()

    async def _read(self, node, data):
        self.reading.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_stop_interrupts_pending_read():
    server = BlockingServer()
    loop = make_loop(server)

    await loop.start()
    await asyncio.wait_for(server.reading.wait(), 1)
    await asyncio.wait_for(loop.stop(), 1)

    assert loop.state == FeedState.STOPPED
    assert loop.fatal_error is None


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(asyncio.Task, "uncancel"), reason="Task.cancelling() needs Python 3.11")
async def test_stop_leaves_inline_runner_task_uncancelled():
    server = BlockingServer()
    loop = make_loop(server)

    async def runner():
        await loop.run()
        return asyncio.current_task().cancelling()

    task = asyncio.create_task(runner())
    await asyncio.wait_for(server.reading.wait(), 1)
    await asyncio.wait_for(loop.stop(), 1)

    assert await task == 0
    assert loop.state == FeedState.STOPPED


@pytest.mark.asyncio
async def test_cannot_start_twice():
    loop = make_loop(BlockingServer())

    await loop.start()
    with pytest.raises(RuntimeError):
        await loop.start()
    await loop.stop()


@pytest.mark.asyncio
async def test_stop_before_start_is_a_no_op():
    loop = make_loop(FakeFeedServer())

    await loop.stop()

    assert loop.state == FeedState.CREATED


@pytest.mark.asyncio
async def test_loop_can_restart_after_stop():
    server = FakeFeedServer([message_sent("e1", "one")])
    listener = CountingListener()
    loop = make_loop(server)
    loop.subscribe(listener)

    await loop.start()
    await wait_until(lambda: listener.calls["e1"] == 1)
    await loop.stop()

    server.push(message_sent("e2", "two"))
    await loop.start()
    await wait_until(lambda: listener.calls["e2"] == 1)
    await loop.stop()

    assert server.created == 1


@pytest.mark.asyncio
async def test_poll_metrics_are_recorded():
    server = FakeFeedServer(three_messages())
    metrics = MagicMock()
    loop = make_loop(server, metrics=metrics)

    await loop.start()
    await wait_until(lambda: len(server.reads) >= 2)
    await loop.stop()

    assert metrics.record_poll.call_args_list[0].args[1] == 3
    metrics.record_loop_state.assert_any_call(True)
    metrics.record_loop_state.assert_called_with(False)


@pytest.mark.asyncio
async def test_selective_policy_keeps_ack_when_requeue_fails():
    batch = EventBatch.model_validate({"ackId": "ack-2", "events": []})
    requeue = AsyncMock(side_effect=MaxRetriesExceededError("requeueEvents", 3, 0.1))

    ack = await SelectiveAckPolicy().settle(requeue, "ack-1", batch, [MagicMock(id="e1")])

    assert ack == "ack-1"


@pytest.mark.asyncio
async def test_resend_window_policy_advances_without_requeue():
    batch = EventBatch.model_validate({"ackId": "ack-2", "events": []})
    requeue = AsyncMock()

    assert await ResendWindowPolicy().settle(requeue, "ack-1", batch, []) == "ack-2"
    assert await ResendWindowPolicy().settle(requeue, "ack-1", batch, [MagicMock(id="e1")]) == "ack-1"
    requeue.assert_not_awaited()


@pytest.mark.asyncio
async def test_requeue_is_not_available_on_v1():
    api = FeedApi(MagicMock(), FakeFeedServer(), AuthSession(lambda: "t"), version=DatafeedVersion.V1)

    with pytest.raises(ApiError) as exc_info:
        await api.requeue_events("feed-1", ["e1"])

    assert exc_info.value.status == 405


def test_version_parsing_defaults_to_v1():
    assert DatafeedVersion.of("V2") == DatafeedVersion.V2
    assert DatafeedVersion.of("v1") == DatafeedVersion.V1
    assert DatafeedVersion.of(None) == DatafeedVersion.V1
