import logging
from typing import Awaitable, Callable, Dict, Optional

from .events import EventKind, FeedEvent

logger = logging.getLogger(__name__)


class RealTimeEventListener:
    """
    Base class for datafeed listeners. Override the ``on_*`` callbacks of the
    event kinds you care about; the others are no-ops.

    Raising ``RetryEventError`` from a callback asks the datafeed loop to
    re-queue the event, any other exception is logged by the loop.
    """

    def __init__(self, bot_user_id: Optional[int] = None):
        self.bot_user_id = bot_user_id

    def is_accepting_event(self, event: FeedEvent) -> bool:
        """By default events initiated by the bot itself are ignored"""
        return self.bot_user_id is None or event.initiator.user_id != self.bot_user_id

    async def on_event(self, event: FeedEvent):
        if not self.is_accepting_event(event):
            logger.debug("Listener %s ignores event %s", type(self).__name__, event.id)
            return
        callback = self._callbacks()[event.kind]
        await callback(event)

    def _callbacks(self) -> Dict[EventKind, Callable[[FeedEvent], Awaitable[None]]]:
        return {
            EventKind.MESSAGE_SENT: self.on_message_sent,
            EventKind.MESSAGE_SUPPRESSED: self.on_message_suppressed,
            EventKind.ELEMENTS_ACTION: self.on_elements_action,
            EventKind.SHARED_POST: self.on_shared_post,
            EventKind.INSTANT_MESSAGE_CREATED: self.on_instant_message_created,
            EventKind.ROOM_CREATED: self.on_room_created,
            EventKind.ROOM_UPDATED: self.on_room_updated,
            EventKind.USER_JOINED_ROOM: self.on_user_joined_room,
            EventKind.USER_LEFT_ROOM: self.on_user_left_room,
            EventKind.CONNECTION_REQUESTED: self.on_connection_requested,
            EventKind.CONNECTION_ACCEPTED: self.on_connection_accepted,
            EventKind.MESSAGE_REACTION: self.on_message_reaction,
        }

    async def on_message_sent(self, event: FeedEvent):
        pass

    async def on_message_suppressed(self, event: FeedEvent):
        pass

    async def on_elements_action(self, event: FeedEvent):
        pass

    async def on_shared_post(self, event: FeedEvent):
        pass

    async def on_instant_message_created(self, event: FeedEvent):
        pass

    async def on_room_created(self, event: FeedEvent):
        pass

    async def on_room_updated(self, event: FeedEvent):
        pass

    async def on_user_joined_room(self, event: FeedEvent):
        pass

    async def on_user_left_room(self, event: FeedEvent):
        pass

    async def on_connection_requested(self, event: FeedEvent):
        pass

    async def on_connection_accepted(self, event: FeedEvent):
        pass

    async def on_message_reaction(self, event: FeedEvent):
        pass
