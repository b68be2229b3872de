"""
Activities: a matcher plus a handler, registered once and resolved against
every incoming datafeed event.

Resolution order is the registration order and the first matching activity
wins. ``RetryEventError`` raised by a hook, a matcher or a handler is the only
failure leaving the dispatcher; every other one is logged.
"""
import inspect
import logging
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel

from .events import ElementsAction, EventKind, FeedEvent, Message
from .exceptions import DuplicateActivityError, RetryEventError

logger = logging.getLogger(__name__)


class ActivityType(str, Enum):
    COMMAND = "COMMAND"
    FORM = "FORM"
    CUSTOM = "CUSTOM"


class ActivityInfo(BaseModel):
    type: ActivityType = ActivityType.CUSTOM
    name: str
    description: str = ""


class ActivityContext:
    """Scratch object built for one event and one activity"""

    def __init__(self, event: FeedEvent):
        self.event = event
        self.initiator = event.initiator
        self.payload = event.payload
        self.attributes: Dict[str, Any] = {}

    @property
    def message(self) -> Optional[Message]:
        return getattr(self.payload, "message", None)

    @property
    def text(self) -> str:
        message = self.message
        return message.text if message is not None else ""

    @property
    def stream_id(self) -> Optional[str]:
        stream = getattr(self.payload, "stream", None)
        if stream is None and self.message is not None:
            stream = self.message.stream
        return stream.stream_id if stream is not None else None


Matcher = Callable[[ActivityContext], Union[bool, Awaitable[bool]]]
Handler = Callable[[ActivityContext], Any]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class ActivityDescriptor:
    def __init__(
        self,
        matcher: Matcher,
        handler: Handler,
        name: Optional[str] = None,
        description: str = "",
        before_matcher: Optional[Handler] = None,
        kinds: Optional[Iterable[EventKind]] = None,
        activity_type: ActivityType = ActivityType.CUSTOM,
    ):
        self.matcher = matcher
        self.handler = handler
        self.name = name or getattr(handler, "__name__", type(self).__name__)
        self.description = description
        self.before_matcher = before_matcher
        self.kinds = frozenset(kinds) if kinds is not None else None
        self.activity_type = activity_type

    @property
    def info(self) -> ActivityInfo:
        return ActivityInfo(type=self.activity_type, name=self.name, description=self.description)

    def accepts_kind(self, kind: EventKind) -> bool:
        return self.kinds is None or kind in self.kinds

    def create_context(self, event: FeedEvent) -> ActivityContext:
        return ActivityContext(event)

    def same_as(self, other: "ActivityDescriptor") -> bool:
        return self.matcher is other.matcher

    def bind_bot(self, display_name: Optional[str]):
        """Called on registration with the display name of the bot"""


class SlashCommand(ActivityDescriptor):
    """
    A "slash" command typed in a chat message, e.g. ``@bot /ping``.
    Commands are equal when they share the name and the mention requirement.
    """

    def __init__(self, command: str, handler: Handler, requires_bot_mention: bool = True, description: str = ""):
        if not command:
            raise ValueError("The slash command name cannot be empty.")
        self.command = command if command.startswith('/') else '/' + command
        self.requires_bot_mention = requires_bot_mention
        self._bot_display_name: Optional[str] = None
        super().__init__(
            matcher=self._matches,
            handler=handler,
            name=self.command,
            description=description,
            kinds=[EventKind.MESSAGE_SENT],
            activity_type=ActivityType.COMMAND,
        )

    def bind_bot(self, display_name: Optional[str]):
        self._bot_display_name = display_name

    @property
    def pattern(self) -> re.Pattern:
        mention = ""
        if self.requires_bot_mention:
            mention = "@" + re.escape(self._bot_display_name or "") + " "
        return re.compile("^" + mention + re.escape(self.command) + "$")

    def _matches(self, context: ActivityContext) -> bool:
        return bool(self.pattern.match(context.text))

    @property
    def info(self) -> ActivityInfo:
        suffix = " (mention required)" if self.requires_bot_mention else " (mention not required)"
        return ActivityInfo(type=self.activity_type, name=self.name, description=self.description + suffix)

    def same_as(self, other: ActivityDescriptor) -> bool:
        return self == other

    def __eq__(self, other):
        if not isinstance(other, SlashCommand):
            return NotImplemented
        return (self.command, self.requires_bot_mention) == (other.command, other.requires_bot_mention)

    def __hash__(self):
        return hash((self.command, self.requires_bot_mention))


class FormReply(ActivityDescriptor):
    """Reply submitted from a form, optionally restricted to one ``action`` button"""

    def __init__(self, form_id: str, handler: Handler, action: Optional[str] = None, description: str = ""):
        self.form_id = form_id
        self.action = action
        super().__init__(
            matcher=self._matches,
            handler=handler,
            name=f"{form_id}:{action}" if action else form_id,
            description=description,
            kinds=[EventKind.ELEMENTS_ACTION],
            activity_type=ActivityType.FORM,
        )

    def _matches(self, context: ActivityContext) -> bool:
        payload = context.payload
        if not isinstance(payload, ElementsAction) or payload.form_id != self.form_id:
            return False
        return self.action is None or payload.form_values.get("action") == self.action

    def same_as(self, other: ActivityDescriptor) -> bool:
        return isinstance(other, FormReply) and (self.form_id, self.action) == (other.form_id, other.action)


class ActivityDispatcher:
    """
    Ordered registry of activities. Subscribe it to a ``DatafeedLoop`` to get
    every event resolved to at most one activity.
    """

    def __init__(self, bot_user_id: Optional[int] = None, bot_display_name: Optional[str] = None, metrics=None):
        self.bot_user_id = bot_user_id
        self.bot_display_name = bot_display_name
        self.metrics = metrics
        self._activities: List[ActivityDescriptor] = []

    @property
    def activities(self) -> List[ActivityDescriptor]:
        return list(self._activities)

    def register(self, matcher: Union[ActivityDescriptor, Matcher], handler: Optional[Handler] = None,
                 **kwargs) -> ActivityDescriptor:
        """Append an activity, given as a descriptor or as ``(matcher, handler)``"""
        if isinstance(matcher, ActivityDescriptor):
            descriptor = matcher
        else:
            if handler is None:
                raise ValueError("A handler is required when registering a matcher")
            descriptor = ActivityDescriptor(matcher, handler, **kwargs)

        if any(existing.same_as(descriptor) for existing in self._activities):
            raise DuplicateActivityError(descriptor.name)

        descriptor.bind_bot(self.bot_display_name)
        self._activities.append(descriptor)
        logger.info("Registered activity %s", descriptor.name)
        return descriptor

    async def on_event(self, event: FeedEvent):
        if self.bot_user_id is not None and event.initiator.user_id == self.bot_user_id:
            return
        await self.dispatch(event)

    async def dispatch(self, event: FeedEvent) -> Optional[ActivityDescriptor]:
        """Run the first activity matching ``event``; returns it, or None"""
        for descriptor in self._activities:
            if not descriptor.accepts_kind(event.kind):
                continue

            context = descriptor.create_context(event)
            await self._before_matcher(descriptor, context)
            if not await self._matches(descriptor, context):
                continue

            await self._on_activity(descriptor, context)
            if self.metrics is not None:
                self.metrics.record_dispatch(descriptor.name)
            return descriptor
        return None

    async def _before_matcher(self, descriptor: ActivityDescriptor, context: ActivityContext):
        if descriptor.before_matcher is None:
            return
        try:
            await _maybe_await(descriptor.before_matcher(context))
        except RetryEventError:
            raise
        except Exception:
            logger.warning("Before matcher execution failed for activity %s", descriptor.name, exc_info=True)

    async def _matches(self, descriptor: ActivityDescriptor, context: ActivityContext) -> bool:
        try:
            return bool(await _maybe_await(descriptor.matcher(context)))
        except RetryEventError:
            raise
        except Exception:
            logger.warning("Matcher execution failed for activity %s", descriptor.name, exc_info=True)
            return False

    async def _on_activity(self, descriptor: ActivityDescriptor, context: ActivityContext):
        try:
            await _maybe_await(descriptor.handler(context))
        except RetryEventError:
            raise
        except Exception:
            logger.warning("Activity %s execution failed", descriptor.name, exc_info=True)
