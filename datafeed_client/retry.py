import asyncio
import inspect
import logging
import math
import random
import time
from typing import Any, Callable, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ErrorKind, MaxRetriesExceededError, classify_error

logger = logging.getLogger(__name__)


class RetryConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int = Field(default=10, ge=1, alias="maxAttempts", description="Maximum attempts, first call included")
    initial_interval_ms: float = Field(default=500, gt=0, alias="initialIntervalMs")
    multiplier: float = Field(default=2.0, ge=1.0)
    max_interval_ms: float = Field(default=300_000, gt=0, alias="maxIntervalMs")
    deadline_seconds: Optional[float] = Field(default=None, gt=0, alias="deadlineSeconds",
                                              description="Give up once this much time has elapsed")
    jitter: bool = Field(default=False)

    def interval_ms(self, attempt: int) -> float:
        """Backoff to wait after the given (1-based) failed attempt"""
        exponent = attempt - 1
        if self.multiplier > 1:
            # past this exponent the interval is capped anyway
            ratio = self.max_interval_ms / self.initial_interval_ms
            exponent = min(exponent, max(0, math.ceil(math.log(ratio, self.multiplier))) + 1)
        interval = self.initial_interval_ms * (self.multiplier ** exponent)
        return min(interval, self.max_interval_ms)

    def intervals_ms(self, attempts: int = None) -> List[float]:
        return [self.interval_ms(n) for n in range(1, (attempts or self.max_attempts) + 1)]


class RetryRule:
    """
    Pairs a failure predicate with the recovery action to run before the
    failed operation is attempted again.
    """

    def __init__(self, predicate: Callable[[BaseException], bool], recovery: Callable[[], Any] = None,
                 name: str = None):
        self.predicate = predicate
        self.recovery = recovery
        self.name = name or getattr(predicate, "__name__", "rule")

    def matches(self, error: BaseException) -> bool:
        return bool(self.predicate(error))

    async def recover(self):
        if self.recovery is None:
            return
        result = self.recovery()
        if inspect.isawaitable(result):
            await result

    def __repr__(self):
        return f"RetryRule({self.name})"


def on_kind(kind: ErrorKind, recovery: Callable[[], Any] = None) -> RetryRule:
    """Rule matching every failure classified as ``kind``"""
    return RetryRule(lambda error: classify_error(error) == kind, recovery, name=kind.value)


def default_rules() -> List[RetryRule]:
    """Backoff-only rules for failures that need nothing but time"""
    return [
        on_kind(ErrorKind.TRANSIENT_NETWORK),
        on_kind(ErrorKind.NODE_UNAVAILABLE),
    ]


class RetryHandler:
    def __init__(self, config: RetryConfig, rules: Iterable[RetryRule] = None, metrics=None):
        self.config = config
        self.rules: List[RetryRule] = list(default_rules() if rules is None else rules)
        self.metrics = metrics

    def with_rules(self, *rules: RetryRule) -> "RetryHandler":
        """Copy of this handler evaluating only the given rules"""
        return RetryHandler(self.config, rules, self.metrics)

    def add_rule(self, rule: RetryRule) -> "RetryHandler":
        """Copy of this handler with ``rule`` evaluated before the existing ones"""
        return RetryHandler(self.config, [rule, *self.rules], self.metrics)

    async def execute_with_retry(
        self,
        operation: Callable,
        operation_name: str,
        *args,
        **kwargs
    ) -> Any:
        """
        Execute operation with retry logic.

        A failure matched by no rule propagates immediately. A matched failure
        runs the rule's recovery action, then the operation is retried after
        the current backoff interval.
        """
        started = time.monotonic()
        last_exception = None
        attempt = 0

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                result = await operation(*args, **kwargs)

                if attempt > 1:
                    logger.info("Operation %s succeeded on attempt %d", operation_name, attempt)

                return result

            except Exception as e:
                last_exception = e

                rule = self._find_rule(e)
                if rule is None:
                    raise

                await rule.recover()

                if attempt == self.config.max_attempts or self._deadline_passed(started):
                    break

                delay = self._calculate_delay(attempt)
                if self._deadline_passed(started, delay):
                    break

                logger.warning(
                    "Attempt %d failed for %s (%s). Retrying in %.3fs. Error: %s",
                    attempt, operation_name, rule.name, delay, e,
                )
                if self.metrics is not None:
                    self.metrics.record_retry(operation_name)

                await asyncio.sleep(delay)

        raise MaxRetriesExceededError(
            operation_name=operation_name,
            attempts=attempt,
            elapsed=time.monotonic() - started,
        ) from last_exception

    def _find_rule(self, error: BaseException) -> Optional[RetryRule]:
        for rule in self.rules:
            try:
                if rule.matches(error):
                    return rule
            except Exception:
                logger.exception("Retry rule %s failed to evaluate", rule.name)
        return None

    def _deadline_passed(self, started: float, delay: float = 0.0) -> bool:
        deadline = self.config.deadline_seconds
        return deadline is not None and time.monotonic() - started + delay >= deadline

    def _calculate_delay(self, attempt: int) -> float:
        """Delay in seconds after the given failed attempt"""
        delay = self.config.interval_ms(attempt) / 1000.0

        if self.config.jitter:
            delay = random.uniform(delay / 2, delay)

        return delay
