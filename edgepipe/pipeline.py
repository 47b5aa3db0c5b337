"""Function pipelines, their metrics and topic matching."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

TOPIC_WILDCARD = "#"
TOPIC_SINGLE_LEVEL_WILDCARD = "+"
TOPIC_LEVEL_SEPARATOR = "/"

_HASH_PREFIX = "Pipeline-functions: "

# A pipeline function takes the context and the data and returns
# (continue pipeline?, result).
AppFunction = Callable[[Any, Any], "tuple[bool, Any]"]


class Counter:
    """A thread-safe integer counter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._count += amount

    def dec(self, amount: int = 1) -> None:
        with self._lock:
            self._count -= amount

    def clear(self) -> None:
        with self._lock:
            self._count = 0


class Timer:
    """Collects durations, in seconds, and summarises them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0
        self._total = 0.0
        self._min: Optional[float] = None
        self._max: Optional[float] = None

    def update(self, seconds: float) -> None:
        """Record one duration."""
        with self._lock:
            self._count += 1
            self._total += seconds
            self._min = seconds if self._min is None else min(self._min, seconds)
            self._max = seconds if self._max is None else max(self._max, seconds)

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def total(self) -> float:
        with self._lock:
            return self._total

    @property
    def mean(self) -> float:
        with self._lock:
            return self._total / self._count if self._count else 0.0

    @property
    def min(self) -> float:
        with self._lock:
            return self._min if self._min is not None else 0.0

    @property
    def max(self) -> float:
        with self._lock:
            return self._max if self._max is not None else 0.0


class MessageError(Exception):
    """A failure while decoding or processing a message, with an HTTP status code."""

    def __init__(self, err: Any, error_code: int) -> None:
        super().__init__(str(err))
        self.err = err
        self.error_code = error_code


@dataclass
class FunctionPipeline:
    """A named sequence of functions run for messages on matching topics."""

    id: str
    transforms: Optional[list[AppFunction]] = None
    topics: list[str] = field(default_factory=list)
    hash: str = ""
    messages_processed: Counter = field(default_factory=Counter)
    message_processing_time: Timer = field(default_factory=Timer)
    processing_errors: Counter = field(default_factory=Counter)


def _function_name(function: Any) -> str:
    target = getattr(function, "__func__", function)
    module = getattr(target, "__module__", None) or type(function).__module__
    qualname = getattr(target, "__qualname__", None) or type(function).__qualname__
    return f"{module}.{qualname}"


def calculate_pipeline_hash(transforms: Optional[Sequence[AppFunction]]) -> str:
    """Return a version string naming the pipeline's functions in order."""
    names = "".join(" " + _function_name(item) for item in transforms or ())
    return _HASH_PREFIX + names


def new_function_pipeline(
    pipeline_id: str,
    topics: Sequence[str],
    transforms: Optional[Sequence[AppFunction]],
) -> FunctionPipeline:
    """Create a pipeline with fresh metrics and its hash computed."""
    return FunctionPipeline(
        id=pipeline_id,
        transforms=list(transforms) if transforms is not None else None,
        topics=list(topics),
        hash=calculate_pipeline_hash(transforms),
    )


def topic_matches(incoming_topic: str, pipeline_topics: Sequence[str]) -> bool:
    """Tell whether the incoming topic matches any of the pipeline's topics.

    ``#`` matches any remaining levels and ``+`` matches a single level.
    """
    for pipeline_topic in pipeline_topics:
        if pipeline_topic == TOPIC_WILDCARD:
            return True

        wildcards = pipeline_topic.count(TOPIC_WILDCARD) + pipeline_topic.count(
            TOPIC_SINGLE_LEVEL_WILDCARD
        )
        if wildcards == 0:
            if incoming_topic == pipeline_topic:
                return True
            continue

        pipeline_levels = pipeline_topic.split(TOPIC_LEVEL_SEPARATOR)
        incoming_levels = incoming_topic.split(TOPIC_LEVEL_SEPARATOR)
        if len(pipeline_levels) > len(incoming_levels):
            continue

        for index, level in enumerate(pipeline_levels):
            if level in (TOPIC_WILDCARD, TOPIC_SINGLE_LEVEL_WILDCARD):
                incoming_levels[index] = level

        if TOPIC_LEVEL_SEPARATOR.join(incoming_levels).startswith(pipeline_topic):
            return True
    return False