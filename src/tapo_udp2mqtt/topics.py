"""
Publish topic validation.

The bridge publishes to a single configured topic; it is checked once at
startup so the codec never sees a topic it cannot encode.
"""

from __future__ import annotations

_WILDCARDS = ("+", "#")
MAX_TOPIC_BYTES = 0xFFFF


class TopicError(ValueError):
    """Raised when a topic cannot be used as an MQTT publish topic."""


def validate_publish_topic(topic: str) -> str:
    if not isinstance(topic, str) or not topic:
        raise TopicError("topic must be a non-empty string")
    for ch in _WILDCARDS:
        if ch in topic:
            raise TopicError(f"topic '{topic}' contains wildcard '{ch}'; not allowed for publish")
    if "\x00" in topic:
        raise TopicError("topic must not contain NUL characters")
    if len(topic.encode("utf-8")) > MAX_TOPIC_BYTES:
        raise TopicError(f"topic longer than {MAX_TOPIC_BYTES} bytes")
    return topic
