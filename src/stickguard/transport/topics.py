from __future__ import annotations

from typing import List, Optional


def _split(topic: str) -> List[str]:
    return topic.split("/")


# PUBLIC_INTERFACE
def validate_pattern(pattern: str) -> str:
    """
    Check a subscription pattern.

    '+' must occupy a whole segment; '#' must be the whole last segment.
    """
    if not pattern:
        raise ValueError("topic pattern must not be empty")
    parts = _split(pattern)
    for i, part in enumerate(parts):
        if "+" in part and part != "+":
            raise ValueError(f"'+' must occupy a whole topic segment: {pattern!r}")
        if "#" in part and (part != "#" or i != len(parts) - 1):
            raise ValueError(f"'#' is only allowed as the last topic segment: {pattern!r}")
    return pattern


# PUBLIC_INTERFACE
def topic_matches(pattern: str, topic: str) -> bool:
    """
    Match a concrete topic against a subscription pattern.

    '+' matches exactly one segment (an empty segment counts). A trailing '#' matches the
    parent level and any number of further segments.
    """
    p_parts = _split(pattern)
    t_parts = _split(topic)

    for i, p in enumerate(p_parts):
        if p == "#":
            return True
        if i >= len(t_parts):
            return False
        if p != "+" and p != t_parts[i]:
            return False
    return len(p_parts) == len(t_parts)


# PUBLIC_INTERFACE
def device_topic_pattern(root: str, channel: str) -> str:
    """Wildcard pattern for a device->server channel, e.g. 'smartstick/+/telemetry'."""
    return f"{root}/+/{channel}"


# PUBLIC_INTERFACE
def command_topic(root: str, device_id: str) -> str:
    """Server->device command topic."""
    return f"{root}/{device_id}/command"


# PUBLIC_INTERFACE
def device_id_from_topic(topic: str, root: str) -> Optional[str]:
    """Extract '{deviceId}' from '{root}/{deviceId}/{channel}'; None if the topic has another shape."""
    root_parts = _split(root)
    parts = _split(topic)
    if len(parts) != len(root_parts) + 2 or parts[: len(root_parts)] != root_parts:
        return None
    device_id = parts[len(root_parts)]
    return device_id or None
