"""
Server-Sent Events (SSE) utilities.

Provides helpers for framing bridge events for HTTP clients.
"""

from __future__ import annotations

from typing import Any

import msgspec


def format_sse_event(
    data: Any,
    event: str | None = None,
    id: str | None = None,
    retry: int | None = None,
) -> str:
    """
    Format data as an SSE event string.

    Args:
        data: Event data (JSON-encoded with msgspec unless already a string)
        event: Optional event type name
        id: Optional event ID for client reconnection
        retry: Optional reconnection time in milliseconds

    Returns:
        Formatted SSE event string
    """
    lines: list[str] = []

    if id is not None:
        lines.append(f"id: {id}")

    if event is not None:
        lines.append(f"event: {event}")

    if retry is not None:
        lines.append(f"retry: {retry}")

    if isinstance(data, str):
        data_str = data
    elif isinstance(data, (bytes, bytearray)):
        data_str = bytes(data).decode("utf-8")
    else:
        data_str = msgspec.json.encode(data).decode("utf-8")

    # Each line of data needs its own "data: " prefix.
    for line in data_str.split("\n"):
        lines.append(f"data: {line}")

    return "\n".join(lines) + "\n\n"


def format_sse_comment(comment: str) -> str:
    """Format a comment (for keepalive)."""
    return f": {comment}\n\n"


__all__ = ["format_sse_comment", "format_sse_event"]
