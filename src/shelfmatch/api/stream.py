"""Server-sent event framing."""

from __future__ import annotations

import json


def encode_sse(data: dict, event: str | None = None, retry_ms: int | None = None) -> str:
    """Encode payload as SSE frame."""
    lines = []
    if retry_ms is not None:
        lines.append(f"retry: {retry_ms}")
    if event is not None:
        lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data)}")
    return "\n".join(lines) + "\n\n"
