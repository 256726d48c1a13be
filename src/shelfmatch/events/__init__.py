"""Batch progress event contracts."""

from shelfmatch.events.schemas import (
    BatchEvent,
    CompleteEvent,
    EventBase,
    ItemResult,
    ProgressEvent,
    StartEvent,
)

__all__ = [
    "BatchEvent",
    "CompleteEvent",
    "EventBase",
    "ItemResult",
    "ProgressEvent",
    "StartEvent",
]
