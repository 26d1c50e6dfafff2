"""Adapters package - Bridge between the backend connection and sessions.

Stream event types, the channel-keyed event bus, and per-project channel
subscriptions. The WebSocket backend client lives in
``agentdeck.adapters.rpc_backend`` and is imported on demand.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "ProjectChannels",
    "StreamEvent",
    "parse_stream_event",
]

from agentdeck.adapters.channels import ProjectChannels
from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import StreamEvent, parse_stream_event
