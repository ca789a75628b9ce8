"""Adapters package - Bridge between the engine and its clients.

Typed events and the per-channel hub that fans them out to server
subscribers.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EventHub",
    "Subscription",
    "event_to_dict",
    "dict_to_event",
]

from threadloom.adapters.event_bus import EventBus, EventHub, Subscription
from threadloom.adapters.events import dict_to_event, event_to_dict
