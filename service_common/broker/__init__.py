"""
Best-effort publish/subscribe over Redis.
"""

from .event_broker import EventBroker

__all__ = ["EventBroker"]
