"""
MODULE OVERVIEW:
The internal change bus.

WHAT IS HAPPENING HERE:
The Change Watcher publishes normalised ChangeEvents here and the Broadcast
Engine subscribes. Keeping them apart means the watcher never needs to know
who reacts to a change, and a failing subscriber can never tear down a live
change stream: publish() logs subscriber errors and moves on.

Subscribers are awaited one after another, so for a single watch loop events
reach the broadcast layer in arrival order.
"""

from typing import Awaitable, Callable, List

from loguru import logger

from fleetsync.shared.models import ChangeEvent

ChangeSubscriber = Callable[[ChangeEvent], Awaitable[None]]


class ChangeBus:
    """A minimal in-process pub/sub bus carrying ChangeEvents."""

    def __init__(self):
        self._subscribers: List[ChangeSubscriber] = []
        self.published = 0

    def subscribe(self, callback: ChangeSubscriber):
        self._subscribers.append(callback)

    async def publish(self, event: ChangeEvent):
        self.published += 1
        for sub in self._subscribers:
            try:
                await sub(event)
            except Exception as e:
                logger.error(
                    f"resource={event.resource_type.value} op={event.operation_type} "
                    f"event=subscriber_error reason='{e}'"
                )
