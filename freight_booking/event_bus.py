"""
Event Bus — Typed in-process publish/subscribe for carrier sub-flow results.

Carrier-specific sub-flows (XPO / Estes rate quote, BOL, pickup) report their
results here instead of calling the staging cache or the workflow directly.
There is one channel per message kind:

  RateQuoteData  (order_id, carrier, request, response)
  BolData        (order_id, carrier, bol_response, bol_file_refs)
  PickupData     (order_id, pickup_response)

Delivery is synchronous, fire-and-forget and at-most-once to the subscribers
registered at the moment publish() is called. There is no acknowledgment and
no replay: a subscriber added later never sees earlier messages.

Typical usage:
    bus = EventBus()
    subscription = bus.subscribe(BolData, handle_bol)
    bus.publish(BolData(order_id=7, carrier="xpo", bol_response={...}))
    subscription.cancel()
"""

from typing import Callable, Dict, List

from .models import BolData, PickupData, RateQuoteData


MESSAGE_KINDS = (RateQuoteData, BolData, PickupData)


class Subscription:
    """Handle returned by EventBus.subscribe(); cancel() unsubscribes."""

    def __init__(self, bus: "EventBus", kind: type, handler: Callable):
        self._bus = bus
        self.kind = kind
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """Publish/subscribe channel keyed by message type."""

    def __init__(self, debug: bool = False):
        self.debug = debug
        self._subscribers: Dict[type, List[Subscription]] = {kind: [] for kind in MESSAGE_KINDS}

    def subscribe(self, kind: type, handler: Callable) -> Subscription:
        """Register handler for every future message of the given kind."""
        if kind not in self._subscribers:
            raise ValueError(f"Unknown message kind: {kind!r}")
        subscription = Subscription(self, kind, handler)
        self._subscribers[kind].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.kind, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def subscriber_count(self, kind: type) -> int:
        return len(self._subscribers.get(kind, []))

    def publish(self, message) -> int:
        """Deliver message to every current subscriber of its kind.

        A subscriber that raises does not stop delivery to the others; the
        failure is printed and the message is not redelivered.

        Returns:
            The number of subscribers the message was handed to.
        """
        kind = type(message)
        if kind not in self._subscribers:
            raise ValueError(f"Unknown message kind: {kind!r}")

        # Snapshot so handlers may unsubscribe during delivery
        subscribers = list(self._subscribers[kind])

        if self.debug:
            print(f"  Publishing {kind.__name__} for order {message.order_id} to {len(subscribers)} subscriber(s)")

        for subscription in subscribers:
            try:
                subscription.handler(message)
            except Exception as e:
                print(f"  Warning: {kind.__name__} subscriber failed for order {message.order_id}: {e}")

        return len(subscribers)
