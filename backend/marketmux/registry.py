"""Subscription registry: subscriber intent -> required upstream streams."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable

from .interface import UpstreamControl
from .models import RecordCallback, StreamKey, Subscription

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """Tracks subscriptions and the minimal set of upstream streams they need.

    Keeps an inverted index StreamKey -> {subscription id: Subscription}; the
    index keys are exactly the union of all subscriptions' keys, so the
    required upstream set is always available without a scan.

    Not thread-safe. All calls must happen on the multiplexer's event loop.
    """

    def __init__(self, upstream: UpstreamControl | None = None) -> None:
        self._upstream = upstream
        self._subscriptions: dict[str, Subscription] = {}
        self._index: dict[StreamKey, dict[str, Subscription]] = {}
        self._ids = itertools.count(1)

    def attach(self, upstream: UpstreamControl) -> None:
        self._upstream = upstream

    def subscribe(self, stream_keys: Iterable[StreamKey], callback: RecordCallback) -> Subscription:
        """Register a subscription and start any streams nobody else needed yet."""
        keys = frozenset(stream_keys)
        if not keys:
            raise ValueError("a subscription needs at least one stream key")

        subscription = Subscription(id=f"sub-{next(self._ids)}", stream_keys=keys, callback=callback)
        newly_required: set[StreamKey] = set()
        for key in keys:
            subscribers = self._index.get(key)
            if subscribers is None:
                subscribers = self._index[key] = {}
                newly_required.add(key)
            subscribers[subscription.id] = subscription
        self._subscriptions[subscription.id] = subscription

        logger.info(
            "Subscription %s registered: %d keys, %d new upstream",
            subscription.id,
            len(keys),
            len(newly_required),
        )
        if newly_required and self._upstream is not None:
            self._upstream.issue_subscribe(newly_required)
        return subscription

    def unsubscribe(self, subscription_id: str) -> frozenset[StreamKey]:
        """Remove a subscription. Returns the streams that are no longer required.

        Unknown ids are ignored: callers may race with teardown.
        """
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            logger.debug("Unsubscribe for unknown id %s ignored", subscription_id)
            return frozenset()

        no_longer_required: set[StreamKey] = set()
        for key in subscription.stream_keys:
            subscribers = self._index.get(key)
            if subscribers is None:
                continue
            subscribers.pop(subscription_id, None)
            if not subscribers:
                del self._index[key]
                no_longer_required.add(key)

        logger.info(
            "Subscription %s removed: %d upstream streams released",
            subscription_id,
            len(no_longer_required),
        )
        if no_longer_required and self._upstream is not None:
            self._upstream.issue_unsubscribe(no_longer_required)
        return frozenset(no_longer_required)

    def active_stream_keys(self) -> frozenset[StreamKey]:
        """Union of every active subscription's keys."""
        return frozenset(self._index)

    def subscribers_for(self, key: StreamKey) -> list[Subscription]:
        """Subscriptions currently interested in the key, in registration order."""
        subscribers = self._index.get(key)
        return list(subscribers.values()) if subscribers else []

    def get(self, subscription_id: str) -> Subscription | None:
        return self._subscriptions.get(subscription_id)

    def clear(self) -> frozenset[StreamKey]:
        """Drop every subscription. Returns the keys that were active."""
        released = self.active_stream_keys()
        self._subscriptions.clear()
        self._index.clear()
        if released and self._upstream is not None:
            self._upstream.issue_unsubscribe(released)
        return released

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription_id: str) -> bool:
        return subscription_id in self._subscriptions
