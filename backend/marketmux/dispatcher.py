"""Fan-out of normalized records to subscribers."""

from __future__ import annotations

import logging

from .cache import SnapshotCache
from .errors import SubscriberCallbackError
from .models import NormalizedRecord, Subscription
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class Dispatcher:
    """Writes each record into the cache, then delivers it to matching subscribers.

    A failing callback is logged with its subscription id and never stops
    delivery to the others.
    """

    def __init__(self, registry: SubscriptionRegistry, cache: SnapshotCache) -> None:
        self._registry = registry
        self._cache = cache
        self.records_dispatched: int = 0
        self.callback_errors: int = 0

    def on_record(self, record: NormalizedRecord) -> int:
        """Cache and fan out one record. Returns the number of successful deliveries."""
        key = record.stream_key
        self._cache.put(key, record)
        self.records_dispatched += 1

        delivered = 0
        for subscription in self._registry.subscribers_for(key):
            if self._deliver(subscription, record):
                delivered += 1
        return delivered

    def replay_snapshots(self, subscription: Subscription) -> int:
        """Send fresh cached records to a newly registered subscriber."""
        replayed = 0
        for key in subscription.stream_keys:
            record = self._cache.get(key)
            if record is not None and self._deliver(subscription, record):
                replayed += 1
        if replayed:
            logger.debug("Replayed %d cached records to %s", replayed, subscription.id)
        return replayed

    def _deliver(self, subscription: Subscription, record: NormalizedRecord) -> bool:
        try:
            subscription.callback(record)
        except Exception as e:
            self.callback_errors += 1
            error = SubscriberCallbackError(subscription.id, e)
            logger.exception("%s (stream %s)", error, record.stream_key)
            return False
        return True
