"""
Notification Service - user-facing messages with session-scoped dedup.

Stock removals and clamps are announced at most once per product per
24 hours. The ledger lives in the ephemeral session store under one key per
event kind, mapping product id -> {timestamp, name}.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List

from storefront.services.store_service import KeyValueStore
from storefront.services.stock_validator import StockEvent, StockValidationResult

logger = logging.getLogger(__name__)

REMOVED_KEY = 'removedCartItems'
ADJUSTED_KEY = 'adjustedCartItems'


@dataclass(frozen=True)
class Notification:
    level: str
    message: str
    created_at: float = field(default_factory=time.time)

    def to_dict(self):
        return {'level': self.level, 'message': self.message, 'created_at': self.created_at}


class Notifier:
    """Queue of messages waiting to be shown to the customer."""

    def __init__(self, limit: int = 50):
        self._queue: Deque[Notification] = deque(maxlen=limit)

    def notify(self, level: str, message: str) -> None:
        logger.info(f"[NOTIFY] {level}: {message}")
        self._queue.append(Notification(level, message))

    def error(self, message: str) -> None:
        self.notify('error', message)

    def warning(self, message: str) -> None:
        self.notify('warning', message)

    def info(self, message: str) -> None:
        self.notify('info', message)

    def pending(self) -> List[Notification]:
        return list(self._queue)

    def drain(self) -> List[Notification]:
        """Return and forget every queued message."""
        items = list(self._queue)
        self._queue.clear()
        return items


def _quoted(names: Iterable[str]) -> str:
    return ", ".join(f'"{name}"' for name in names)


def removed_message(events: List[StockEvent]) -> str:
    if len(events) == 1:
        return f'Product "{events[0].name}" is out of stock and was removed from your cart.'
    return f'Some products ({_quoted(e.name for e in events)}) are out of stock and were removed from your cart.'


def clamped_message(events: List[StockEvent]) -> str:
    if len(events) == 1:
        return f'The quantity of "{events[0].name}" was adjusted to the available stock.'
    return (f'The quantity of {len(events)} products ({_quoted(e.name for e in events)}) '
            f'was adjusted to the available stock.')


class NotificationDeduper:
    """At-most-once delivery of stock events per product within ``ttl`` seconds."""

    def __init__(self, store: KeyValueStore, notifier: Notifier, ttl: int = 86400,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.notifier = notifier
        self.ttl = ttl
        self._clock = clock
        self.prune()

    def _ledger(self, kind: str) -> Dict[str, Dict]:
        return dict(self.store.get(kind) or {})

    def filter_new(self, kind: str, events: Iterable[StockEvent]) -> List[StockEvent]:
        """
        Return the events not yet announced in the window and record them.

        Duplicate product ids within ``events`` are collapsed.
        """
        ledger = self._ledger(kind)
        now = self._clock()
        fresh: List[StockEvent] = []
        seen = set()

        for event in events:
            if event.product_id in seen:
                continue
            seen.add(event.product_id)
            record = ledger.get(event.product_id)
            if record and now - float(record.get('timestamp', 0)) < self.ttl:
                continue
            ledger[event.product_id] = {'timestamp': now, 'name': event.name}
            fresh.append(event)

        if fresh:
            self.store.set(kind, ledger)
        return fresh

    def report(self, result: StockValidationResult) -> None:
        """Announce the removals and clamps of a validation pass (deduplicated)."""
        removed = self.filter_new(REMOVED_KEY, result.removed)
        if removed:
            self.notifier.error(removed_message(removed))

        clamped = self.filter_new(ADJUSTED_KEY, result.clamped)
        if clamped:
            self.notifier.error(clamped_message(clamped))

    def prune(self) -> int:
        """Drop ledger entries older than the window. Returns the number dropped."""
        now = self._clock()
        dropped = 0
        for kind in (REMOVED_KEY, ADJUSTED_KEY):
            ledger = self._ledger(kind)
            if not ledger:
                continue
            kept = {
                pid: record for pid, record in ledger.items()
                if now - float(record.get('timestamp', 0)) < self.ttl
            }
            if len(kept) != len(ledger):
                dropped += len(ledger) - len(kept)
                if kept:
                    self.store.set(kind, kept)
                else:
                    self.store.remove(kind)
        if dropped:
            logger.info(f"[NOTIFY] Pruned {dropped} expired notification records")
        return dropped

    async def sweep_forever(self, interval: float) -> None:
        """Prune every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.prune()
