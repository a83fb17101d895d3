"""
Unit tests for user notifications and their 24 hour dedup ledger.
"""

import asyncio

import pytest

from storefront.services.notification_service import (
    Notifier, NotificationDeduper, REMOVED_KEY, ADJUSTED_KEY
)
from storefront.services.stock_validator import StockEvent, StockValidationResult
from storefront.services.store_service import MemoryStore

DAY = 86400


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def deduper(clock):
    return NotificationDeduper(MemoryStore(), Notifier(), ttl=DAY, clock=clock)


def test_event_announced_once_per_window(deduper, clock):
    event = StockEvent('A', 'Mouse')

    assert deduper.filter_new(REMOVED_KEY, [event]) == [event]
    clock.now += DAY - 1
    assert deduper.filter_new(REMOVED_KEY, [event]) == []
    clock.now += 2
    assert deduper.filter_new(REMOVED_KEY, [event]) == [event]


def test_kinds_are_tracked_separately(deduper):
    event = StockEvent('A', 'Mouse')
    assert deduper.filter_new(REMOVED_KEY, [event]) == [event]
    assert deduper.filter_new(ADJUSTED_KEY, [event]) == [event]


def test_duplicate_ids_in_one_batch_collapse(deduper):
    events = [StockEvent('A', 'Mouse'), StockEvent('A', 'Mouse')]
    assert len(deduper.filter_new(REMOVED_KEY, events)) == 1


def test_report_emits_single_message_per_kind(deduper):
    result = StockValidationResult(
        removed=[StockEvent('A', 'Mouse'), StockEvent('B', 'Pad')],
        clamped=[StockEvent('C', 'Cable')],
    )
    deduper.report(result)
    deduper.report(result)

    messages = deduper.notifier.drain()
    assert len(messages) == 2
    assert '"Mouse"' in messages[0].message and '"Pad"' in messages[0].message
    assert '"Cable"' in messages[1].message
    assert all(m.level == 'error' for m in messages)


def test_prune_drops_expired_records(deduper, clock):
    deduper.filter_new(REMOVED_KEY, [StockEvent('A', 'Mouse')])
    clock.now += 10
    deduper.filter_new(REMOVED_KEY, [StockEvent('B', 'Pad')])

    clock.now += DAY - 5
    assert deduper.prune() == 1
    assert set(deduper.store.get(REMOVED_KEY)) == {'B'}

    clock.now += DAY
    assert deduper.prune() == 1
    assert deduper.store.get(REMOVED_KEY) is None


def test_ledger_is_pruned_on_construction(clock):
    store = MemoryStore()
    store.set(REMOVED_KEY, {'A': {'timestamp': clock.now - DAY - 1, 'name': 'Mouse'}})
    NotificationDeduper(store, Notifier(), ttl=DAY, clock=clock)
    assert store.get(REMOVED_KEY) is None


@pytest.mark.asyncio
async def test_sweep_runs_until_cancelled(deduper, clock):
    deduper.filter_new(REMOVED_KEY, [StockEvent('A', 'Mouse')])
    clock.now += DAY + 1

    task = asyncio.ensure_future(deduper.sweep_forever(0))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert deduper.store.get(REMOVED_KEY) is None


def test_notifier_drain_empties_queue():
    notifier = Notifier()
    notifier.warning('careful')
    notifier.info('fyi')
    assert [n.level for n in notifier.pending()] == ['warning', 'info']
    assert len(notifier.drain()) == 2
    assert notifier.pending() == []
