"""
Unit tests for throttling, debouncing and background task tracking.
"""

import asyncio

import pytest

from storefront.utils.scheduling import Throttle, TaskGroup, Debouncer


def test_throttle_allows_once_per_interval():
    now = [0.0]
    throttle = Throttle(5, clock=lambda: now[0])

    assert throttle.ready()
    assert not throttle.ready()
    now[0] = 5.0
    assert throttle.ready()
    throttle.reset()
    assert throttle.ready()


@pytest.mark.asyncio
async def test_task_group_logs_failures_and_joins():
    group = TaskGroup('test')
    done = []

    async def ok():
        done.append('ok')

    async def boom():
        raise RuntimeError('boom')

    group.spawn(ok())
    group.spawn(boom())
    await group.join()

    assert done == ['ok']
    assert group.pending == 0


@pytest.mark.asyncio
async def test_debouncer_runs_only_last_call():
    group = TaskGroup('test')
    debouncer = Debouncer(0.01, group)
    calls = []

    def factory(n):
        async def run():
            calls.append(n)
        return run

    for n in range(3):
        debouncer.call(factory(n))
    await group.join()

    assert calls == [2]


@pytest.mark.asyncio
async def test_cancel_all():
    group = TaskGroup('test')
    task = group.spawn(asyncio.sleep(10))
    await asyncio.sleep(0)
    group.cancel_all()
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled()
