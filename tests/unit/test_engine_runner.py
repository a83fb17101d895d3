"""
Unit tests for the engine loop thread and the per-session registry.
"""

import asyncio

import pytest

from storefront.exceptions import NetworkError
from storefront.services.engine_runner import EngineRunner, EngineRegistry


class StubEngine:
    def __init__(self, session_id):
        self.session_id = session_id
        self.token = None
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def close(self):
        self.closed = True

    def set_auth_token(self, token):
        self.token = token

    async def whoami(self):
        return self.session_id, self.token


@pytest.fixture
def runner():
    runner = EngineRunner('test-engine')
    runner.start()
    yield runner
    runner.stop()


def test_call_returns_result(runner):
    async def add(a, b):
        await asyncio.sleep(0)
        return a + b

    assert runner.call(add(2, 3), timeout=2) == 5


def test_call_timeout_raises_network_error(runner):
    with pytest.raises(NetworkError):
        runner.call(asyncio.sleep(5), timeout=0.05)


def test_exceptions_propagate(runner):
    async def fail():
        raise ValueError('bad')

    with pytest.raises(ValueError):
        runner.call(fail(), timeout=2)


def test_registry_reuses_engine_per_session(runner):
    registry = EngineRegistry(runner, lambda sid, token: StubEngine(sid), timeout=2)

    first = registry.get('s1')
    assert registry.get('s1') is first
    assert registry.get('s2') is not first
    assert len(registry) == 2


def test_registry_call_applies_token(runner):
    registry = EngineRegistry(runner, lambda sid, token: StubEngine(sid), timeout=2)

    assert registry.call('s1', 'tok', lambda engine: engine.whoami()) == ('s1', 'tok')
    assert registry.call('s1', None, lambda engine: engine.whoami()) == ('s1', None)
    assert registry.get('s1').started


def test_idle_engines_are_evicted(runner):
    now = [0.0]
    registry = EngineRegistry(runner, lambda sid, token: StubEngine(sid), timeout=2,
                              idle_ttl=60, clock=lambda: now[0])
    old = registry.get('s1')

    now[0] = 61.0
    fresh = registry.get('s2')
    runner.call(asyncio.sleep(0), timeout=2)

    assert len(registry) == 1
    assert old.closed
    assert not fresh.closed
    assert registry.get('s1') is not old
