"""
Engine hosting for the Flask surface.

Cart engines are asyncio objects and live on one dedicated event loop thread.
Request threads submit coroutines to that loop and block on the result, so an
engine is only ever touched by a single thread.
"""
import asyncio
import concurrent.futures
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from storefront.exceptions import NetworkError
from storefront.services.cart_service import CartEngine

logger = logging.getLogger(__name__)


class EngineRunner:
    """An event loop running forever on a daemon thread."""

    def __init__(self, name: str = 'cart-engine'):
        self.name = name
        self.loop = asyncio.new_event_loop()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"[ENGINE] Loop thread {self.name} started")

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def call(self, coro: Awaitable, timeout: Optional[float] = None) -> Any:
        """
        Run ``coro`` on the engine loop and wait for its result.

        Raises:
            NetworkError: the coroutine did not finish within ``timeout``
        """
        if not self.running:
            self.start()
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise NetworkError("The cart service did not answer in time") from e

    def call_soon(self, callback: Callable, *args) -> None:
        self.loop.call_soon_threadsafe(callback, *args)

    def stop(self) -> None:
        if self._thread is None:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self._thread = None
        logger.info(f"[ENGINE] Loop thread {self.name} stopped")


class EngineRegistry:
    """
    One engine per cart session, created on first use.

    Engines idle for longer than ``idle_ttl`` seconds are closed and dropped.
    """

    def __init__(self, runner: EngineRunner, factory: Callable[[str, Optional[str]], CartEngine],
                 timeout: float = 30, idle_ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.runner = runner
        self.factory = factory
        self.timeout = timeout
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._engines: Dict[str, Tuple[CartEngine, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._engines)

    def _evict_idle(self, now: float) -> None:
        expired = [sid for sid, (_, used) in self._engines.items() if now - used > self.idle_ttl]
        for sid in expired:
            engine, _ = self._engines.pop(sid)
            self.runner.call_soon(engine.close)
            logger.info(f"[ENGINE] Evicted idle engine for session {sid}")

    def get(self, session_id: str, token: Optional[str] = None) -> CartEngine:
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            entry = self._engines.get(session_id)
            if entry is None:
                engine = self.factory(session_id, token)
                self.runner.call_soon(engine.start)
                logger.info(f"[ENGINE] Created engine for session {session_id}")
            else:
                engine = entry[0]
            self._engines[session_id] = (engine, now)
        return engine

    def call(self, session_id: str, token: Optional[str], operation: Callable[[CartEngine], Awaitable]) -> Any:
        """Run ``operation(engine)`` on the engine loop with the caller's token applied."""
        engine = self.get(session_id, token)

        async def run():
            engine.set_auth_token(token)
            return await operation(engine)

        return self.runner.call(run(), timeout=self.timeout)

    def close_all(self) -> None:
        with self._lock:
            engines = [engine for engine, _ in self._engines.values()]
            self._engines.clear()
        for engine in engines:
            self.runner.call_soon(engine.close)


def init_engines(app) -> EngineRegistry:
    """Start the engine loop and register the per-session engine registry on the app."""
    from storefront.services.cart_service import create_engine
    from storefront.services.store_service import get_stores

    stores = get_stores(app)
    config = dict(app.config)

    def factory(session_id: str, token: Optional[str]) -> CartEngine:
        return create_engine(config, stores['local'], stores['session'], session_id, token)

    runner = EngineRunner()
    runner.start()
    registry = EngineRegistry(
        runner,
        factory,
        timeout=app.config.get('ENGINE_CALL_TIMEOUT', 30),
        idle_ttl=app.config.get('ENGINE_IDLE_TTL', 3600),
    )
    app.extensions['cart_engines'] = registry
    return registry
