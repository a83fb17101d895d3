"""
Cart Service - the engine façade used by the HTTP surface.

``CartEngine`` owns one customer's cart: it sequences reconciliation, stock
validation and discount allocation and exposes immutable snapshots.

Every published snapshot gets a new version, and every change to the lines
bumps a separate line revision. A product refresh remembers the revision it
started from and throws its result away when the lines changed meanwhile. A
load instead re-applies the edits made during the pass on top of its merged
result, so neither overwrites a fresher edit.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from storefront.exceptions import (
    StorefrontError, AuthenticationRequired, NotFoundError, StockExceeded, SyncFailed, ValidationError
)
from storefront.models.cart import Cart, CartSnapshot
from storefront.models.cart_line import CartLine
from storefront.services.cart_reconciler import CartReconciler
from storefront.services.discount_service import DiscountService, CouponOutcome, APPLIED, REMOVED
from storefront.services.notification_service import Notifier, NotificationDeduper
from storefront.services.store_service import KeyValueStore
from storefront.services.storefront_client import RemoteCartClient, ProductInfoClient, DiscountClient
from storefront.utils.scheduling import TaskGroup, Debouncer

logger = logging.getLogger(__name__)

# cart key -> running load task; one full reconciliation per cart at a time
_LOADS_IN_PROGRESS: Dict[str, asyncio.Task] = {}

QUANTITY_SYNC_FAILED_MESSAGE = "Could not update the quantity on the server. Your cart will be synced again."
REMOVE_SYNC_FAILED_MESSAGE = "Could not remove the product on the server. Your cart will be synced again."


def is_load_in_progress(cart_key: str) -> bool:
    task = _LOADS_IN_PROGRESS.get(cart_key)
    return task is not None and not task.done()


class CartEngine:
    """
    One cart, one event loop.

    Args:
        cart_key: key of the persisted snapshot in ``local_store``
        local_store: durable store for the cart lines
        session_store: ephemeral store (notification ledger, coupon state)
        remote: remote cart collaborator
        products: product-info collaborator
        discount_client: discount collaborator
    """

    def __init__(self, cart_key: str, local_store: KeyValueStore, session_store: KeyValueStore,
                 remote, products, discount_client, *,
                 max_attempts: int = 3, backoff_base: float = 1.0, refresh_delay: float = 1.0,
                 discount_interval: float = 1.0, coupon_recheck_delay: float = 0.5,
                 notification_ttl: int = 86400, sweep_interval: float = 3600,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.time):
        self.cart_key = cart_key
        self.local_store = local_store
        self.session_store = session_store
        self.remote = remote
        self.products = products
        self.refresh_delay = refresh_delay
        self.sweep_interval = sweep_interval

        self.notifier = Notifier()
        self.deduper = NotificationDeduper(session_store, self.notifier, ttl=notification_ttl, clock=clock)
        self.reconciler = CartReconciler(
            remote, products, self.deduper, self.notifier,
            max_attempts=max_attempts, backoff_base=backoff_base, sleep=sleep,
        )
        self.discounts = DiscountService(
            discount_client, self.notifier, store=session_store, min_interval=discount_interval,
        )
        self.background = TaskGroup('cart')
        self._coupon_recheck = Debouncer(coupon_recheck_delay, self.background)
        self._sweeper: Optional[asyncio.Task] = None

        self._cart = self._read_local()
        self._version = 0
        self._revision = 0
        self._clears = 0
        self._snapshot = self._build_snapshot()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the hourly notification sweep. Must run on the engine loop."""
        if self._sweeper is None and self.sweep_interval > 0:
            self._sweeper = asyncio.ensure_future(self.deduper.sweep_forever(self.sweep_interval))

    def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        self.background.cancel_all()

    def set_auth_token(self, token: Optional[str]) -> None:
        """Pass the caller's bearer token to every collaborator."""
        for client in (self.remote, self.products, self.discounts.client):
            if hasattr(client, 'token') and client.token != token:
                client.token = token
                if client is self.remote:
                    self.reconciler.auth_failed = False

    @property
    def authenticated(self) -> bool:
        return self.reconciler.authenticated

    # -- state -------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    @property
    def revision(self) -> int:
        """Bumped on every change to the lines, not on repricing."""
        return self._revision

    @property
    def snapshot(self) -> CartSnapshot:
        return self._snapshot

    @property
    def lines(self) -> List[CartLine]:
        return self._cart.lines

    def _read_local(self) -> Cart:
        data = self.local_store.get(self.cart_key)
        try:
            return Cart.from_list(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"[CART] Discarding unreadable local cart {self.cart_key}: {e}")
            return Cart()

    def _build_snapshot(self) -> CartSnapshot:
        priced = self.discounts.price(self._cart.lines)
        return CartSnapshot.build(self._version, priced.lines, self.discounts.manual_rule, policy='tiered')

    def _reprice(self) -> CartSnapshot:
        self._version += 1
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def _commit(self, lines: Optional[Sequence[CartLine]] = None, reason: str = '') -> CartSnapshot:
        """Replace the lines (when given), persist them and publish a new snapshot."""
        if lines is not None:
            self._cart = Cart(lines)
        self.local_store.set(self.cart_key, self._cart.to_list())
        self._revision += 1
        snapshot = self._reprice()
        logger.debug(f"[CART] {self.cart_key} v{snapshot.version} ({reason}): {len(self._cart)} lines")
        return snapshot

    def to_dict(self) -> Dict[str, Any]:
        data = self._snapshot.to_dict()
        data['discount'] = self.discounts.to_dict()
        data['authenticated'] = self.authenticated
        data['notifications'] = [n.to_dict() for n in self.notifier.pending()]
        return data

    def drain_notifications(self) -> List[Dict[str, Any]]:
        return [n.to_dict() for n in self.notifier.drain()]

    # -- load / sync -------------------------------------------------------

    async def load(self) -> CartSnapshot:
        """
        Full reconciliation pass. A second call while one is running waits
        for the running pass instead of starting another.
        """
        running = _LOADS_IN_PROGRESS.get(self.cart_key)
        if running is not None and not running.done():
            logger.info(f"[CART] Load already in progress for {self.cart_key}")
            await asyncio.shield(running)
            return self._snapshot

        task = asyncio.ensure_future(self._load())
        _LOADS_IN_PROGRESS[self.cart_key] = task
        try:
            return await task
        finally:
            if _LOADS_IN_PROGRESS.get(self.cart_key) is task:
                del _LOADS_IN_PROGRESS[self.cart_key]

    async def _load(self) -> CartSnapshot:
        self.deduper.prune()
        baseline = {line.product_id: line for line in self._cart.lines}
        revision, clears = self._revision, self._clears
        lines = await self.reconciler.reconcile(list(baseline.values()))

        # edits can land while the rebase itself awaits the remote cart
        while self._revision != revision:
            logger.info(f"[CART] Lines of {self.cart_key} changed during load "
                        f"(r{revision} -> r{self._revision}); re-applying the edits")
            seen = {line.product_id: line for line in self._cart.lines}
            seen_revision, seen_clears = self._revision, self._clears
            lines = await self._rebase(lines, baseline, cleared=self._clears != clears)
            baseline, revision, clears = seen, seen_revision, seen_clears

        self._commit(lines, 'load')
        await self._refresh_pricing(force=True)
        return self._snapshot

    async def _rebase(self, merged: Sequence[CartLine], baseline: Dict[str, CartLine],
                      cleared: bool) -> List[CartLine]:
        """
        Re-apply the edits made while a load was running on top of its merged
        lines, and push those edits to the remote cart one product at a time.

        Lines the user removed are dropped, lines added or re-quantified take
        the user's version, and lines only the remote cart held are kept
        unless the cart was cleared meanwhile.
        """
        current = {line.product_id: line for line in self._cart.lines}
        if cleared:
            merged, baseline = [], {}

        removed = {pid for pid in baseline if pid not in current}
        edited = {
            pid: line for pid, line in current.items()
            if pid not in baseline or baseline[pid].quantity != line.quantity
        }

        rebased = []
        for line in merged:
            if line.product_id in removed:
                continue
            rebased.append(edited.get(line.product_id, line))
        known = {line.product_id for line in rebased}
        rebased.extend(line for pid, line in edited.items() if pid not in known)

        if self.authenticated:
            if cleared:
                remote_lines = await self.reconciler.fetch_remote()
                await self.reconciler.clear_remote([l for l in remote_lines if l.product_id not in current])
            for pid in removed:
                try:
                    await self._remote_remove(pid)
                except StorefrontError as e:
                    logger.error(f"[SYNC] Re-applying removal of {pid} failed: {e.message}")
            for line in edited.values():
                await self._replay_quantity(line.product_id, line.quantity)
        return rebased

    async def _replay_quantity(self, product_id: str, quantity: int) -> None:
        try:
            await self.remote.update_quantity(product_id, quantity)
        except NotFoundError:
            try:
                await self.remote.add_item(product_id, quantity)
            except StorefrontError as e:
                logger.error(f"[SYNC] Re-applying {product_id} x{quantity} failed: {e.message}")
        except StorefrontError as e:
            logger.error(f"[SYNC] Re-applying {product_id} x{quantity} failed: {e.message}")

    async def sync_remote(self) -> bool:
        """Repair drift between the current lines and the remote cart."""
        try:
            return await self.reconciler.reconcile_drift(self._cart.lines)
        except SyncFailed as e:
            logger.error(f"[SYNC] Background sync for {self.cart_key} gave up: {e.message}")
            return False

    async def refresh_product_info(self) -> bool:
        """
        Re-enrich the lines from the catalogue.

        Returns False when the result was discarded because the cart changed
        while the lookup was running.
        """
        revision = self._revision
        lines = await self.reconciler.enrich(self._cart.lines)
        if self._revision != revision:
            logger.info(f"[CART] Discarding stale product refresh for {self.cart_key}: "
                        f"r{revision} superseded by r{self._revision}")
            return False
        self._commit(lines, 'refresh')
        return True

    async def _refresh_pricing(self, force: bool = False) -> None:
        """Refresh automatic rules (throttled) or schedule the coupon re-check."""
        if self.discounts.is_using_manual:
            self._coupon_recheck.call(lambda: self.discounts.recalculate_manual(self._cart.lines))
            return
        if await self.discounts.refresh_automatic(self._cart.lines, force=force):
            self._reprice()

    # -- remote write-through ----------------------------------------------

    def _schedule_sync(self, delay: float = 0) -> None:
        self.background.spawn(self.sync_remote(), delay=delay)

    async def _remote_remove(self, product_id: str) -> None:
        try:
            await self.remote.remove_item(product_id)
        except NotFoundError:
            logger.debug(f"[SYNC] {product_id} already absent from the remote cart")

    async def _push_quantity(self, product_id: str, current: int, quantity: int) -> None:
        try:
            await self.remote.update_quantity(product_id, quantity)
            return
        except AuthenticationRequired as e:
            logger.warning(f"[SYNC] Quantity update rejected credentials: {e.message}")
            self.reconciler.auth_failed = True
            return
        except StorefrontError as e:
            logger.warning(f"[SYNC] Quantity update for {product_id} failed ({e.message}); trying fallback")

        try:
            if quantity > current:
                await self.remote.add_items([product_id] * (quantity - current))
            else:
                await self._remote_remove(product_id)
                await self.remote.add_item(product_id, quantity)
        except StorefrontError as e:
            logger.error(f"[SYNC] Quantity fallback for {product_id} failed: {e.message}")
            self.notifier.error(QUANTITY_SYNC_FAILED_MESSAGE)
            self._schedule_sync()

    # -- user operations ---------------------------------------------------

    async def add_item(self, product_id: str, quantity: int = 1) -> CartSnapshot:
        """
        Add units of a product, clamped to known stock.

        Raises:
            ValidationError: quantity below 1
            NotFoundError: the catalogue does not know the product
            NetworkError: catalogue unreachable for a product not yet in the cart
        """
        product_id = str(product_id)
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        existing = self._cart.get(product_id)
        info = None
        try:
            info = (await self.products.get_products([product_id])).get(product_id)
        except StorefrontError as e:
            if existing is None:
                raise
            logger.warning(f"[CART] Product lookup for {product_id} failed, adding blind: {e.message}")

        if existing is None and (info is None or info.price is None):
            raise NotFoundError(f"Product {product_id} not found")

        stock = info.stock_quantity if info is not None else None
        if stock is None and existing is not None:
            stock = existing.stock_quantity
        name = (existing.name if existing else None) or (info.name if info else '') or product_id
        if stock is not None and stock <= 0:
            self.notifier.error(f'Product "{name}" is out of stock.')
            return self._snapshot

        current = existing.quantity if existing else 0
        target = current + quantity
        if stock is not None and target > stock:
            self.notifier.error(f"The maximum quantity you can buy is {stock}")
            target = stock
        if target == current:
            return self._snapshot

        if existing is None:
            line = CartLine(
                product_id=product_id,
                name=name,
                quantity=target,
                unit_price=info.price,
                original_unit_price=info.original_price,
                stock_quantity=stock,
                category_ids=info.categories,
                discount_source=info.discount_source,
                discount_type=info.discount_type,
                image_url=info.image_url,
                slug=product_id,
            )
        else:
            line = existing.copy(quantity=target, stock_quantity=stock)
        self._cart.put(line)
        snapshot = self._commit(reason='add')

        if self.authenticated:
            try:
                await self.remote.add_item(product_id, target - current)
            except StockExceeded as e:
                logger.warning(f"[SYNC] Remote cart refused {product_id}: {e.message}")
                self._schedule_sync(self.refresh_delay)
            except AuthenticationRequired as e:
                logger.warning(f"[SYNC] Add rejected credentials: {e.message}")
                self.reconciler.auth_failed = True
            except StorefrontError as e:
                logger.error(f"[SYNC] Remote add for {product_id} failed: {e.message}")
                self._schedule_sync(self.refresh_delay)

        await self._refresh_pricing()
        logger.info(f"[CART] Added {target - current} x {product_id} (v{snapshot.version})")
        return self._snapshot

    async def update_quantity(self, product_id: str, quantity: int) -> CartSnapshot:
        """
        Set a line's quantity.

        Below 1 removes the line, a known zero stock removes it with a
        notification, above stock clamps with a notification, unchanged is a
        no-op. A product refresh is scheduled afterwards.

        Raises:
            NotFoundError: the product is not in the cart
        """
        product_id = str(product_id)
        line = self._cart.get(product_id)
        if line is None:
            raise NotFoundError(f"Product {product_id} is not in the cart")

        if quantity < 1:
            return await self.remove_item(product_id)

        stock = line.stock_quantity
        if stock is not None and stock <= 0:
            self.notifier.error(f'Product "{line.name}" is out of stock and was removed from your cart.')
            return await self.remove_item(product_id)

        if stock is not None and quantity > stock:
            self.notifier.error(f"The maximum quantity you can buy is {stock}")
            quantity = stock

        if quantity == line.quantity:
            return self._snapshot

        current = line.quantity
        self._cart.put(line.copy(quantity=quantity, unit_price=0 if line.is_free else line.unit_price))
        snapshot = self._commit(reason='quantity')
        logger.info(f"[CART] {product_id}: {current} -> {quantity} (v{snapshot.version})")

        if self.authenticated:
            await self._push_quantity(product_id, current, quantity)

        await self._refresh_pricing()
        self.background.spawn(self.refresh_product_info(), delay=self.refresh_delay)
        return self._snapshot

    async def remove_item(self, product_id: str) -> CartSnapshot:
        """Remove a line locally at once; the remote removal is best effort."""
        product_id = str(product_id)
        removed = self._cart.remove(product_id)
        if removed is None:
            return self._snapshot

        snapshot = self._commit(reason='remove')
        logger.info(f"[CART] Removed {product_id} (v{snapshot.version})")

        if self.authenticated:
            try:
                await self._remote_remove(product_id)
            except AuthenticationRequired as e:
                logger.warning(f"[SYNC] Remove rejected credentials: {e.message}")
                self.reconciler.auth_failed = True
            except StorefrontError as e:
                logger.error(f"[SYNC] Remote remove for {product_id} failed: {e.message}")
                self.notifier.error(REMOVE_SYNC_FAILED_MESSAGE)
                self._schedule_sync(self.refresh_delay)

        await self._refresh_pricing()
        return self._snapshot

    async def clear_cart(self) -> CartSnapshot:
        """Empty the cart locally and remotely and drop any coupon."""
        previous = self._cart.lines
        self._cart.clear()
        self._clears += 1
        self.discounts.remove_coupon()
        self.discounts.automatic_rules = []
        self._commit(reason='clear')

        if self.authenticated:
            remote_lines = await self.reconciler.fetch_remote()
            known = {line.product_id: line for line in previous}
            for line in remote_lines:
                known.setdefault(line.product_id, line)
            await self.reconciler.clear_remote(list(known.values()))

        logger.info(f"[CART] Cleared {self.cart_key}")
        return self._snapshot

    # -- coupons -----------------------------------------------------------

    async def apply_coupon(self, code: str) -> CouponOutcome:
        outcome = await self.discounts.apply_coupon(code, self._cart.lines)
        if outcome.status == APPLIED:
            self._reprice()
        return outcome

    async def confirm_manual_discount(self) -> CouponOutcome:
        outcome = self.discounts.confirm_manual(self._cart.lines)
        if outcome.status == APPLIED:
            self._reprice()
        return outcome

    async def keep_automatic_discount(self) -> CouponOutcome:
        return self.discounts.keep_automatic()

    async def remove_coupon(self) -> CouponOutcome:
        outcome = self.discounts.remove_coupon()
        if outcome.status == REMOVED:
            await self.discounts.refresh_automatic(self._cart.lines, force=True)
            self._reprice()
        return outcome

    # -- checkout ----------------------------------------------------------

    def checkout_snapshot(self) -> CartSnapshot:
        """Per-line maximization view of the current lines (not committed)."""
        priced = self.discounts.checkout_price(self._cart.lines)
        return CartSnapshot.build(self._version, priced.lines, self.discounts.manual_rule, policy='per_line')


def create_engine(config: Dict[str, Any], local_store: KeyValueStore, session_store: KeyValueStore,
                  session_id: str, token: Optional[str] = None) -> CartEngine:
    """Build an engine talking to the configured storefront services."""
    base_url = config['STOREFRONT_API_URL']
    timeout = config.get('HTTP_TIMEOUT', 10)
    return CartEngine(
        cart_key=f"{config.get('CART_STORAGE_KEY', 'cart')}:{session_id}",
        local_store=local_store,
        session_store=session_store.scoped(session_id),
        remote=RemoteCartClient(base_url, token=token, timeout=timeout),
        products=ProductInfoClient(base_url, token=token, timeout=timeout),
        discount_client=DiscountClient(base_url, token=token, timeout=timeout),
        max_attempts=config.get('SYNC_MAX_ATTEMPTS', 3),
        backoff_base=config.get('SYNC_BACKOFF_BASE', 1.0),
        refresh_delay=config.get('BACKGROUND_REFRESH_DELAY', 1.0),
        discount_interval=config.get('DISCOUNT_MIN_INTERVAL', 1.0),
        coupon_recheck_delay=config.get('COUPON_RECHECK_DELAY', 0.5),
        notification_ttl=config.get('NOTIFICATION_TTL', 86400),
        sweep_interval=config.get('NOTIFICATION_SWEEP_INTERVAL', 3600),
    )
