"""
Cart Reconciler - keep the local cart and the remote cart consistent.

One load cycle:
1. fetch the remote cart (authenticated only; any failure reads as empty)
2. merge it with the local lines, or push the local lines when it is empty
3. enrich from the product-info service and apply live stock
4. re-fetch the remote cart and repair drift (clear remote, push again)

Reads degrade to local-only. Writes are retried with exponential backoff and
surfaced as a single notification once every attempt has failed.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from storefront.blueprints.metrics import cart_sync_attempts_total, cart_reconciliations_total
from storefront.exceptions import (
    StorefrontError, AuthenticationRequired, NotFoundError, StockExceeded, SyncDrift, SyncFailed
)
from storefront.models.cart_line import CartLine
from storefront.models.discount_rule import DiscountKind, DiscountSource
from storefront.services import stock_validator
from storefront.services.notification_service import NotificationDeduper, Notifier
from storefront.services.storefront_client import ProductInfo

logger = logging.getLogger(__name__)

SYNC_FAILED_MESSAGE = "Could not sync your cart with the server after several attempts. Please reload the page."


def merge(remote_lines: Sequence[CartLine], local_lines: Sequence[CartLine]) -> List[CartLine]:
    """
    Merge the remote cart with the local cart.

    Remote lines are the base. A local-only line is appended. For a shared
    product the quantity is the max of both, and when the local unit price is
    lower its pricing fields (price, list price, discount source and type)
    replace the remote ones.
    """
    merged: Dict[str, CartLine] = {line.product_id: line.copy() for line in remote_lines}

    for local in local_lines:
        remote = merged.get(local.product_id)
        if remote is None:
            merged[local.product_id] = local.copy()
            continue

        changes = {'quantity': max(remote.quantity, local.quantity)}
        if local.unit_price < remote.unit_price:
            changes['unit_price'] = local.unit_price
            changes['original_unit_price'] = local.original_unit_price
            changes['discount_source'] = local.discount_source
            changes['discount_type'] = local.discount_type
        merged[local.product_id] = remote.copy(**changes)

    return list(merged.values())


def check_drift(local_lines: Sequence[CartLine], remote_lines: Sequence[CartLine]) -> None:
    """
    Raise SyncDrift when the two carts differ by product set or by quantity.
    """
    if len(local_lines) != len(remote_lines):
        raise SyncDrift(f"Line count differs: local={len(local_lines)} remote={len(remote_lines)}")

    local_map = {line.product_id: line.quantity for line in local_lines}
    remote_map = {line.product_id: line.quantity for line in remote_lines}
    if local_map != remote_map:
        raise SyncDrift("Product quantities differ")


def apply_product_info(line: CartLine, info: Optional[ProductInfo]) -> CartLine:
    """
    Overwrite price, categories and discount hints from the catalogue.

    A free line keeps price 0; only its list price, categories and hints are
    refreshed.
    """
    if info is None:
        return line

    categories = info.categories or line.category_ids
    if line.is_free:
        return line.copy(
            unit_price=0,
            original_unit_price=info.price or line.original_unit_price,
            category_ids=categories,
            discount_source=line.discount_source or DiscountSource.AUTOMATIC,
            discount_type=line.discount_type or DiscountKind.FIXED,
        )

    price = info.price or line.unit_price
    return line.copy(
        unit_price=price,
        original_unit_price=info.original_price if info.original_price is not None else price,
        category_ids=categories,
        discount_source=info.discount_source,
        discount_type=info.discount_type,
        name=line.name or info.name or '',
        image_url=line.image_url or info.image_url,
    )


class CartReconciler:
    """Runs load cycles against the remote cart and product-info collaborators."""

    def __init__(self, remote, products, deduper: NotificationDeduper, notifier: Notifier,
                 max_attempts: int = 3, backoff_base: float = 1.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.remote = remote
        self.products = products
        self.deduper = deduper
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep
        self.auth_failed = False

    @property
    def authenticated(self) -> bool:
        return bool(getattr(self.remote, 'is_authenticated', False)) and not self.auth_failed

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based): base, 2*base, 4*base..."""
        return self.backoff_base * (2 ** (attempt - 1))

    async def fetch_remote(self) -> List[CartLine]:
        """Fetch the remote cart; any failure reads as an empty cart."""
        if not self.authenticated:
            return []
        try:
            return await self.remote.get_cart()
        except AuthenticationRequired as e:
            logger.warning(f"[SYNC] Remote cart rejected credentials: {e.message}. Local-only mode.")
            self.auth_failed = True
            return []
        except StorefrontError as e:
            logger.warning(f"[SYNC] Remote cart fetch failed: {e.message}")
            return []

    async def push(self, lines: Sequence[CartLine]) -> int:
        """
        Push ``lines`` to the remote cart, one ``add_item(id, 1)`` call per unit.

        Units already accepted are remembered across attempts so a retry only
        sends what is still missing. Returns the number of units added.

        Raises:
            SyncFailed: every attempt failed (one notification is queued first)
        """
        if not self.authenticated or not lines:
            return 0

        pushed: Dict[str, int] = {}
        given_up: Set[str] = set()
        last_error: Optional[StorefrontError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._push_once(lines, pushed, given_up)
            except AuthenticationRequired as e:
                cart_sync_attempts_total.labels(outcome='failure').inc()
                logger.warning(f"[SYNC] Push rejected credentials: {e.message}. Local-only mode.")
                self.auth_failed = True
                last_error = e
                break
            except StorefrontError as e:
                cart_sync_attempts_total.labels(outcome='failure').inc()
                last_error = e
                logger.warning(f"[SYNC] Push attempt {attempt}/{self.max_attempts} failed: {e.message}")
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_delay(attempt))
            else:
                cart_sync_attempts_total.labels(outcome='success').inc()
                units = sum(pushed.values())
                logger.info(f"[SYNC] Pushed {units} units for {len(lines)} lines (attempt {attempt})")
                return units

        error = SyncFailed(attempt, last_error)
        logger.error(f"[SYNC] {error.message}: {last_error}")
        self.notifier.error(SYNC_FAILED_MESSAGE)
        raise error

    async def _push_once(self, lines: Sequence[CartLine], pushed: Dict[str, int], given_up: Set[str]) -> None:
        for line in lines:
            pid = line.product_id
            if pid in given_up:
                continue
            while pushed.get(pid, 0) < line.quantity:
                try:
                    await self.remote.add_item(pid, 1)
                except StockExceeded as e:
                    logger.warning(f"[SYNC] Stock conflict for {pid} after {pushed.get(pid, 0)} units: {e.message}")
                    if pushed.get(pid, 0) == 0:
                        await self._add_single_unit(pid, pushed)
                    given_up.add(pid)
                    break
                pushed[pid] = pushed.get(pid, 0) + 1

    async def _add_single_unit(self, pid: str, pushed: Dict[str, int]) -> None:
        try:
            await self.remote.add_item(pid, 1)
        except StockExceeded as e:
            logger.error(f"[SYNC] Failed to add even one unit of {pid}: {e.message}")
        else:
            pushed[pid] = 1

    async def enrich(self, lines: Sequence[CartLine]) -> List[CartLine]:
        """
        Refresh lines from the product-info service and apply live stock.

        Stock removals and clamps are reported through the deduper. A failed
        lookup returns the lines unchanged.
        """
        if not lines:
            return []
        try:
            infos = await self.products.get_products([line.product_id for line in lines])
        except StorefrontError as e:
            logger.warning(f"[STOCK] Product info lookup failed: {e.message}")
            return list(lines)

        live_stock = {
            pid: info.stock_quantity for pid, info in infos.items() if info.stock_quantity is not None
        }
        result = stock_validator.validate(lines, live_stock)
        if result.changed:
            logger.info(f"[STOCK] removed={[e.product_id for e in result.removed]} "
                        f"clamped={[e.product_id for e in result.clamped]}")
            self.deduper.report(result)

        return [apply_product_info(line, infos.get(line.product_id)) for line in result.lines]

    async def clear_remote(self, remote_lines: Sequence[CartLine]) -> None:
        """Remove every remote line; an already-missing line counts as removed."""
        for line in remote_lines:
            try:
                await self.remote.remove_item(line.product_id)
            except NotFoundError:
                continue
            except StorefrontError as e:
                logger.error(f"[SYNC] Error removing {line.product_id} from remote cart: {e.message}")

    async def reconcile_drift(self, lines: Sequence[CartLine]) -> bool:
        """
        Compare the remote cart with ``lines`` and repair any drift.

        Returns True when the remote cart was rebuilt.

        Raises:
            SyncFailed: the re-push exhausted its attempts
        """
        if not self.authenticated:
            return False
        try:
            remote_lines = await self.remote.get_cart()
        except AuthenticationRequired as e:
            logger.warning(f"[SYNC] Drift check rejected credentials: {e.message}")
            self.auth_failed = True
            return False
        except StorefrontError as e:
            logger.warning(f"[SYNC] Drift check skipped, remote cart unavailable: {e.message}")
            return False

        try:
            check_drift(lines, remote_lines)
        except SyncDrift as drift:
            logger.info(f"[SYNC] Drift detected ({drift.message}); rebuilding remote cart")
            cart_reconciliations_total.inc()
            await self.clear_remote(remote_lines)
            await self.push(lines)
            return True
        return False

    async def reconcile(self, local_lines: Sequence[CartLine]) -> List[CartLine]:
        """Run a full load cycle starting from the local lines. Never raises StorefrontError."""
        working = list(local_lines)

        if self.authenticated:
            remote_lines = await self.fetch_remote()
            if remote_lines:
                working = merge(remote_lines, working)
            elif working:
                try:
                    await self.push(working)
                except SyncFailed:
                    logger.info("[SYNC] Continuing with the local cart after a failed push")

        if working:
            working = await self.enrich(working)
            try:
                await self.reconcile_drift(working)
            except SyncFailed:
                logger.info("[SYNC] Continuing with the local cart after a failed re-push")

        return working
