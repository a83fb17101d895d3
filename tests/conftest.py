import pytest
from decimal import Decimal

from storefront import create_app
from storefront.database import get_session
from storefront.exceptions import NetworkError, NotFoundError
from storefront.models import CartLine, DiscountRule, DiscountKind, DiscountScope
from storefront.services.cart_service import CartEngine
from storefront.services.engine_runner import EngineRegistry
from storefront.services.store_service import MemoryStore
from storefront.services.storefront_client import ProductInfo, CouponValidation


class FakeRemoteCart:
    """In-memory remote cart recording every call."""

    def __init__(self, token='token-123'):
        self.token = token
        self.items = {}
        self.calls = []
        self.failures = {}

    @property
    def is_authenticated(self):
        return bool(self.token)

    def fail(self, method, *errors):
        """Queue errors raised by the next calls to ``method``."""
        self.failures.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method):
        queue = self.failures.get(method)
        if queue:
            raise queue.pop(0)

    def seed(self, product_id, quantity, price=Decimal('100000')):
        self.items[product_id] = CartLine(product_id=product_id, name=f'Product {product_id}',
                                          quantity=quantity, unit_price=price)

    async def get_cart(self):
        self.calls.append(('get_cart',))
        self._maybe_fail('get_cart')
        return [line.copy() for line in self.items.values()]

    async def add_item(self, product_id, quantity=1):
        self.calls.append(('add_item', product_id, quantity))
        self._maybe_fail('add_item')
        line = self.items.get(product_id)
        if line is None:
            self.items[product_id] = CartLine(product_id=product_id, name=product_id,
                                              quantity=quantity, unit_price=Decimal('0'))
        else:
            self.items[product_id] = line.copy(quantity=line.quantity + quantity)
        return {'success': True}

    async def add_items(self, product_ids):
        self.calls.append(('add_items', list(product_ids)))
        self._maybe_fail('add_items')
        for pid in product_ids:
            line = self.items.get(pid)
            if line is None:
                self.items[pid] = CartLine(product_id=pid, name=pid, quantity=1, unit_price=Decimal('0'))
            else:
                self.items[pid] = line.copy(quantity=line.quantity + 1)
        return {'success': True}

    async def update_quantity(self, product_id, quantity):
        self.calls.append(('update_quantity', product_id, quantity))
        self._maybe_fail('update_quantity')
        if product_id not in self.items:
            raise NotFoundError(f'{product_id} not in cart')
        self.items[product_id] = self.items[product_id].copy(quantity=quantity)
        return {'success': True}

    async def remove_item(self, product_id):
        self.calls.append(('remove_item', product_id))
        self._maybe_fail('remove_item')
        if self.items.pop(product_id, None) is None:
            raise NotFoundError(f'{product_id} not in cart')
        return {'success': True}

    def call_names(self):
        return [call[0] for call in self.calls]


class FakeProducts:
    """Catalogue keyed by product id."""

    def __init__(self):
        self.token = None
        self.catalogue = {}
        self.error = None
        self.calls = 0
        self.before_return = None

    def add(self, product_id, price, stock=None, categories=(), original_price=None, name=None):
        self.catalogue[product_id] = ProductInfo(
            product_id=product_id,
            price=Decimal(str(price)),
            original_price=Decimal(str(original_price)) if original_price is not None else None,
            categories=frozenset(categories),
            stock_quantity=stock,
            name=name or f'Product {product_id}',
        )

    async def get_products(self, product_ids):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.before_return is not None:
            await self.before_return()
        return {pid: self.catalogue[pid] for pid in product_ids if pid in self.catalogue}


class FakeDiscounts:
    """Discount service answering from fixed rules."""

    def __init__(self):
        self.token = None
        self.rules = []
        self.validations = {}
        self.automatic_calls = 0
        self.validate_calls = 0

    async def list_automatic_discounts(self, context):
        self.automatic_calls += 1
        return list(self.rules)

    async def validate_coupon(self, code, subtotal, product_ids, prices):
        self.validate_calls += 1
        validation = self.validations.get(code)
        if validation is None:
            return CouponValidation(valid=False, error_message='Invalid coupon code')
        return validation


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_line(product_id, price, quantity=1, original=None, stock=None, categories=(), name=None):
    return CartLine(
        product_id=product_id,
        name=name or f'Product {product_id}',
        quantity=quantity,
        unit_price=Decimal(str(price)),
        original_unit_price=Decimal(str(original)) if original is not None else None,
        stock_quantity=stock,
        category_ids=frozenset(categories),
    )


def make_rule(rule_id, kind, scope, magnitude, targets=(), automatic=True, code=None, **extra):
    return DiscountRule(
        id=rule_id,
        kind=DiscountKind(kind),
        scope=DiscountScope(scope),
        magnitude=Decimal(str(magnitude)),
        is_automatic=automatic,
        target_ids=frozenset(targets),
        code=code,
        **extra,
    )


@pytest.fixture
def remote():
    return FakeRemoteCart()


@pytest.fixture
def products():
    return FakeProducts()


@pytest.fixture
def discounts():
    return FakeDiscounts()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def local_store():
    return MemoryStore()


@pytest.fixture
def session_store():
    return MemoryStore()


@pytest.fixture
def engine(remote, products, discounts, sleep, local_store, session_store):
    """Engine with every delay at zero and fakes for the remote services."""
    return CartEngine(
        'cart:test', local_store, session_store, remote, products, discounts,
        refresh_delay=0, discount_interval=0, coupon_recheck_delay=0,
        sweep_interval=0, sleep=sleep,
    )


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestingConfig')
    yield app
    registry = app.extensions['cart_engines']
    registry.close_all()
    registry.runner.stop()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Create database session for testing."""
    session = get_session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope='function')
def fake_services(app):
    """
    Swap the app's engine factory for one wired to in-memory fakes.

    Yields the fakes so tests can seed the catalogue and inspect calls.
    """
    registry: EngineRegistry = app.extensions['cart_engines']
    fakes = {
        'remote': FakeRemoteCart(token=None),
        'products': FakeProducts(),
        'discounts': FakeDiscounts(),
    }

    def factory(session_id, token):
        return CartEngine(
            f'cart:{session_id}', MemoryStore(), MemoryStore(),
            fakes['remote'], fakes['products'], fakes['discounts'],
            refresh_delay=0, discount_interval=0, coupon_recheck_delay=0, sweep_interval=0,
        )

    original = registry.factory
    registry.close_all()
    registry.factory = factory
    yield fakes
    registry.close_all()
    registry.factory = original


@pytest.fixture
def unreachable():
    return NetworkError('connection refused')
