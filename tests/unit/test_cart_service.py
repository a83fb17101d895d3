"""
Unit tests for the cart engine: user operations, versioning and load sequencing.
"""

import asyncio

import pytest
from decimal import Decimal

from storefront.exceptions import NetworkError, NotFoundError, ServerError, ValidationError
from storefront.services.cart_service import (
    CartEngine, is_load_in_progress, QUANTITY_SYNC_FAILED_MESSAGE, REMOVE_SYNC_FAILED_MESSAGE
)
from storefront.services.discount_service import APPLIED
from storefront.services.storefront_client import CouponValidation
from conftest import make_line, make_rule


def build_engine(remote, products, discounts, local_store, session_store, sleep, cart_key='cart:test'):
    return CartEngine(
        cart_key, local_store, session_store, remote, products, discounts,
        refresh_delay=0, discount_interval=0, coupon_recheck_delay=0, sweep_interval=0, sleep=sleep,
    )


def ids(snapshot):
    return [line.product_id for line in snapshot.lines]


def messages(engine):
    return [n['message'] for n in engine.drain_notifications()]


class TestAddItem:

    @pytest.mark.asyncio
    async def test_new_line_is_persisted_and_pushed(self, engine, products, remote, local_store):
        products.add('A', 1000, stock=5)

        snapshot = await engine.add_item('A', 2)
        await engine.background.join()

        assert ids(snapshot) == ['A']
        assert snapshot.lines[0].quantity == 2
        assert snapshot.totals.subtotal == Decimal('2000')
        assert ('add_item', 'A', 2) in remote.calls
        assert local_store.get('cart:test')[0]['quantity'] == 2

    @pytest.mark.asyncio
    async def test_quantity_clamped_to_stock(self, engine, products):
        products.add('A', 1000, stock=3)

        snapshot = await engine.add_item('A', 5)

        assert snapshot.lines[0].quantity == 3
        assert messages(engine) == ['The maximum quantity you can buy is 3']

    @pytest.mark.asyncio
    async def test_out_of_stock_not_added(self, engine, products, remote):
        products.add('A', 1000, stock=0, name='Mouse')

        snapshot = await engine.add_item('A')

        assert ids(snapshot) == []
        assert messages(engine) == ['Product "Mouse" is out of stock.']
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_unknown_product(self, engine):
        with pytest.raises(NotFoundError):
            await engine.add_item('ZZZ')

    @pytest.mark.asyncio
    async def test_catalogue_unreachable_for_new_line(self, engine, products):
        products.error = NetworkError('down')
        with pytest.raises(NetworkError):
            await engine.add_item('A')

    @pytest.mark.asyncio
    async def test_invalid_quantity(self, engine):
        with pytest.raises(ValidationError):
            await engine.add_item('A', 0)

    @pytest.mark.asyncio
    async def test_anonymous_cart_stays_local(self, engine, products, remote):
        remote.token = None
        products.add('A', 1000)

        snapshot = await engine.add_item('A')

        assert ids(snapshot) == ['A']
        assert not engine.authenticated
        assert remote.calls == []


class TestUpdateQuantity:

    @pytest.mark.asyncio
    async def test_unchanged_quantity_is_noop(self, engine, products):
        products.add('A', 1000, stock=5)
        await engine.add_item('A', 2)
        version = engine.version

        await engine.update_quantity('A', 2)

        assert engine.version == version

    @pytest.mark.asyncio
    async def test_below_one_removes_line(self, engine, products, remote):
        products.add('A', 1000)
        await engine.add_item('A')

        snapshot = await engine.update_quantity('A', 0)

        assert ids(snapshot) == []
        assert 'A' not in remote.items

    @pytest.mark.asyncio
    async def test_above_stock_clamps(self, engine, products, remote):
        products.add('A', 1000, stock=4)
        await engine.add_item('A')
        engine.drain_notifications()

        snapshot = await engine.update_quantity('A', 10)
        await engine.background.join()

        assert snapshot.lines[0].quantity == 4
        assert remote.items['A'].quantity == 4
        assert messages(engine) == ['The maximum quantity you can buy is 4']

    @pytest.mark.asyncio
    async def test_known_zero_stock_removes_line(self, remote, products, discounts, local_store, session_store, sleep):
        local_store.set('cart:test', [make_line('A', 1000, stock=0, name='Mouse').to_dict()])
        engine = build_engine(remote, products, discounts, local_store, session_store, sleep)

        snapshot = await engine.update_quantity('A', 2)

        assert ids(snapshot) == []
        assert 'out of stock' in messages(engine)[0]

    @pytest.mark.asyncio
    async def test_missing_line(self, engine):
        with pytest.raises(NotFoundError):
            await engine.update_quantity('A', 2)

    @pytest.mark.asyncio
    async def test_failed_update_falls_back_to_add_items(self, engine, products, remote):
        products.add('A', 1000, stock=10)
        await engine.add_item('A')
        remote.fail('update_quantity', ServerError(500, 'boom'))

        await engine.update_quantity('A', 3)
        await engine.background.join()

        assert ('add_items', ['A', 'A']) in remote.calls
        assert remote.items['A'].quantity == 3

    @pytest.mark.asyncio
    async def test_failed_decrease_falls_back_to_remove_and_add(self, engine, products, remote):
        products.add('A', 1000, stock=10)
        await engine.add_item('A', 3)
        remote.fail('update_quantity', ServerError(500, 'boom'))

        await engine.update_quantity('A', 1)
        await engine.background.join()

        assert remote.call_names()[-2:] == ['remove_item', 'add_item']
        assert remote.items['A'].quantity == 1

    @pytest.mark.asyncio
    async def test_failed_fallback_notifies_once_and_resyncs(self, engine, products, remote):
        products.add('A', 1000, stock=10)
        await engine.add_item('A')
        engine.drain_notifications()
        remote.fail('update_quantity', ServerError(500, 'boom'))
        remote.fail('add_items', ServerError(500, 'boom'))

        await engine.update_quantity('A', 3)
        await engine.background.join()

        assert messages(engine) == [QUANTITY_SYNC_FAILED_MESSAGE]
        assert remote.items['A'].quantity == 3

    @pytest.mark.asyncio
    async def test_free_line_keeps_zero_price(self, remote, products, discounts, local_store, session_store, sleep):
        local_store.set('cart:test', [make_line('G', 0, original=50000, stock=10).to_dict()])
        engine = build_engine(remote, products, discounts, local_store, session_store, sleep)

        snapshot = await engine.update_quantity('G', 2)
        await engine.background.join()

        assert snapshot.lines[0].unit_price == Decimal('0')
        assert snapshot.lines[0].quantity == 2


class TestRemoveAndClear:

    @pytest.mark.asyncio
    async def test_remote_failure_is_surfaced_and_resynced(self, engine, products, remote):
        products.add('A', 1000)
        await engine.add_item('A')
        engine.drain_notifications()
        remote.fail('remove_item', ServerError(500, 'boom'))

        snapshot = await engine.remove_item('A')
        await engine.background.join()

        assert ids(snapshot) == []
        assert messages(engine) == [REMOVE_SYNC_FAILED_MESSAGE]
        assert 'A' not in remote.items

    @pytest.mark.asyncio
    async def test_removing_absent_line_is_noop(self, engine):
        version = engine.version
        await engine.remove_item('nope')
        assert engine.version == version

    @pytest.mark.asyncio
    async def test_clear_empties_both_carts_and_drops_coupon(self, engine, products, remote, discounts):
        products.add('A', 1000)
        products.add('B', 2000)
        await engine.add_item('A')
        await engine.add_item('B')
        remote.seed('C', 1)
        coupon = make_rule('c10', 'percentage', 'all', 10, automatic=False, code='TEN')
        discounts.validations['TEN'] = CouponValidation(valid=True, rule=coupon)
        await engine.apply_coupon('TEN')

        snapshot = await engine.clear_cart()

        assert ids(snapshot) == []
        assert remote.items == {}
        assert engine.discounts.manual_rule is None


class TestVersioning:

    @pytest.mark.asyncio
    async def test_stale_product_refresh_is_discarded(self, engine, products):
        products.add('A', 1000, stock=10)
        products.add('B', 500, stock=10)
        await engine.add_item('A')
        await engine.add_item('B')

        async def edit_meanwhile():
            products.before_return = None
            await engine.remove_item('B')

        products.before_return = edit_meanwhile
        assert await engine.refresh_product_info() is False
        assert ids(engine.snapshot) == ['A']

    @pytest.mark.asyncio
    async def test_fresh_product_refresh_is_committed(self, engine, products):
        products.add('A', 1000, stock=10)
        await engine.add_item('A')
        products.add('A', 900, stock=10, original_price=1000)
        version = engine.version

        assert await engine.refresh_product_info() is True
        assert engine.version > version
        assert engine.snapshot.lines[0].unit_price == Decimal('900')

    @pytest.mark.asyncio
    async def test_superseded_load_keeps_user_edit(self, remote, products, discounts, local_store, session_store, sleep):
        local_store.set('cart:test', [make_line('A', 1000).to_dict(), make_line('B', 500).to_dict()])
        engine = build_engine(remote, products, discounts, local_store, session_store, sleep)
        products.add('A', 1000, stock=10)
        products.add('B', 500, stock=10)

        async def edit_meanwhile():
            products.before_return = None
            await engine.remove_item('B')

        products.before_return = edit_meanwhile
        snapshot = await engine.load()
        await engine.background.join()

        assert ids(snapshot) == ['A']
        assert ids(engine.snapshot) == ['A']
        assert set(remote.items) == {'A'}

    @pytest.mark.asyncio
    async def test_coupon_applied_during_load_keeps_remote_only_line(self, engine, remote, products, discounts,
                                                                     local_store):
        remote.seed('B', 1, price=Decimal('500'))
        products.add('A', 1000, stock=10)
        products.add('B', 500, stock=10)
        await engine.add_item('A')
        remote.items.pop('A')
        coupon = make_rule('c20', 'percentage', 'all', 20, automatic=False, code='TWENTY')
        discounts.validations['TWENTY'] = CouponValidation(valid=True, rule=coupon)

        async def apply_meanwhile():
            products.before_return = None
            await engine.apply_coupon('TWENTY')

        products.before_return = apply_meanwhile
        snapshot = await engine.load()

        assert ids(snapshot) == ['B', 'A']
        assert set(remote.items) == {'A', 'B'}
        assert [entry['product_id'] for entry in local_store.get('cart:test')] == ['B', 'A']

    @pytest.mark.asyncio
    async def test_item_added_during_load_is_replayed_on_merged_cart(self, engine, remote, products):
        remote.seed('B', 1, price=Decimal('500'))
        products.add('A', 1000, stock=10)
        products.add('B', 500, stock=10)
        products.add('C', 200, stock=10)
        await engine.add_item('A')
        remote.items.pop('A')

        async def add_meanwhile():
            products.before_return = None
            await engine.add_item('C')

        products.before_return = add_meanwhile
        snapshot = await engine.load()
        await engine.background.join()

        assert ids(snapshot) == ['B', 'A', 'C']
        assert set(remote.items) == {'A', 'B', 'C'}
        assert remote.items['C'].quantity == 1

    @pytest.mark.asyncio
    async def test_cart_cleared_during_load_stays_empty(self, engine, remote, products):
        remote.seed('B', 1, price=Decimal('500'))
        products.add('A', 1000, stock=10)
        products.add('B', 500, stock=10)
        await engine.add_item('A')
        remote.items.pop('A')

        async def clear_meanwhile():
            products.before_return = None
            await engine.clear_cart()

        products.before_return = clear_meanwhile
        snapshot = await engine.load()

        assert ids(snapshot) == []
        assert engine.lines == []
        assert remote.items == {}

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_pass(self, engine, remote):
        first, second = await asyncio.gather(engine.load(), engine.load())

        assert remote.call_names() == ['get_cart']
        assert first.version == second.version
        assert not is_load_in_progress(engine.cart_key)

    @pytest.mark.asyncio
    async def test_load_merges_remote_cart(self, engine, remote, products):
        remote.seed('A', 2, price=Decimal('1000'))
        products.add('A', 1000, stock=10)

        snapshot = await engine.load()

        assert ids(snapshot) == ['A']
        assert snapshot.lines[0].quantity == 2

    @pytest.mark.asyncio
    async def test_lines_survive_restart(self, engine, products, remote, discounts, local_store, session_store, sleep):
        products.add('A', 1000)
        await engine.add_item('A', 2)

        restarted = build_engine(remote, products, discounts, local_store, session_store, sleep)

        assert [(l.product_id, l.quantity) for l in restarted.lines] == [('A', 2)]


class TestDiscounts:

    @pytest.mark.asyncio
    async def test_automatic_rules_priced_into_snapshot(self, engine, products, discounts):
        discounts.rules = [make_rule('auto', 'percentage', 'all', 10)]
        products.add('A', 1000)

        snapshot = await engine.add_item('A')

        assert snapshot.totals.discount == Decimal('100')
        assert snapshot.totals.total == Decimal('900')

    @pytest.mark.asyncio
    async def test_coupon_applied_through_engine(self, engine, products, discounts):
        products.add('A', 1000)
        await engine.add_item('A')
        coupon = make_rule('c20', 'percentage', 'all', 20, automatic=False, code='TWENTY')
        discounts.validations['TWENTY'] = CouponValidation(valid=True, rule=coupon)

        outcome = await engine.apply_coupon('TWENTY')

        assert outcome.status == APPLIED
        assert engine.snapshot.totals.discount == Decimal('200')
        assert engine.snapshot.manual_rule == coupon

    @pytest.mark.asyncio
    async def test_checkout_snapshot_uses_per_line_policy(self, engine, products, discounts):
        discounts.rules = [
            make_rule('cpu', 'fixed', 'categories', 300, targets=['CPU']),
            make_rule('all10', 'percentage', 'all', 10),
        ]
        products.add('A', 1000, categories=['CPU'])
        products.add('B', 1000, categories=['CPU'])
        await engine.add_item('A')
        await engine.add_item('B')

        checkout = engine.checkout_snapshot()

        assert checkout.policy == 'per_line'
        assert [line.unit_price for line in checkout.lines] == [Decimal('700'), Decimal('700')]
        assert [line.unit_price for line in engine.snapshot.lines] == [Decimal('700'), Decimal('900')]


def test_token_change_resets_auth_state(engine, remote):
    engine.reconciler.auth_failed = True
    engine.set_auth_token('new-token')
    assert remote.token == 'new-token'
    assert engine.authenticated

    engine.set_auth_token(None)
    assert not engine.authenticated
