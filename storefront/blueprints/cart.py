"""Cart API blueprint (JSON)."""
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from flask import Blueprint, current_app, jsonify, request, session, Response

from storefront.exceptions import ValidationError
from storefront.services.cart_service import CartEngine
from storefront.utils.number_format import parse_quantity

cart_bp = Blueprint('cart', __name__, url_prefix='/api/cart')

SESSION_KEY = 'cart_session_id'


def _cart_session_id() -> str:
    """Cart session id kept in the signed cookie session."""
    session_id = session.get(SESSION_KEY)
    if not session_id:
        session_id = uuid.uuid4().hex
        session[SESSION_KEY] = session_id
        session.permanent = True
    return session_id


def _bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        token = header[7:].strip()
        return token or None
    return None


def _run(operation: Callable[[CartEngine], Awaitable[Any]]) -> Any:
    """Run ``operation`` on this session's engine and return its result."""
    registry = current_app.extensions['cart_engines']
    return registry.call(_cart_session_id(), _bearer_token(), operation)


def _cart_response(operation: Callable[[CartEngine], Awaitable[Any]], status: int = 200) -> Tuple[Response, int]:
    """Run ``operation`` and answer with the resulting cart state."""

    async def run(engine: CartEngine) -> Dict[str, Any]:
        await operation(engine)
        return engine.to_dict()

    return jsonify(_run(run)), status


def _coupon_response(operation: Callable[[CartEngine], Awaitable[Any]]) -> Tuple[Response, int]:
    """Run a coupon operation; an invalid coupon answers 400 with the outcome attached."""

    async def run(engine: CartEngine) -> Tuple[Any, Dict[str, Any]]:
        outcome = await operation(engine)
        return outcome, engine.to_dict()

    outcome, cart = _run(run)
    if not outcome.ok:
        current_app.logger.info(f"[COUPON] Rejected: {outcome.message}")
        body = outcome.error.to_dict()
        body['coupon'] = outcome.to_dict()
        body['cart'] = cart
        return jsonify(body), outcome.error.status_code
    return jsonify({'status': 'ok', 'coupon': outcome.to_dict(), 'cart': cart}), 200


def _quantity_from(payload: Dict[str, Any], default: Any = None) -> int:
    raw = payload.get('quantity', default)
    if raw is None:
        raise ValidationError('quantity is required')
    try:
        return parse_quantity(raw)
    except ValueError as e:
        raise ValidationError(str(e), payload={'field': 'quantity'}) from e


@cart_bp.route('', methods=['GET'])
def get_cart():
    """Reconcile the cart with the remote services and return it."""
    return _cart_response(lambda engine: engine.load())


@cart_bp.route('/items', methods=['POST'])
def add_item():
    payload = request.get_json(silent=True) or {}
    product_id = payload.get('product_id')
    if product_id in (None, ''):
        raise ValidationError('product_id is required', payload={'field': 'product_id'})
    quantity = _quantity_from(payload, default=1)
    current_app.logger.info(f"[CART] add_item product_id={product_id} quantity={quantity}")
    return _cart_response(lambda engine: engine.add_item(str(product_id), quantity))


@cart_bp.route('/items/<product_id>', methods=['PUT'])
def update_item(product_id):
    payload = request.get_json(silent=True) or {}
    quantity = _quantity_from(payload)
    return _cart_response(lambda engine: engine.update_quantity(product_id, quantity))


@cart_bp.route('/items/<product_id>', methods=['DELETE'])
def remove_item(product_id):
    return _cart_response(lambda engine: engine.remove_item(product_id))


@cart_bp.route('', methods=['DELETE'])
def clear_cart():
    return _cart_response(lambda engine: engine.clear_cart())


@cart_bp.route('/coupon', methods=['POST'])
def apply_coupon():
    payload = request.get_json(silent=True) or {}
    code = str(payload.get('code') or '')
    return _coupon_response(lambda engine: engine.apply_coupon(code))


@cart_bp.route('/coupon/confirm', methods=['POST'])
def confirm_coupon():
    """Apply the pending coupon even though automatic discounts are worth more."""
    return _coupon_response(lambda engine: engine.confirm_manual_discount())


@cart_bp.route('/coupon/pending', methods=['DELETE'])
def keep_automatic():
    """Drop the pending coupon and keep the automatic discounts."""
    return _coupon_response(lambda engine: engine.keep_automatic_discount())


@cart_bp.route('/coupon', methods=['DELETE'])
def remove_coupon():
    return _coupon_response(lambda engine: engine.remove_coupon())


@cart_bp.route('/checkout', methods=['GET'])
def checkout():
    """Cart priced with the best single discount per line."""

    async def run(engine: CartEngine) -> Dict[str, Any]:
        return engine.checkout_snapshot().to_dict()

    return jsonify(_run(run)), 200


@cart_bp.route('/notifications', methods=['GET'])
def notifications():
    """Return and clear the queued user notifications."""

    async def run(engine: CartEngine):
        return engine.drain_notifications()

    return jsonify({'notifications': _run(run)}), 200
