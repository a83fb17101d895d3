"""Main blueprint with health check endpoints."""
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.database import get_session
from storefront.services.store_service import RedisSessionStore

main_bp = Blueprint('main', __name__)


@main_bp.route('/health')
def health():
    """
    Health check endpoint that validates the local store database.

    Returns:
        200: Healthy (DB connected)
        500: Unhealthy (DB error)
    """
    try:
        session = get_session()
        row = session.execute(text("SELECT 1 as health_check")).fetchone()
    except SQLAlchemyError as e:
        current_app.logger.error(f"[HEALTH] Database check failed: {e}")
        return jsonify({
            'status': 'unhealthy',
            'database': 'disconnected',
            'error': str(e),
            'message': 'Failed to connect to database'
        }), 500

    if not row or row[0] != 1:
        return jsonify({
            'status': 'unhealthy',
            'database': 'error',
            'message': 'Unexpected query result'
        }), 500

    session_store = current_app.extensions['stores']['session']
    if isinstance(session_store, RedisSessionStore):
        store_status = 'redis' if session_store.is_available() else 'degraded'
    else:
        store_status = 'memory'

    return jsonify({
        'status': 'healthy',
        'database': 'connected',
        'session_store': store_status,
        'engines': len(current_app.extensions['cart_engines']),
    }), 200
