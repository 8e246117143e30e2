"""Checkout blueprint - JSON endpoints for cart quotes and order placement."""
from flask import Blueprint, jsonify, request

from storefront.database import get_session
from storefront.services.checkout_service import order_to_dict, place_order, quote_cart

checkout_bp = Blueprint('checkout', __name__, url_prefix='/checkout')


@checkout_bp.route('/quote', methods=['POST'])
def quote():
    """Price the posted cart. Nothing is reserved once the response is sent."""
    db_session = get_session()
    payload = request.get_json(silent=True)
    priced = quote_cart(payload, db_session)
    return jsonify({'status': 'ok', 'quote': priced})


@checkout_bp.route('/orders', methods=['POST'])
def create_order():
    """
    Place an order.
    
    The idempotency key comes from the Idempotency-Key header or the
    `idempotency_key` field; replays return the original order with 200.
    """
    db_session = get_session()
    payload = request.get_json(silent=True)
    idempotency_key = request.headers.get('Idempotency-Key')
    if not idempotency_key and isinstance(payload, dict):
        idempotency_key = payload.get('idempotency_key')
    
    order, created = place_order(payload, idempotency_key, db_session)
    return jsonify({'status': 'ok', 'order': order_to_dict(order)}), 201 if created else 200
