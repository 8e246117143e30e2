"""
Cart service: turns a checkout payload into a priced-ready Cart snapshot.

Prices and tax rates are read from the product table once, here; the pricing
engine never touches the database.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from flask import current_app

from storefront.exceptions import InvalidCartError, NotFoundError
from storefront.models import Product
from storefront.pricing import Cart, LineItem, Money
from storefront.pricing.ledger import GLOBAL_SCOPE


def _parse_amount(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidCartError(f'El valor de "{field}" no es un monto válido')
    if not amount.is_finite():
        raise InvalidCartError(f'El valor de "{field}" no es un monto válido')
    return amount


def _parse_quantity(value: Any, product_id: str) -> int:
    # Booleans and floats are rejected; integer strings from forms are accepted
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidCartError('La cantidad debe ser un número entero', payload={'product_id': product_id})
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise InvalidCartError('La cantidad debe ser un número entero', payload={'product_id': product_id})
    if quantity <= 0:
        raise InvalidCartError('La cantidad debe ser mayor a 0', payload={'product_id': product_id})
    return quantity


def _promo_codes(payload: Dict[str, Any]) -> tuple:
    codes = payload.get('promo_codes') or []
    if isinstance(codes, str):
        codes = [codes]
    if not isinstance(codes, (list, tuple)):
        raise InvalidCartError('Los códigos promocionales deben ser texto')
    if payload.get('promo_code'):
        codes = list(codes) + [payload['promo_code']]
    if not all(isinstance(c, str) for c in codes):
        raise InvalidCartError('Los códigos promocionales deben ser texto')
    return tuple(c for c in codes if c.strip())


def _customer_id(payload: Dict[str, Any]) -> Optional[str]:
    customer_id = payload.get('customer_id')
    if not customer_id:
        return None
    customer_id = str(customer_id)
    # The global usage counter is keyed by this value
    if customer_id == GLOBAL_SCOPE:
        raise InvalidCartError('El identificador de cliente no es válido', payload={'customer_id': customer_id})
    return customer_id


def build_cart(payload: Optional[Dict[str, Any]], session, currency: Optional[str] = None) -> Cart:
    """
    Build a Cart from a JSON payload.
    
    Expected shape:
        {"customer_id": "c-1", "items": [{"product_id": "...", "quantity": 2}],
         "promo_codes": ["VERANO10"], "shipping_amount": "50.00"}
    """
    if not isinstance(payload, dict):
        raise InvalidCartError('El cuerpo de la solicitud debe ser un objeto JSON')
    
    items = payload.get('items')
    if not items:
        raise InvalidCartError('El carrito está vacío')
    if not isinstance(items, list):
        raise InvalidCartError('"items" debe ser una lista')
    
    currency = currency or current_app.config.get('PRICING_CURRENCY', 'ZAR')
    default_tax_rate = _parse_amount(current_app.config.get('DEFAULT_TAX_RATE', '0.15'), 'DEFAULT_TAX_RATE')
    
    requested: List[tuple] = []
    for item in items:
        if not isinstance(item, dict) or not item.get('product_id'):
            raise InvalidCartError('Todos los productos deben tener identificador')
        product_id = str(item['product_id'])
        requested.append((product_id, _parse_quantity(item.get('quantity'), product_id)))
    
    # Fetch products in batch
    product_ids = sorted({pid for pid, _ in requested})
    products = session.query(Product).filter(Product.id.in_(product_ids)).all()
    if len(products) != len(product_ids):
        missing = sorted(set(product_ids) - {p.id for p in products})
        raise NotFoundError('Uno o más productos no fueron encontrados', payload={'product_ids': missing})
    
    products_dict = {p.id: p for p in products}
    line_items = []
    for product_id, quantity in requested:
        product = products_dict[product_id]
        if not product.active:
            raise InvalidCartError(f'El producto "{product.name}" no está activo', payload={'product_id': product_id})
        tax_rate = Decimal(product.tax_rate) if product.tax_rate is not None else default_tax_rate
        line_items.append(LineItem(
            product_id=product.id,
            sku=product.sku,
            name=product.name,
            category_id=product.category_id,
            unit_price=Money.from_decimal(product.price, currency),
            quantity=quantity,
            tax_rate=tax_rate,
            combo_eligible=product.is_combo_eligible is not False,
        ))
    
    shipping_value = payload.get('shipping_amount')
    if shipping_value is None:
        shipping_value = current_app.config.get('DEFAULT_SHIPPING_AMOUNT', '0.00')
    shipping = _parse_amount(shipping_value, 'shipping_amount')
    if shipping < 0:
        raise InvalidCartError('El costo de envío no puede ser negativo')
    
    return Cart(
        customer_id=_customer_id(payload),
        line_items=tuple(line_items),
        currency=currency,
        promo_codes=_promo_codes(payload),
        shipping_amount=Money.from_decimal(shipping, currency),
    )
