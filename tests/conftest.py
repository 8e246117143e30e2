import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import uuid

from storefront import create_app
from storefront.database import create_all, drop_all, get_session
from storefront.models import Category, Product, Promotion, PromotionProduct, Combo, ComboItem


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestConfig')
    return app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Create database session with a fresh schema for every test."""
    with app.app_context():
        create_all()
        session = get_session()
        yield session
        session.rollback()
        session.remove()
        drop_all()


@pytest.fixture(scope='function')
def category(session):
    category = Category(name=f'Bebidas {str(uuid.uuid4())[:8]}')
    session.add(category)
    session.commit()
    return category


@pytest.fixture(scope='function')
def make_product(session, category):
    """Factory for active products priced in ZAR."""
    def _make(price='100.00', tax_rate='0.15', sku=None, category_id=None, active=True,
              is_combo_eligible=True):
        product = Product(
            sku=sku or f'SKU-{str(uuid.uuid4())[:8]}',
            name=f'Producto {str(uuid.uuid4())[:6]}',
            category_id=category_id or category.id,
            price=Decimal(price),
            tax_rate=Decimal(tax_rate) if tax_rate is not None else None,
            active=active,
            is_combo_eligible=is_combo_eligible,
        )
        session.add(product)
        session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_promotion(session):
    """Factory for promotion rows; defaults to an always-on 10% off everything."""
    def _make(products=(), **fields):
        values = {
            'name': 'Promo',
            'type': 'percentage',
            'status': 'active',
            'priority': 0,
            'discount_value': Decimal('10'),
            'applies_to': 'all',
            'starts_at': NOW - timedelta(days=30),
        }
        values.update(fields)
        promotion = Promotion(**values)
        for product in products:
            promotion.products.append(PromotionProduct(product_id=product.id))
        session.add(promotion)
        session.commit()
        return promotion
    return _make


@pytest.fixture(scope='function')
def make_combo(session):
    def _make(items, original_price, combo_price, **fields):
        combo = Combo(
            name=fields.pop('name', 'Combo'),
            status=fields.pop('status', 'active'),
            original_price=Decimal(original_price),
            combo_price=Decimal(combo_price),
            starts_at=fields.pop('starts_at', NOW - timedelta(days=30)),
            **fields
        )
        for position, (product, quantity) in enumerate(items):
            combo.items.append(ComboItem(product_id=product.id, quantity=quantity, sort_order=position))
        session.add(combo)
        session.commit()
        return combo
    return _make
