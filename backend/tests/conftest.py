"""
Pytest fixtures for storefront backend tests.

Provides the test database, catalog factories, a fake QPay gateway behind
httpx.MockTransport, and the test client.
"""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import Category, Product, PromoCode, Sale
from storefront.services import checkout_service
from storefront.services.qpay_client import QPayClient
from storefront.time_utils import utcnow


ADMIN_TOKEN = "test-admin-token"
WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ADMIN_API_TOKEN': ADMIN_TOKEN,
        'BUSINESS_TIMEZONE': 'Asia/Ulaanbaatar',
        'QPAY_BASE_URL': 'https://qpay.test',
        'QPAY_CLIENT_ID': 'test-client',
        'QPAY_CLIENT_SECRET': 'test-secret',
        'QPAY_INVOICE_CODE': 'TEST_INVOICE',
        'QPAY_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'QPAY_CALLBACK_URL': 'https://shop.test/api/qpay/callback',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# CATALOG FACTORIES
# =============================================================================

@pytest.fixture(scope='function')
def make_category(db_session):
    def _make(name="Apparel"):
        category = Category(name=name)
        db_session.add(category)
        db_session.commit()
        return category
    return _make


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(price="10000", name="Scarf", categories=(), is_visible=True):
        product = Product(name=name, price=Decimal(price), categories=list(categories), is_visible=is_visible)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_sale(db_session):
    def _make(**overrides):
        fields = {
            "title": "Sale",
            "discount_type": "percentage",
            "discount_value": Decimal("20"),
        }
        fields.update(overrides)
        sale = Sale(**fields)
        db_session.add(sale)
        db_session.commit()
        return sale
    return _make


@pytest.fixture(scope='function')
def make_promo(db_session):
    def _make(**overrides):
        fields = {
            "code": "SAVE1000",
            "discount_type": "fixed",
            "discount_value": Decimal("1000"),
        }
        fields.update(overrides)
        promo = PromoCode(**fields)
        db_session.add(promo)
        db_session.commit()
        return promo
    return _make


@pytest.fixture(scope='function')
def contact():
    return {
        "name": "Bat-Erdene",
        "address": "Peace Avenue 12, Ulaanbaatar",
        "phone": "99112233",
        "email": "customer@example.com",
    }


@pytest.fixture(scope='function')
def place_order(db_session, make_product, contact):
    """Checkout one product line and return the committed order."""
    def _place(price="10000", quantity=1, promo_code=None):
        product = make_product(price=price)
        return checkout_service.checkout(
            [{"product_id": product.id, "quantity": quantity}],
            contact,
            promo_code=promo_code,
        )
    return _place


@pytest.fixture(scope='function')
def past():
    return utcnow() - timedelta(days=1)


@pytest.fixture(scope='function')
def future():
    return utcnow() + timedelta(days=1)


# =============================================================================
# FAKE PAYMENT GATEWAY
# =============================================================================

class FakeQPay:
    """In-memory QPay v2 merchant API served through httpx.MockTransport."""

    def __init__(self):
        self.calls = []
        self.failing = set()
        self.tokens_issued = 0
        self.refreshes = 0
        self.invoices = 0
        self.paid_count = 0
        self.paid_amount = Decimal("0")
        self.expires_in = 3600
        self.on_check = None
        self.client = None

    def fail(self, path: str) -> None:
        self.failing.add(path)

    def paths(self, method: str | None = None) -> list:
        return [p for m, p in self.calls if method is None or m == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))

        if path in self.failing:
            return httpx.Response(503, json={"message": "service unavailable"})

        if path == "/v2/auth/token":
            self.tokens_issued += 1
            return httpx.Response(200, json={
                "access_token": f"access-{self.tokens_issued}",
                "refresh_token": f"refresh-{self.tokens_issued}",
                "expires_in": self.expires_in,
            })
        if path == "/v2/auth/refresh":
            self.refreshes += 1
            return httpx.Response(200, json={
                "access_token": f"refreshed-{self.refreshes}",
                "refresh_token": f"refresh-r{self.refreshes}",
                "expires_in": self.expires_in,
            })
        if path == "/v2/invoice" and method == "POST":
            self.invoices += 1
            invoice_id = f"INV-{self.invoices}"
            return httpx.Response(200, json={
                "invoice_id": invoice_id,
                "qr_text": f"qr-{invoice_id}",
                "qr_image": "iVBORw0KGgo=",
                "qpay_shorturl": f"https://s.qpay.mn/{invoice_id}",
                "urls": [{"name": "Khan bank", "link": f"khanbank://q?qPay_QRcode={invoice_id}"}],
            })
        if path == "/v2/payment/check":
            if self.on_check is not None:
                self.on_check()
            rows = [{"payment_id": "PAY-1", "payment_status": "PAID"}] if self.paid_count else []
            return httpx.Response(200, json={
                "count": self.paid_count,
                "paid_amount": float(self.paid_amount),
                "rows": rows,
            })
        if path.startswith("/v2/invoice/") and method == "DELETE":
            return httpx.Response(200, json={})

        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture(scope='function')
def fake_qpay(app):
    """Swap the application's QPay client for one backed by FakeQPay."""
    fake = FakeQPay()
    original = app.extensions["qpay"]
    fake.client = QPayClient(
        base_url="https://qpay.test",
        client_id="test-client",
        client_secret="test-secret",
        invoice_code="TEST_INVOICE",
        webhook_secret=WEBHOOK_SECRET,
        transport=httpx.MockTransport(fake.handler),
    )
    app.extensions["qpay"] = fake.client
    yield fake
    fake.client.close()
    app.extensions["qpay"] = original
