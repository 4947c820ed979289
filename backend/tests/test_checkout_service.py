"""
Checkout orchestration tests.

Scenarios A-D walk the price breakdown from a plain cart up to a stacked
promo code; the rest pin down the all-or-nothing write behaviour.
"""

import re
from decimal import Decimal

import pytest

from storefront.extensions import db
from storefront.models import Order, OrderContact, OrderItem, PaymentRequest, PromoCode, Sequence
from storefront.models.targets import CategoryTarget, ProductTarget
from storefront.services import checkout_service
from storefront.validation import ConflictError, NotFoundError, ValidationError


PAYMENT_CODE_RE = re.compile(r"^PD-\d{6}-\d{7}$")


def _count(model) -> int:
    return db.session.query(model).count()


@pytest.fixture
def apparel_scarf(make_category, make_product):
    apparel = make_category("Apparel")
    scarf = make_product(price="10000", categories=[apparel])
    return apparel, scarf


class TestScenarios:
    def test_a_plain_cart(self, make_product, contact):
        product = make_product(price="10000")

        order = checkout_service.checkout([{"product_id": product.id, "quantity": 2}], contact)

        assert order.subtotal == Decimal("20000.00")
        assert order.sale_discount == Decimal("0.00")
        assert order.promo_discount == Decimal("0.00")
        assert order.total == Decimal("20000.00")
        assert order.vat == Decimal("2000.00")
        assert order.status == "Awaiting Payment"

        payment = order.payment_request
        assert payment.amount == order.total
        assert payment.status == "Pending"
        assert PAYMENT_CODE_RE.match(payment.code)

    def test_b_category_sale(self, apparel_scarf, make_sale, contact):
        apparel, scarf = apparel_scarf
        sale = make_sale(target=CategoryTarget(apparel.id), discount_value=Decimal("20"))

        order = checkout_service.checkout([{"product_id": scarf.id, "quantity": 2}], contact)

        assert order.subtotal == Decimal("20000.00")
        assert order.sale_discount == Decimal("4000.00")
        assert order.total == Decimal("16000.00")
        assert order.vat == Decimal("1600.00")

        [item] = order.items
        assert item.original_price == Decimal("10000.00")
        assert item.price == Decimal("8000.00")
        assert item.sale_id == sale.id

    def test_c_sale_plus_promo(self, apparel_scarf, make_sale, make_promo, contact):
        apparel, scarf = apparel_scarf
        make_sale(target=CategoryTarget(apparel.id), discount_value=Decimal("20"))
        promo = make_promo(code="SAVE1000", min_purchase_amount=Decimal("10000"))

        order = checkout_service.checkout(
            [{"product_id": scarf.id, "quantity": 2}], contact, promo_code="save1000"
        )

        assert order.sale_discount == Decimal("4000.00")
        assert order.promo_discount == Decimal("1000.00")
        assert order.total == Decimal("15000.00")
        assert order.promo_code_id == promo.id
        assert order.promo_code_used == "SAVE1000"
        assert order.payment_request.amount == Decimal("15000.00")
        # Promo discount stays on the order; the line keeps its post-sale price
        assert order.items[0].price == Decimal("8000.00")
        assert db.session.get(PromoCode, promo.id).times_used == 1

    def test_d_exhausted_promo_aborts_checkout(self, apparel_scarf, make_promo, contact):
        _, scarf = apparel_scarf
        make_promo(code="ONCE", usage_limit=1, times_used=1)

        with pytest.raises(ConflictError, match="usage limit"):
            checkout_service.checkout([{"product_id": scarf.id, "quantity": 1}], contact, promo_code="ONCE")

        assert _count(Order) == 0
        assert _count(OrderContact) == 0
        assert _count(PaymentRequest) == 0
        assert _count(Sequence) == 0


class TestValidation:
    def test_empty_cart(self, db_session, contact):
        with pytest.raises(ValidationError, match="items"):
            checkout_service.checkout([], contact)

    @pytest.mark.parametrize("items", [
        [{"product_id": 1, "quantity": 0}],
        [{"product_id": 1, "quantity": -2}],
        [{"product_id": "abc", "quantity": 1}],
        [{"quantity": 1}],
        ["not-an-object"],
    ])
    def test_bad_items(self, db_session, contact, items):
        with pytest.raises(ValidationError):
            checkout_service.checkout(items, contact)

    @pytest.mark.parametrize("missing", ["name", "address", "phone", "email"])
    def test_incomplete_contact(self, make_product, contact, missing):
        product = make_product()
        contact[missing] = "  "
        with pytest.raises(ValidationError, match=missing):
            checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact)
        assert _count(Order) == 0

    def test_missing_product_writes_nothing(self, make_product, contact):
        product = make_product()
        with pytest.raises(NotFoundError, match="999999"):
            checkout_service.checkout(
                [{"product_id": product.id, "quantity": 1}, {"product_id": 999999, "quantity": 1}],
                contact,
            )
        assert _count(Order) == 0
        assert _count(OrderItem) == 0
        assert _count(OrderContact) == 0

    def test_unknown_promo_aborts_checkout(self, make_product, contact):
        product = make_product()
        with pytest.raises(NotFoundError):
            checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact, promo_code="GHOST")
        assert _count(Order) == 0

    def test_promo_below_minimum_aborts_checkout(self, make_product, make_promo, contact):
        product = make_product(price="5000")
        promo = make_promo(min_purchase_amount=Decimal("10000"))
        with pytest.raises(ValidationError):
            checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact, promo_code=promo.code)
        assert _count(Order) == 0
        assert db.session.get(PromoCode, promo.id).times_used == 0

    def test_non_string_promo_code_aborts_checkout(self, make_product, make_promo, contact):
        product = make_product()
        make_promo(code="1234")
        with pytest.raises(ValidationError, match="must be a string"):
            checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact, promo_code=1234)
        assert _count(Order) == 0

    @pytest.mark.parametrize("user_id", ["abc", 1.5, True, {"id": 7}])
    def test_bad_user_id(self, make_product, contact, user_id):
        product = make_product()
        with pytest.raises(ValidationError, match="user_id"):
            checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact, user_id=user_id)
        assert _count(Order) == 0
        assert _count(OrderContact) == 0

    def test_numeric_string_user_id_is_accepted(self, make_product, contact):
        product = make_product()
        order = checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact, user_id="7")
        assert order.user_id == 7
        assert order.contact.created_by == 7


class TestOrderRecords:
    def test_every_checkout_gets_its_own_contact(self, make_product, contact):
        product = make_product()
        first = checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact, user_id=7)
        second = checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact, user_id=7)

        assert first.contact_id != second.contact_id
        assert _count(OrderContact) == 2
        assert first.contact.created_by == 7

    def test_one_line_per_cart_entry(self, make_product, contact):
        scarf = make_product(price="10000")
        hat = make_product(name="Hat", price="2500")
        order = checkout_service.checkout(
            [{"product_id": scarf.id, "quantity": 1}, {"product_id": hat.id, "quantity": 3}],
            contact,
        )
        assert [(i.product_id, i.quantity) for i in order.items] == [(scarf.id, 1), (hat.id, 3)]
        assert order.total == Decimal("17500.00")

    def test_payment_codes_are_consecutive(self, make_product, contact):
        product = make_product()
        codes = [
            checkout_service.checkout([{"product_id": product.id, "quantity": 1}], contact).payment_request.code
            for _ in range(3)
        ]
        assert len(set(codes)) == 3
        assert [c[-7:] for c in codes] == ["0000001", "0000002", "0000003"]

    def test_product_targeted_promo_discounts_matching_line_only(self, make_product, make_promo, contact):
        scarf = make_product(price="10000")
        hat = make_product(name="Hat", price="5000")
        make_promo(code="HALFSCARF", discount_type="percent", discount_value=Decimal("50"),
                   target=ProductTarget(scarf.id))

        order = checkout_service.checkout(
            [{"product_id": scarf.id, "quantity": 1}, {"product_id": hat.id, "quantity": 1}],
            contact,
            promo_code="HALFSCARF",
        )
        assert order.promo_discount == Decimal("5000.00")
        assert order.total == Decimal("10000.00")


class TestQuote:
    def test_quote_writes_nothing(self, apparel_scarf, make_sale, make_promo):
        apparel, scarf = apparel_scarf
        make_sale(target=CategoryTarget(apparel.id))
        promo = make_promo()

        quote = checkout_service.quote_cart([{"product_id": scarf.id, "quantity": 2}], promo_code=promo.code)

        assert quote.total == Decimal("15000.00")
        assert quote.to_dict()["vat"] == "1500.00"
        assert _count(Order) == 0
        assert db.session.get(PromoCode, promo.id).times_used == 0
