from .catalog import Category, Product, product_categories
from .promotions import Sale, PromoCode
from .orders import OrderContact, Order, OrderItem, PaymentRequest, SalesTransaction, Sequence

__all__ = [
    'Category', 'Product', 'product_categories',
    'Sale', 'PromoCode',
    'OrderContact', 'Order', 'OrderItem', 'PaymentRequest', 'SalesTransaction', 'Sequence',
]
