from .auth import User, SessionToken
from .catalog import Category, Product, ProductVariant
from .inventory import StockMovement
from .orders import Order, OrderItem, OrderStatusLog, PaymentTransaction
from .notifications import Notification

__all__ = [
    'User', 'SessionToken',
    'Category', 'Product', 'ProductVariant',
    'StockMovement',
    'Order', 'OrderItem', 'OrderStatusLog', 'PaymentTransaction',
    'Notification',
]
