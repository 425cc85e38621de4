from .identity import User, UserLogin, RefreshToken, SessionToken, OAuthState
from .security import SecurityEvent
from .catalog import Product
from .cart import CartItem
from .orders import Order, OrderItem, OrderSequence

__all__ = [
    'User', 'UserLogin', 'RefreshToken', 'SessionToken', 'OAuthState',
    'SecurityEvent',
    'Product',
    'CartItem',
    'Order', 'OrderItem', 'OrderSequence',
]
