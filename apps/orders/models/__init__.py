"""
Orders app models, split by concern:

    from apps.orders.models import Order, OrderItem
"""

from .order import *          # Order
from .item import *           # OrderItem
from .timeline import *       # OrderTimeline
from .journal import *        # StockReservation
from .cart import *           # CartItem
