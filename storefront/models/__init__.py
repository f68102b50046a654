from storefront.models.user import User
from storefront.models.product import Product
from storefront.models.coupon import Coupon
from storefront.models.cart import CartItem, CartMerge
from storefront.models.order import Order
from storefront.models.order_item import OrderItem
from storefront.models.payment import PaymentAttempt
from storefront.models.refund import RefundRequest
from storefront.models.order_event import OrderEvent

# add ALL models here
