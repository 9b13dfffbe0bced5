"""ORM models. Importing this package registers every table on ``Base.metadata``."""

from marketplace.models.affiliate import Affiliate, AffiliateCommission, AffiliateStatus, CommissionStatus
from marketplace.models.cart import Cart, CartItem, CartStatus, variant_key
from marketplace.models.catalog import Product, ProductFile, ProductStatus, ProductVariant
from marketplace.models.coupon import Coupon, DiscountType
from marketplace.models.download_token import DownloadToken
from marketplace.models.order import Order, OrderItem, OrderStatus
from marketplace.models.user import User

__all__ = [
    "Affiliate",
    "AffiliateCommission",
    "AffiliateStatus",
    "Cart",
    "CartItem",
    "CartStatus",
    "CommissionStatus",
    "Coupon",
    "DiscountType",
    "DownloadToken",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Product",
    "ProductFile",
    "ProductStatus",
    "ProductVariant",
    "User",
    "variant_key",
]
