"""Models package."""

from .shop import Shop
from .shop_session import ShopSession
from .bulk_job import BulkJob
from .credit_purchase import CreditPurchase
