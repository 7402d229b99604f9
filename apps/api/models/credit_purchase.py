"""Credit purchase model for one-time and subscription charges."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditPurchase(Base):
    """Billing charge record; charge_id is the idempotency key."""

    __tablename__ = "credit_purchases"

    charge_id = Column(String, primary_key=True)
    shop_domain = Column(String, ForeignKey("shops.shop_domain"), nullable=False, index=True)
    credits_added = Column(Integer, nullable=False, default=0)
    price_usd = Column(Float, nullable=True)
    type = Column(String, nullable=False, default="one_time")
    status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    shop = relationship("Shop", back_populates="purchases")
