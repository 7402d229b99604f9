"""Shop model holding the per-tenant credit balance."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Shop(Base):
    """Tenant credit account keyed by shop domain."""

    __tablename__ = "shops"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_shops_credits_balance_non_negative"),
    )

    shop_domain = Column(String, primary_key=True)
    credits_balance = Column(Integer, nullable=False, default=0)
    current_plan = Column(String, nullable=False, default="FREE")
    subscription_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    bulk_jobs = relationship("BulkJob", back_populates="shop", cascade="all, delete-orphan")
    purchases = relationship("CreditPurchase", back_populates="shop", cascade="all, delete-orphan")
