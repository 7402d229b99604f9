"""Stored Shopify session used by background jobs."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class ShopSession(Base):
    """Offline access token for a shop, written by the OAuth install flow."""

    __tablename__ = "shop_sessions"

    id = Column(String, primary_key=True)
    shop_domain = Column(String, nullable=False, index=True)
    access_token = Column(String, nullable=False)
    scope = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
