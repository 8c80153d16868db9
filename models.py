from sqlalchemy import Column, Integer, String, JSON, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


class Product(Base):
    """
    Catalog entry priced per sale unit.

    ref is the external product reference used by carts and rules.
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    ref = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    unit_label = Column(String, nullable=False, default="unit")
    price = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class PromotionCampaign(Base):
    """Top-level promotional program owning one or more rule lines."""
    __tablename__ = "promotion_campaigns"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    status = Column(String, nullable=False, default="ACTIVE")
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    rules = relationship("PromotionRule", back_populates="campaign", cascade="all, delete-orphan")


class PromotionRule(Base):
    """
    One concrete promotion definition inside a campaign.

    kind: 'BUY_X_GET_Y' | 'PRODUCT_DISCOUNT' | 'ORDER_DISCOUNT'
    details: JSON field storing kind-specific matching conditions.
        - BUY_X_GET_Y:      { "buy_product_ref", "buy_min_quantity", "gift_product_ref",
                              "gift_quantity_per_set", "gift_max_sets",
                              "gift_discount_kind", "gift_discount_magnitude" }
        - PRODUCT_DISCOUNT: { "apply_scope", "apply_product_ref", "discount_kind",
                              "discount_magnitude", "min_quantity", "min_line_value" }
        - ORDER_DISCOUNT:   { "discount_kind", "discount_magnitude", "max_discount_cap",
                              "min_order_value", "min_order_quantity" }
    """
    __tablename__ = "promotion_rules"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey("promotion_campaigns.id"), nullable=False, index=True)
    code = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)
    kind = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="ACTIVE")
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    max_total_usage = Column(Integer, nullable=True)
    current_usage_count = Column(Integer, nullable=False, default=0)
    details = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    campaign = relationship("PromotionCampaign", back_populates="rules")
